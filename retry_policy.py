import asyncio
import logging
from typing import Callable, Iterator, Optional, Tuple, Type, TypeVar, Generic

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetryPolicy(Generic[T]):
    def __init__(
        self,
        max_retries: Optional[int] = 3,
        delay: float = 1.0,
        backoff_factor: float = 2.0,
        max_delay: float = 30.0,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    ):
        # max_retries=None 이면 무한 재시도
        self.max_retries = max_retries
        self.delay = delay
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay
        self.retry_on = retry_on

    def delays(self) -> Iterator[float]:
        current_delay = self.delay
        attempt = 0
        while self.max_retries is None or attempt < self.max_retries:
            yield min(current_delay, self.max_delay)
            current_delay *= self.backoff_factor
            attempt += 1

    async def execute_with_retry(self, func: Callable[..., T], *args, **kwargs) -> T:
        delays = self.delays()
        attempt = 0
        while True:
            try:
                return await func(*args, **kwargs)
            except self.retry_on as e:
                wait = next(delays, None)
                if wait is None:
                    raise
                attempt += 1
                logger.warning(f"[retry] attempt {attempt} failed: {e}; retrying in {wait:.1f}s")
                await asyncio.sleep(wait)
