import asyncio
import json
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple
import logging
import httpx

from retry_policy import RetryPolicy
from .api_client import ApiError, TimelinciClient
from .board import BoardCache

logger = logging.getLogger(__name__)


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[Tuple[str, str]]:
    """text/event-stream 줄을 (event, data) 로 묶음. 주석(:) 줄은 무시"""
    event, data = "message", []
    async for line in lines:
        if line == "":
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)


class EventStreamListener:
    def __init__(
        self,
        client: TimelinciClient,
        cache: BoardCache,
        retry_policy: Optional[RetryPolicy] = None,
        read_timeout: float = 45.0,
        poll_interval: float = 30.0,
        on_change: Optional[Callable[[dict], Awaitable[None]]] = None,
    ):
        self.client = client
        self.cache = cache
        self.retry_policy = retry_policy or RetryPolicy(max_retries=5, delay=1.0, backoff_factor=2.0, max_delay=30.0)
        self.read_timeout = read_timeout
        self.poll_interval = poll_interval
        self.on_change = on_change
        self.connected = False
        self.reconnects = 0
        self._stopped = asyncio.Event()

    def stop(self):
        self._stopped.set()

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    async def _sleep(self, seconds: float) -> None:
        # stop() 호출 시 즉시 깨어남
        try:
            await asyncio.wait_for(self._stopped.wait(), seconds)
        except asyncio.TimeoutError:
            pass

    async def _consume(self) -> None:
        async with self.client.stream_events(self.cache.cycle_id, read_timeout=self.read_timeout) as lines:
            self.connected = True
            # 연결(재연결) 직후 놓친 변경을 메우기 위한 전체 조회
            await self.cache.refresh()
            async for event, data in iter_sse(lines):
                if self.stopped:
                    return
                if event != "change":
                    continue
                payload = json.loads(data) if data else {}
                await self.cache.refresh()
                if self.on_change is not None:
                    await self.on_change(payload)

    async def _poll_once(self) -> None:
        try:
            await self.cache.refresh()
        except ApiError as e:
            logger.warning(f"[events] fallback refresh failed: {e}")

    async def run(self) -> None:
        delays = self.retry_policy.delays()
        while not self.stopped:
            try:
                await self._consume()
                delays = self.retry_policy.delays()
            except (httpx.HTTPError, ApiError) as e:
                logger.warning(f"[events] cycle {self.cache.cycle_id} stream lost: {e}")
            finally:
                self.connected = False
            if self.stopped:
                break
            wait = next(delays, None)
            if wait is None:
                # 스트림에 닿지 않으면 주기적 조회로 대체 후 다시 시도
                logger.info(f"[events] falling back to polling every {self.poll_interval}s")
                await self._poll_once()
                await self._sleep(self.poll_interval)
                delays = self.retry_policy.delays()
                continue
            self.reconnects += 1
            await self._sleep(wait)
