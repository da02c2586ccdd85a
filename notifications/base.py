import asyncio
from abc import ABC, abstractmethod
from typing import Optional
from board_models import ChangeEvent, ChangeSignal


class Subscription:
    """사이클 하나에 대한 구독. 읽기 전에 쌓인 여러 변경은 신호 하나로 병합됨"""

    def __init__(self, broker: "ChangeBroker", cycle_id: int):
        self.broker = broker
        self.cycle_id = cycle_id
        self.closed = False
        self._pending: Optional[ChangeSignal] = None
        self._ready = asyncio.Event()

    def push(self, event: ChangeEvent) -> None:
        if self.closed:
            return
        if self._pending is None:
            self._pending = ChangeSignal(cycle_id=self.cycle_id)
        self._pending.merge(event)
        self._ready.set()

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    async def next(self, timeout: Optional[float] = None) -> Optional[ChangeSignal]:
        """다음 병합 신호. timeout이 지나거나 구독이 닫히면 None"""
        if self._pending is None and not self.closed:
            try:
                await asyncio.wait_for(self._ready.wait(), timeout)
            except asyncio.TimeoutError:
                return None
        signal = self._pending
        self._pending = None
        self._ready.clear()
        return signal

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.broker.unsubscribe(self)
            self._ready.set()

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeSignal:
        signal = await self.next()
        if signal is None:
            raise StopAsyncIteration
        return signal

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()


class ChangeBroker(ABC):
    @abstractmethod
    async def publish(self, event: ChangeEvent) -> None:
        """커밋된 변경을 해당 사이클 구독자들에게 전달"""
        pass

    @abstractmethod
    def subscribe(self, cycle_id: int) -> Subscription:
        """사이클 변경 구독 생성"""
        pass

    @abstractmethod
    def unsubscribe(self, subscription: Subscription) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        """모든 구독 종료 및 리소스 정리"""
        pass

    @property
    @abstractmethod
    def broker_type(self) -> str:
        pass
