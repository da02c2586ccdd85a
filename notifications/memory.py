from typing import Dict, Set
import logging
from board_models import ChangeEvent
from .base import ChangeBroker, Subscription

logger = logging.getLogger(__name__)


class InMemoryBroker(ChangeBroker):
    """단일 프로세스용 pub/sub"""

    def __init__(self):
        self._subscribers: Dict[int, Set[Subscription]] = {}

    async def publish(self, event: ChangeEvent) -> None:
        subscribers = list(self._subscribers.get(event.cycle_id, ()))
        for sub in subscribers:
            sub.push(event)
        logger.debug(f"[broker] cycle={event.cycle_id} kind={event.kind} -> {len(subscribers)} subscribers")

    def subscribe(self, cycle_id: int) -> Subscription:
        sub = Subscription(self, cycle_id)
        self._subscribers.setdefault(cycle_id, set()).add(sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscribers.get(subscription.cycle_id)
        if subs is None:
            return
        subs.discard(subscription)
        if not subs:
            del self._subscribers[subscription.cycle_id]

    def subscriber_count(self, cycle_id: int) -> int:
        return len(self._subscribers.get(cycle_id, ()))

    async def close(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub.close()
        self._subscribers.clear()

    @property
    def broker_type(self) -> str:
        return "memory"
