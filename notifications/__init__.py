from .base import ChangeBroker, Subscription
from .memory import InMemoryBroker
