"""
Event bus transports and the subscription consumer loop.
"""

from .base import Delivery, EventBus, HandlerResult
from .consumer import MessageHandler, SubscriptionConsumer
from .memory_bus import InMemoryEventBus

__all__ = [
    "Delivery",
    "EventBus",
    "HandlerResult",
    "MessageHandler",
    "SubscriptionConsumer",
    "InMemoryEventBus",
]
