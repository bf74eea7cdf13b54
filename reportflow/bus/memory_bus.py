"""
In-process event bus.

Implements the same at-least-once contract as the broker-backed bus:
fan-out to every subscription of a topic, explicit ack, redelivery after a
visibility timeout, and immediate redelivery on nack. Used for tests and
single-process development runs.
"""

import itertools
import threading
import time
from collections import deque
from typing import Optional

from reportflow.core.errors import TransportError
from reportflow.core.models import EventEnvelope
from reportflow.observability.logger import get_logger

from .base import Delivery, EventBus

logger = get_logger(__name__)


class _Message:
    __slots__ = ("message_id", "data", "attempts")

    def __init__(self, message_id: str, data: bytes):
        self.message_id = message_id
        self.data = data
        self.attempts = 0


class _Subscription:
    def __init__(self, topic: str, name: str):
        self.topic = topic
        self.name = name
        self.ready: deque[_Message] = deque()
        # message_id -> (message, visibility deadline)
        self.in_flight: dict[str, tuple[_Message, float]] = {}


class InMemoryEventBus(EventBus):
    """
    Thread-safe in-memory topic/subscription bus.

    Messages published to a topic before any subscription exists are
    dropped, as with a real broker.
    """

    def __init__(self, visibility_timeout: float = 30.0, clock=time.monotonic):
        """
        Initialize in-memory bus.

        Args:
            visibility_timeout: Seconds an unacknowledged delivery stays
                invisible before it is redelivered
            clock: Monotonic clock (injectable for tests)
        """
        self.visibility_timeout = visibility_timeout
        self._clock = clock
        self._cond = threading.Condition()
        self._subscriptions: dict[str, dict[str, _Subscription]] = {}
        self._ids = itertools.count(1)
        self._closed = False
        self._publish_failures = 0

    def ensure_subscription(self, topic: str, subscription: str) -> None:
        with self._cond:
            subs = self._subscriptions.setdefault(topic, {})
            if subscription not in subs:
                subs[subscription] = _Subscription(topic, subscription)
                logger.debug(f"Created subscription {subscription} on {topic}")

    def publish(self, topic: str, envelope: EventEnvelope) -> str:
        return self.publish_raw(topic, envelope.to_bytes())

    def publish_raw(self, topic: str, data: bytes) -> str:
        """
        Publish already-encoded bytes (also used to inject malformed messages).

        Raises:
            TransportError: If the bus is closed or a failure was injected
        """
        with self._cond:
            if self._closed:
                raise TransportError("Bus is closed", topic=topic)
            if self._publish_failures > 0:
                self._publish_failures -= 1
                raise TransportError("Injected publish failure", topic=topic)

            message_id = f"{topic}-{next(self._ids)}"
            subs = self._subscriptions.get(topic, {})
            if not subs:
                logger.debug(f"No subscriptions on {topic}; message {message_id} dropped")
            for sub in subs.values():
                sub.ready.append(_Message(message_id, data))
            self._cond.notify_all()
            return message_id

    def receive(self, topic: str, subscription: str, timeout: float = 1.0) -> Optional[Delivery]:
        self.ensure_subscription(topic, subscription)
        deadline = self._clock() + max(timeout, 0.0)

        with self._cond:
            sub = self._subscriptions[topic][subscription]
            while True:
                if self._closed:
                    return None

                self._requeue_expired(sub)
                if sub.ready:
                    return self._deliver(sub, sub.ready.popleft())

                remaining = deadline - self._clock()
                if remaining <= 0:
                    return None
                # Wake periodically to notice expired visibility windows
                self._cond.wait(min(remaining, 0.05))

    def _deliver(self, sub: _Subscription, message: _Message) -> Delivery:
        message.attempts += 1
        sub.in_flight[message.message_id] = (message, self._clock() + self.visibility_timeout)
        return Delivery(
            message_id=message.message_id,
            topic=sub.topic,
            subscription=sub.name,
            data=message.data,
            attempt=message.attempts,
            ack=lambda: self._ack(sub, message.message_id),
            nack=lambda: self._nack(sub, message.message_id),
        )

    def _requeue_expired(self, sub: _Subscription) -> None:
        now = self._clock()
        expired = [mid for mid, (_, deadline) in sub.in_flight.items() if deadline <= now]
        for message_id in expired:
            message, _ = sub.in_flight.pop(message_id)
            logger.debug(f"Visibility timeout expired for {message_id}; redelivering")
            sub.ready.append(message)

    def _ack(self, sub: _Subscription, message_id: str) -> None:
        with self._cond:
            sub.in_flight.pop(message_id, None)

    def _nack(self, sub: _Subscription, message_id: str) -> None:
        with self._cond:
            entry = sub.in_flight.pop(message_id, None)
            if entry is not None:
                sub.ready.append(entry[0])
                self._cond.notify_all()

    def inject_publish_failures(self, count: int = 1) -> None:
        """Make the next count publishes raise TransportError."""
        with self._cond:
            self._publish_failures = count

    def pending_count(self, topic: str, subscription: str) -> int:
        """Messages not yet acknowledged (ready plus in flight)."""
        with self._cond:
            sub = self._subscriptions.get(topic, {}).get(subscription)
            if sub is None:
                return 0
            return len(sub.ready) + len(sub.in_flight)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
