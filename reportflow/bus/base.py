"""
Event bus abstraction.

Defines the transport contract the core relies on: at-least-once delivery,
explicit acknowledgment, redelivery of unacknowledged messages after a
visibility window, and no ordering guarantee between publishers.
"""

import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Iterator, Optional

from reportflow.core.errors import TransportError
from reportflow.core.models import EventEnvelope
from reportflow.observability.logger import get_logger

logger = get_logger(__name__)


class HandlerResult(str, Enum):
    """Explicit outcome of handling one delivery."""

    ACK = "ack"
    NACK = "nack"


class Delivery:
    """
    One delivery of a message to a subscription.

    The same message may be delivered several times; ack() is the only
    signal that lets the bus discard it.
    """

    def __init__(
        self,
        message_id: str,
        topic: str,
        subscription: str,
        data: bytes,
        attempt: int,
        ack: Callable[[], None],
        nack: Callable[[], None],
    ):
        self.message_id = message_id
        self.topic = topic
        self.subscription = subscription
        self.data = data
        self.attempt = attempt
        self._ack = ack
        self._nack = nack
        self.settled = False

    def ack(self) -> None:
        """Acknowledge: the message may be discarded."""
        if self.settled:
            return
        self._ack()
        self.settled = True

    def nack(self) -> None:
        """Negative-acknowledge: the message should be redelivered."""
        if self.settled:
            return
        self._nack()
        self.settled = True

    def __repr__(self) -> str:
        return (
            f"Delivery(topic={self.topic!r}, subscription={self.subscription!r}, "
            f"message_id={self.message_id!r}, attempt={self.attempt})"
        )


class EventBus(ABC):
    """
    Durable topic/subscription publish-subscribe transport.

    Subclasses implement publish, receive and ensure_subscription;
    subscribe() builds the infinite, restartable consume loop on top.
    """

    # Delay before retrying receive after a transport error
    reconnect_initial_delay = 0.5
    reconnect_max_delay = 30.0

    @abstractmethod
    def publish(self, topic: str, envelope: EventEnvelope) -> str:
        """
        Publish an envelope to a topic.

        Returns:
            Transport-assigned message id

        Raises:
            TransportError: If the broker is unreachable
        """

    @abstractmethod
    def receive(self, topic: str, subscription: str, timeout: float = 1.0) -> Optional[Delivery]:
        """
        Wait up to timeout seconds for the next delivery.

        Returns:
            Delivery, or None if nothing arrived in time

        Raises:
            TransportError: If the broker is unreachable
        """

    @abstractmethod
    def ensure_subscription(self, topic: str, subscription: str) -> None:
        """Create the subscription if it does not exist yet (idempotent)."""

    def close(self) -> None:
        """Release transport resources."""

    def subscribe(
        self,
        topic: str,
        subscription: str,
        stop_event: Optional[threading.Event] = None,
        poll_timeout: float = 1.0,
    ) -> Iterator[Delivery]:
        """
        Lazily yield deliveries until stop_event is set.

        Transport errors are logged and the loop resumes after a backoff,
        so the sequence survives broker disconnects.

        Args:
            topic: Topic to consume
            subscription: Subscription (consumer group) name
            stop_event: Set to end the iteration
            poll_timeout: Seconds to block per receive call

        Yields:
            Delivery objects; each must be acked or nacked by the caller
        """
        stop_event = stop_event or threading.Event()
        delay = self.reconnect_initial_delay

        self.ensure_subscription(topic, subscription)

        while not stop_event.is_set():
            try:
                delivery = self.receive(topic, subscription, timeout=poll_timeout)
            except TransportError as e:
                logger.warning(
                    f"Receive failed on {topic}/{subscription}, retrying in {delay:.1f}s: {e}",
                    extra={"topic": topic, "subscription": subscription},
                )
                stop_event.wait(delay)
                delay = min(delay * 2, self.reconnect_max_delay)
                continue

            delay = self.reconnect_initial_delay
            if delivery is not None:
                yield delivery

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
