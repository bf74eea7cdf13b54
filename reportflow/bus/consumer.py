"""
Subscription consumer: the blocking consume loop behind every subscriber.

Each subscription gets one dedicated listener thread. Deliveries are decoded
through the event registry and handed to a bounded worker pool, so messages
for distinct request ids are handled concurrently. The handler returns an
explicit HandlerResult; the consumer settles the delivery accordingly and
never acknowledges before the handler has returned.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from pydantic import BaseModel

from reportflow.core.errors import SchemaError, TransportError
from reportflow.core.models import EventEnvelope
from reportflow.core.schema import TOPIC_EVENT_TYPES, EventRegistry, excerpt
from reportflow.observability.logger import get_logger
from reportflow.observability.metrics import (
    deliveries_handled_total,
    delivery_handling_seconds,
    increment_counter,
    observe_histogram,
)

from .base import Delivery, EventBus, HandlerResult

logger = get_logger(__name__)

MessageHandler = Callable[[EventEnvelope, BaseModel], HandlerResult]


class SubscriptionConsumer:
    """
    Consumes one subscription and dispatches decoded events to a handler.

    Usage:
        consumer = SubscriptionConsumer(bus, registry, "report-requests",
                                        "report-orchestrator", orchestrator.handle)
        consumer.start()
        ...
        consumer.stop()
    """

    def __init__(
        self,
        bus: EventBus,
        registry: EventRegistry,
        topic: str,
        subscription: str,
        handler: MessageHandler,
        max_concurrency: int = 4,
        poll_timeout: float = 1.0,
    ):
        """
        Initialize the consumer and make sure its subscription exists.

        Args:
            bus: Event bus to consume from
            registry: Registry used to decode deliveries
            topic: Topic name
            subscription: Subscription name
            handler: Callable returning ACK or NACK for a decoded event
            max_concurrency: Deliveries handled in parallel
            poll_timeout: Seconds the listener blocks per receive
        """
        self.bus = bus
        self.registry = registry
        self.topic = topic
        self.subscription = subscription
        self.handler = handler
        self.max_concurrency = max(1, max_concurrency)
        self.poll_timeout = poll_timeout
        self.expected_event_type = TOPIC_EVENT_TYPES.get(topic)

        self._stop_event = threading.Event()
        self._listener: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        # Bounds deliveries taken from the bus but not yet settled
        self._slots = threading.BoundedSemaphore(self.max_concurrency)

        self.bus.ensure_subscription(topic, subscription)

    def process(self, delivery: Delivery) -> HandlerResult:
        """
        Handle one delivery and settle it with ack or nack.

        Poison messages (SchemaError) are acknowledged and dropped.
        Transport failures inside the handler and unexpected exceptions
        leave the message unacknowledged so the bus redelivers it.

        Returns:
            The result the delivery was settled with
        """
        log_extra = {
            "topic": delivery.topic,
            "subscription": delivery.subscription,
            "message_id": delivery.message_id,
            "attempt": delivery.attempt,
        }
        started = time.monotonic()

        try:
            decoded = self.registry.decode(delivery.data, self.expected_event_type)
        except SchemaError as e:
            logger.error(
                f"Poison message dropped from {self.subscription}: {e}",
                extra={
                    **log_extra,
                    "event_type": e.event_type,
                    "schema_version": e.schema_version,
                    "raw_excerpt": excerpt(delivery.data),
                },
            )
            try:
                delivery.ack()
            except TransportError as ack_error:
                logger.warning(f"Could not drop poison message: {ack_error}", extra=log_extra)
            increment_counter(deliveries_handled_total, subscription=self.subscription, outcome="poison")
            return HandlerResult.ACK

        log_extra["request_id"] = decoded.request_id

        try:
            result = self.handler(decoded.envelope, decoded.event)
        except TransportError as e:
            logger.warning(f"Transport failure while handling delivery: {e}", extra=log_extra)
            result = HandlerResult.NACK
        except Exception:
            logger.exception("Unhandled error in event handler; message will be redelivered", extra=log_extra)
            result = HandlerResult.NACK

        try:
            if result == HandlerResult.ACK:
                delivery.ack()
            else:
                delivery.nack()
        except TransportError as e:
            # Unsettled messages come back after the visibility timeout
            logger.warning(f"Could not settle delivery: {e}", extra=log_extra)

        observe_histogram(delivery_handling_seconds, time.monotonic() - started, subscription=self.subscription)
        increment_counter(deliveries_handled_total, subscription=self.subscription, outcome=result.value)
        return result

    def drain(self, max_messages: Optional[int] = None) -> int:
        """
        Synchronously process everything currently available.

        A message nacked during this drain is not retried by it: when it
        comes back, it is handed back to the bus and the drain ends.

        Args:
            max_messages: Stop after this many deliveries

        Returns:
            Number of deliveries processed
        """
        processed = 0
        nacked: set[str] = set()
        while max_messages is None or processed < max_messages:
            delivery = self.bus.receive(self.topic, self.subscription, timeout=0)
            if delivery is None:
                break
            if delivery.message_id in nacked:
                try:
                    delivery.nack()
                except TransportError as e:
                    logger.warning(f"Could not return delivery: {e}", extra={"message_id": delivery.message_id})
                break
            if self.process(delivery) == HandlerResult.NACK:
                nacked.add(delivery.message_id)
            processed += 1
        return processed

    def start(self) -> None:
        """
        Start the listener thread.

        Raises:
            RuntimeError: If the consumer is already running
        """
        if self._listener is not None and self._listener.is_alive():
            raise RuntimeError(f"Consumer for {self.subscription} is already running")

        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_concurrency,
            thread_name_prefix=f"{self.subscription}-handler",
        )
        self._listener = threading.Thread(
            target=self._listen,
            name=f"{self.subscription}-listener",
            daemon=True,
        )
        self._listener.start()
        logger.info(f"Started consumer {self.subscription} on {self.topic}")

    def _listen(self) -> None:
        # The listener outlives any single receive failure; only stop() ends it
        while not self._stop_event.is_set():
            try:
                for delivery in self.bus.subscribe(
                    self.topic, self.subscription, self._stop_event, self.poll_timeout
                ):
                    self._slots.acquire()
                    self._executor.submit(self._process_and_release, delivery)
            except Exception:
                logger.exception(
                    f"Listener for {self.subscription} failed; resuming",
                    extra={"topic": self.topic, "subscription": self.subscription},
                )
                self._stop_event.wait(self.bus.reconnect_initial_delay)

    def _process_and_release(self, delivery: Delivery) -> None:
        try:
            self.process(delivery)
        finally:
            self._slots.release()

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop listening and wait for in-flight deliveries to finish."""
        self._stop_event.set()
        if self._listener is not None:
            self._listener.join(timeout)
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        logger.info(f"Stopped consumer {self.subscription}")

    @property
    def running(self) -> bool:
        return self._listener is not None and self._listener.is_alive()
