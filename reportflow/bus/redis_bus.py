"""
Redis Streams event bus.

One stream per topic and one consumer group per subscription. XREADGROUP
delivers new entries, XACK acknowledges them, and entries that stay pending
longer than the visibility timeout are reclaimed with XAUTOCLAIM, which
gives at-least-once redelivery after a consumer crash.
"""

import logging
import os
import socket
from typing import Optional

import redis
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from reportflow.core.errors import TransportError
from reportflow.core.models import EventEnvelope
from reportflow.observability.logger import get_logger

from .base import Delivery, EventBus

logger = get_logger(__name__)

_RETRYABLE = (redis.ConnectionError, redis.TimeoutError)


class RedisStreamsEventBus(EventBus):
    """
    EventBus backed by Redis Streams consumer groups.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        stream_prefix: str = "reportflow",
        visibility_timeout: float = 30.0,
        publish_attempts: int = 3,
        publish_backoff_max: float = 5.0,
        max_stream_length: Optional[int] = None,
        consumer_name: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ):
        """
        Initialize Redis Streams bus.

        Args:
            url: Redis connection URL
            stream_prefix: Prefix for stream keys ("<prefix>:<topic>")
            visibility_timeout: Seconds a pending entry stays with its consumer
                before another consumer may reclaim it
            publish_attempts: Attempts per publish on connection errors
            publish_backoff_max: Upper bound for the exponential publish backoff
            max_stream_length: Approximate MAXLEN trim for each stream
            consumer_name: Consumer name inside each group (host-pid by default)
            client: Pre-built redis client (tests)
        """
        self.url = url
        self.stream_prefix = stream_prefix
        self.visibility_timeout = visibility_timeout
        self.publish_attempts = publish_attempts
        self.publish_backoff_max = publish_backoff_max
        self.max_stream_length = max_stream_length
        self.consumer_name = consumer_name or f"{socket.gethostname()}-{os.getpid()}"
        self._client = client or redis.Redis.from_url(url)

        logger.info(
            f"Initialized RedisStreamsEventBus (prefix: {stream_prefix}, "
            f"consumer: {self.consumer_name})"
        )

    def stream_key(self, topic: str) -> str:
        return f"{self.stream_prefix}:{topic}"

    def publish(self, topic: str, envelope: EventEnvelope) -> str:
        return self.publish_raw(
            topic,
            envelope.to_bytes(),
            event_type=envelope.event_type,
            request_id=envelope.request_id,
        )

    def publish_raw(
        self,
        topic: str,
        data: bytes,
        event_type: str = "",
        request_id: str = "",
    ) -> str:
        """
        Append an encoded message to the topic stream.

        Connection failures are retried with exponential backoff before
        surfacing as TransportError.
        """
        fields = {"data": data, "eventType": event_type, "requestId": request_id}
        retrying = Retrying(
            stop=stop_after_attempt(self.publish_attempts),
            wait=wait_exponential(multiplier=0.2, max=self.publish_backoff_max),
            retry=retry_if_exception_type(_RETRYABLE),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        try:
            for attempt in retrying:
                with attempt:
                    message_id = self._client.xadd(
                        self.stream_key(topic),
                        fields,
                        maxlen=self.max_stream_length,
                        approximate=True,
                    )
        except redis.RedisError as e:
            raise TransportError(f"Publish to {topic} failed: {e}", topic=topic) from e

        return _text(message_id)

    def ensure_subscription(self, topic: str, subscription: str) -> None:
        try:
            self._client.xgroup_create(
                self.stream_key(topic), subscription, id="$", mkstream=True
            )
            logger.info(f"Created consumer group {subscription} on {topic}")
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise TransportError(f"Cannot create group {subscription}: {e}", topic=topic) from e
        except redis.RedisError as e:
            raise TransportError(f"Cannot create group {subscription}: {e}", topic=topic) from e

    def receive(self, topic: str, subscription: str, timeout: float = 1.0) -> Optional[Delivery]:
        stream = self.stream_key(topic)

        try:
            entry = self._reclaim(stream, subscription)
            if entry is None:
                response = self._client.xreadgroup(
                    subscription,
                    self.consumer_name,
                    {stream: ">"},
                    count=1,
                    block=int(timeout * 1000) if timeout > 0 else None,
                )
                if not response:
                    return None
                _, entries = response[0]
                if not entries:
                    return None
                entry = entries[0]

            message_id, fields = entry
            message_id = _text(message_id)
            attempt = self._times_delivered(stream, subscription, message_id)
        except redis.ResponseError as e:
            if "NOGROUP" in str(e):
                # Group vanished (stream deleted); recreate and let the caller poll again
                self.ensure_subscription(topic, subscription)
                return None
            raise TransportError(f"Receive from {topic} failed: {e}", topic=topic) from e
        except redis.RedisError as e:
            raise TransportError(f"Receive from {topic} failed: {e}", topic=topic) from e

        return Delivery(
            message_id=message_id,
            topic=topic,
            subscription=subscription,
            data=fields.get(b"data", b""),
            attempt=attempt,
            ack=lambda: self._ack(stream, subscription, message_id),
            nack=lambda: self._nack(stream, subscription, message_id),
        )

    def _reclaim(self, stream: str, subscription: str):
        """Take over one entry whose visibility window has expired."""
        while True:
            result = self._client.xautoclaim(
                stream,
                subscription,
                self.consumer_name,
                min_idle_time=int(self.visibility_timeout * 1000),
                start_id="0-0",
                count=1,
            )
            entries = result[1] if result else []
            if not entries:
                return None

            message_id, fields = entries[0]
            if fields:
                logger.info(
                    f"Reclaimed pending entry {_text(message_id)} on {stream}",
                    extra={"subscription": subscription},
                )
                return entries[0]

            # Entry was trimmed from the stream; drop it from the pending list
            self._client.xack(stream, subscription, message_id)

    def _times_delivered(self, stream: str, subscription: str, message_id: str) -> int:
        pending = self._client.xpending_range(
            stream, subscription, min=message_id, max=message_id, count=1
        )
        if pending:
            return int(pending[0]["times_delivered"])
        return 1

    def _ack(self, stream: str, subscription: str, message_id: str) -> None:
        try:
            self._client.xack(stream, subscription, message_id)
        except redis.RedisError as e:
            raise TransportError(f"Ack of {message_id} failed: {e}") from e

    def _nack(self, stream: str, subscription: str, message_id: str) -> None:
        # Push the entry's idle time past the visibility window so the next
        # XAUTOCLAIM picks it up straight away.
        try:
            self._client.xclaim(
                stream,
                subscription,
                self.consumer_name,
                min_idle_time=0,
                message_ids=[message_id],
                idle=int(self.visibility_timeout * 1000) + 1,
                justid=True,
            )
        except redis.RedisError as e:
            raise TransportError(f"Nack of {message_id} failed: {e}") from e

    def health_check(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        self._client.close()


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)
