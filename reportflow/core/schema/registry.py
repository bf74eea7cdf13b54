"""
Event registry: versioned payload schemas for everything that crosses the bus.

Wraps payload models into envelopes on the way out and validates raw bytes
back into typed events on the way in. Anything that cannot be decoded is a
SchemaError, i.e. a poison message.
"""

import json
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from reportflow.core.errors import SchemaError
from reportflow.core.models import (
    EventEnvelope,
    ProcessingStatusEvent,
    ReportCompletedEvent,
    ReportRequest,
)

# Logical topic names
TOPIC_REPORT_REQUESTS = "report-requests"
TOPIC_PROCESSING_STATUS = "processing-status"
TOPIC_REPORT_COMPLETED = "report-completed"

# Event type tags
EVENT_REPORT_REQUESTED = "report.requested"
EVENT_REPORT_STATUS = "report.status"
EVENT_REPORT_COMPLETED = "report.completed"

TOPIC_EVENT_TYPES = {
    TOPIC_REPORT_REQUESTS: EVENT_REPORT_REQUESTED,
    TOPIC_PROCESSING_STATUS: EVENT_REPORT_STATUS,
    TOPIC_REPORT_COMPLETED: EVENT_REPORT_COMPLETED,
}

# Raw payload excerpt length kept in poison-message logs
_EXCERPT_LENGTH = 256


@dataclass(frozen=True)
class DecodedEvent:
    """An envelope together with its validated, typed payload."""

    envelope: EventEnvelope
    event: BaseModel

    @property
    def request_id(self) -> str:
        return self.envelope.request_id


def excerpt(data: bytes) -> str:
    """Printable prefix of a raw message, for logging."""
    return data[:_EXCERPT_LENGTH].decode("utf-8", errors="replace")


class EventRegistry:
    """
    Registry of (event type, schema version) -> payload model.

    The newest registered version of an event type is used when wrapping;
    any registered version is accepted when decoding.
    """

    def __init__(self):
        self._schemas: dict[tuple[str, int], type[BaseModel]] = {}
        self._models: dict[type[BaseModel], str] = {}

    def register(self, event_type: str, schema_version: int, model: type[BaseModel]) -> None:
        """
        Register a payload model for an event type and version.

        Raises:
            ValueError: If the (type, version) pair is already registered
        """
        key = (event_type, schema_version)
        if key in self._schemas:
            raise ValueError(f"{event_type} v{schema_version} is already registered")
        self._schemas[key] = model
        self._models[model] = event_type

    def versions(self, event_type: str) -> list[int]:
        return sorted(v for (t, v) in self._schemas if t == event_type)

    def current_version(self, event_type: str) -> int:
        versions = self.versions(event_type)
        if not versions:
            raise SchemaError(f"Unknown event type: {event_type}", event_type=event_type)
        return versions[-1]

    def wrap(self, event: BaseModel) -> EventEnvelope:
        """
        Wrap a payload model into an envelope at the current schema version.

        Args:
            event: A registered payload model instance carrying request_id

        Returns:
            EventEnvelope ready to publish

        Raises:
            SchemaError: If the payload model is not registered
        """
        event_type = self._models.get(type(event))
        if event_type is None:
            raise SchemaError(f"No event type registered for {type(event).__name__}")

        return EventEnvelope(
            event_type=event_type,
            schema_version=self.current_version(event_type),
            request_id=event.request_id,
            payload=event.model_dump(mode="json", by_alias=True),
        )

    def encode(self, envelope: EventEnvelope) -> bytes:
        """Validate an envelope's payload and return its wire encoding."""
        self.validate(envelope)
        return envelope.to_bytes()

    def decode(self, data: bytes | str, expected_event_type: str | None = None) -> DecodedEvent:
        """
        Decode raw wire bytes into an envelope and typed payload.

        Args:
            data: Raw message body
            expected_event_type: Event type the topic is supposed to carry

        Returns:
            DecodedEvent

        Raises:
            SchemaError: If the message is not JSON, the envelope is malformed,
                the type/version is unknown, or the payload does not validate
        """
        try:
            raw: Any = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SchemaError(f"Message is not valid JSON: {e}") from e

        if not isinstance(raw, dict):
            raise SchemaError("Message envelope must be a JSON object")

        try:
            envelope = EventEnvelope.model_validate(raw)
        except PydanticValidationError as e:
            raise SchemaError(
                f"Malformed envelope: {e.error_count()} validation error(s)",
                event_type=raw.get("eventType"),
                schema_version=raw.get("schemaVersion"),
            ) from e

        if expected_event_type is not None and envelope.event_type != expected_event_type:
            raise SchemaError(
                f"Unexpected event type {envelope.event_type} (expected {expected_event_type})",
                event_type=envelope.event_type,
                schema_version=envelope.schema_version,
            )

        return DecodedEvent(envelope=envelope, event=self.validate(envelope))

    def validate(self, envelope: EventEnvelope) -> BaseModel:
        """
        Validate an envelope's payload against its registered schema.

        Raises:
            SchemaError: If the type/version is unknown or the payload is invalid
        """
        model = self._schemas.get((envelope.event_type, envelope.schema_version))
        if model is None:
            raise SchemaError(
                f"Unknown schema: {envelope.event_type} v{envelope.schema_version}",
                event_type=envelope.event_type,
                schema_version=envelope.schema_version,
            )

        try:
            event = model.model_validate(envelope.payload)
        except PydanticValidationError as e:
            raise SchemaError(
                f"Invalid {envelope.event_type} v{envelope.schema_version} payload: "
                f"{e.error_count()} validation error(s)",
                event_type=envelope.event_type,
                schema_version=envelope.schema_version,
            ) from e

        if event.request_id != envelope.request_id:
            raise SchemaError(
                "Envelope requestId does not match payload requestId",
                event_type=envelope.event_type,
                schema_version=envelope.schema_version,
            )

        return event


def create_default_registry() -> EventRegistry:
    """Registry with every event type exchanged between requester and worker."""
    registry = EventRegistry()
    registry.register(EVENT_REPORT_REQUESTED, 1, ReportRequest)
    registry.register(EVENT_REPORT_STATUS, 1, ProcessingStatusEvent)
    registry.register(EVENT_REPORT_COMPLETED, 1, ReportCompletedEvent)
    return registry
