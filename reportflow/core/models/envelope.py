"""
EventEnvelope model: the versioned wrapper every bus message travels in.
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from .report_request import utcnow


class EventEnvelope(BaseModel):
    """
    Standard envelope for all messages on the event bus.

    Both services must agree on eventType, schemaVersion and requestId;
    everything else is carried for tracing.

    Attributes:
        event_type: Event tag (e.g. "report.requested")
        schema_version: Payload schema version for this event type
        request_id: Correlation key shared by every event of one request
        event_id: Unique id of this publication
        published_at: When the envelope was created
        payload: Type-specific body, validated by the registry
    """

    event_type: str = Field(..., min_length=1)
    schema_version: int = Field(..., ge=1)
    request_id: str = Field(..., min_length=1)
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    published_at: datetime = Field(default_factory=utcnow)
    payload: dict[str, Any]

    def to_bytes(self) -> bytes:
        """Wire encoding: UTF-8 JSON with camelCase field names."""
        return self.model_dump_json(by_alias=True).encode("utf-8")

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True
        json_schema_extra = {
            "example": {
                "eventType": "report.status",
                "schemaVersion": 1,
                "requestId": "5b0c3f2e-8f43-4d8a-9a0c-1f6f1b2d9e11",
                "eventId": "0d2f7a7e-49a5-4bb4-9a57-8d0f3f1c2b7e",
                "publishedAt": "2025-11-17T10:00:01Z",
                "payload": {"requestId": "5b0c3f2e-8f43-4d8a-9a0c-1f6f1b2d9e11", "sequence": 0, "status": "started"}
            }
        }
