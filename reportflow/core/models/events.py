"""
Status and completion events published by the worker.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator
from pydantic.alias_generators import to_camel

from .report_request import utcnow


class ProcessingStatus(str, Enum):
    STARTED = "started"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class CompletionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingStatusEvent(BaseModel):
    """
    Progress notification for one request.

    Attributes:
        request_id: Correlation key
        sequence: Per-request counter assigned by the worker, starting at 0
        status: started, processing, completed or failed
        progress: Optional percentage (0-100)
        message: Optional human-readable detail
        emitted_at: When the worker emitted the event
    """

    request_id: str = Field(..., min_length=1)
    sequence: int = Field(..., ge=0)
    status: ProcessingStatus
    progress: int | None = Field(default=None, ge=0, le=100)
    message: str | None = None
    emitted_at: datetime = Field(default_factory=utcnow)

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True


class ReportCompletedEvent(BaseModel):
    """
    The single logical terminal event of a request.

    Attributes:
        request_id: Correlation key
        status: completed or failed
        result_ref: Artifact reference (completed only)
        error: Failure description (failed only)
        emitted_at: When the worker emitted the event
    """

    request_id: str = Field(..., min_length=1)
    status: CompletionStatus
    result_ref: str | None = None
    error: str | None = None
    emitted_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_outcome(self):
        if self.status == CompletionStatus.COMPLETED and not self.result_ref:
            raise ValueError("resultRef is required when status is completed")
        if self.status == CompletionStatus.FAILED and not (self.error and self.error.strip()):
            raise ValueError("error is required when status is failed")
        return self

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True
        json_schema_extra = {
            "example": {
                "requestId": "5b0c3f2e-8f43-4d8a-9a0c-1f6f1b2d9e11",
                "status": "failed",
                "error": "Movie tt_nonexistent not found",
                "emittedAt": "2025-11-17T10:00:05Z"
            }
        }
