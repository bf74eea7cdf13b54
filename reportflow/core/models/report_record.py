"""
ReportRecord model: the requester-owned, persisted view of a request.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .report_request import ReportRequest, ReportType, utcnow


class ReportStatus(str, Enum):
    PENDING = "pending"
    STARTED = "started"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Position in pending -> started -> processing -> (completed | failed)
STATUS_RANK = {
    ReportStatus.PENDING: 0,
    ReportStatus.STARTED: 1,
    ReportStatus.PROCESSING: 2,
    ReportStatus.COMPLETED: 3,
    ReportStatus.FAILED: 3,
}

TERMINAL_STATUSES = frozenset({ReportStatus.COMPLETED, ReportStatus.FAILED})


def is_terminal(status: ReportStatus) -> bool:
    return ReportStatus(status) in TERMINAL_STATUSES


def is_forward(current: ReportStatus, target: ReportStatus) -> bool:
    """True if moving from current to target never goes back in the state machine."""
    current = ReportStatus(current)
    target = ReportStatus(target)
    if current in TERMINAL_STATUSES:
        return False
    return STATUS_RANK[target] >= STATUS_RANK[current]


class ReportRecord(BaseModel):
    """
    Persisted report state, mutated only by the status reconciler.

    Attributes:
        request_id: Primary key (the request's id)
        report_type: Type of the original request
        subject_id: Subject of the original request
        parameters: Parameters of the original request
        requested_by: Who submitted the request
        status: pending, started, processing, completed or failed
        result_ref: Artifact reference once completed
        error: Failure message, present only when failed
        progress: Last applied progress percentage
        message: Last applied status message
        last_sequence: Sequence of the last applied status event
        last_event_at: Emission time of the last applied event
        republish_count: How many times the pending sweep re-published the request
        created_at: Ingestion time
        updated_at: Last mutation time
    """

    request_id: str = Field(..., min_length=1)
    report_type: ReportType
    subject_id: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    requested_by: str
    status: ReportStatus = ReportStatus.PENDING
    result_ref: str | None = None
    error: str | None = None
    progress: int | None = None
    message: str | None = None
    last_sequence: int | None = None
    last_event_at: datetime | None = None
    republish_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def terminal(self) -> bool:
        return is_terminal(self.status)

    @classmethod
    def from_request(cls, request: ReportRequest) -> "ReportRecord":
        return cls(
            request_id=request.request_id,
            report_type=request.report_type,
            subject_id=request.subject_id,
            parameters=dict(request.parameters),
            requested_by=request.requested_by,
            created_at=request.created_at,
            updated_at=request.created_at,
        )

    def to_request(self) -> ReportRequest:
        """Rebuild the original (immutable) request, e.g. for re-publication."""
        return ReportRequest(
            request_id=self.request_id,
            report_type=self.report_type,
            subject_id=self.subject_id,
            parameters=dict(self.parameters),
            requested_by=self.requested_by,
            created_at=self.created_at,
        )

    class Config:
        json_schema_extra = {
            "example": {
                "request_id": "5b0c3f2e-8f43-4d8a-9a0c-1f6f1b2d9e11",
                "report_type": "movie-analysis",
                "subject_id": "tt1234567",
                "requested_by": "analyst@example.com",
                "status": "completed",
                "result_ref": "file:///var/reports/5b0c3f2e-8f43-4d8a-9a0c-1f6f1b2d9e11.csv",
                "last_sequence": 2
            }
        }
