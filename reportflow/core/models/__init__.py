"""
Core data models for the report orchestration core.

All models use Pydantic for runtime validation and type safety. Models that
travel on the bus serialize with camelCase field names.
"""

from .cache_entry import CacheEntry
from .envelope import EventEnvelope
from .events import (
    CompletionStatus,
    ProcessingStatus,
    ProcessingStatusEvent,
    ReportCompletedEvent,
)
from .report_record import (
    STATUS_RANK,
    TERMINAL_STATUSES,
    ReportRecord,
    ReportStatus,
    is_forward,
    is_terminal,
)
from .report_request import (
    PARAMETER_MODELS,
    MovieAnalysisParameters,
    ReportParameters,
    ReportRequest,
    ReportType,
    TrendReportParameters,
    UserStatsParameters,
    parse_parameters,
    utcnow,
)

__all__ = [
    "CacheEntry",
    "EventEnvelope",
    "CompletionStatus",
    "ProcessingStatus",
    "ProcessingStatusEvent",
    "ReportCompletedEvent",
    "STATUS_RANK",
    "TERMINAL_STATUSES",
    "ReportRecord",
    "ReportStatus",
    "is_forward",
    "is_terminal",
    "PARAMETER_MODELS",
    "MovieAnalysisParameters",
    "ReportParameters",
    "ReportRequest",
    "ReportType",
    "TrendReportParameters",
    "UserStatsParameters",
    "parse_parameters",
    "utcnow",
]
