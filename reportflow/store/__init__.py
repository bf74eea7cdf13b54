"""Requester-side persistence of report records."""

from .connection import DatabaseConnectionPool
from .report_store import (
    ApplyOutcome,
    InMemoryReportStore,
    PostgresReportStore,
    ReportStore,
    classify_status_update,
)

__all__ = [
    "ApplyOutcome",
    "DatabaseConnectionPool",
    "InMemoryReportStore",
    "PostgresReportStore",
    "ReportStore",
    "classify_status_update",
]
