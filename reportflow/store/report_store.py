"""
Persistence of ReportRecords (requester side).

The merge rules live in the store so they hold even with several reconciler
processes writing to one database:

- a terminal status (completed, failed) is never left once reached;
- a status event is applied only if its sequence is newer than the last
  applied one and it does not move the record backwards.
"""

import json
import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

import psycopg

from reportflow.core.errors import StoreError
from reportflow.core.models import (
    STATUS_RANK,
    TERMINAL_STATUSES,
    CompletionStatus,
    ReportRecord,
    ReportRequest,
    ReportStatus,
    utcnow,
)
from reportflow.observability.logger import get_logger

from .connection import DatabaseConnectionPool

logger = get_logger(__name__)


class ApplyOutcome(str, Enum):
    """Result of merging an event into a record."""

    APPLIED = "applied"
    UNKNOWN_REQUEST = "unknown_request"
    TERMINAL = "ignored_terminal"
    STALE = "ignored_stale"
    BACKWARD = "ignored_backward"


class ReportStore(Protocol):
    def create_pending(self, request: ReportRequest) -> bool:
        ...

    def apply_status(
        self,
        request_id: str,
        status: ReportStatus,
        sequence: int,
        progress: Optional[int] = None,
        message: Optional[str] = None,
        event_at: Optional[datetime] = None,
    ) -> ApplyOutcome:
        ...

    def apply_completion(
        self,
        request_id: str,
        status: CompletionStatus,
        result_ref: Optional[str] = None,
        error: Optional[str] = None,
        event_at: Optional[datetime] = None,
    ) -> ApplyOutcome:
        ...

    def get(self, request_id: str) -> Optional[ReportRecord]:
        ...

    def list_stale_pending(self, older_than: datetime, limit: int = 100) -> list[ReportRecord]:
        ...

    def mark_republished(self, request_id: str) -> bool:
        ...


def _check_progress_target(status: ReportStatus) -> ReportStatus:
    status = ReportStatus(status)
    if status in TERMINAL_STATUSES or status == ReportStatus.PENDING:
        raise ValueError(f"apply_status only accepts started/processing, got {status.value}")
    return status


def classify_status_update(
    record: ReportRecord, status: ReportStatus, sequence: int
) -> ApplyOutcome:
    """Decide whether a status update may be applied to a record."""
    if record.terminal:
        return ApplyOutcome.TERMINAL
    if record.last_sequence is not None and sequence <= record.last_sequence:
        return ApplyOutcome.STALE
    if STATUS_RANK[ReportStatus(status)] < STATUS_RANK[record.status]:
        return ApplyOutcome.BACKWARD
    return ApplyOutcome.APPLIED


class InMemoryReportStore:
    """Thread-safe dictionary-backed store (tests, demos, single process)."""

    def __init__(self, clock=utcnow):
        self._records: dict[str, ReportRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def create_pending(self, request: ReportRequest) -> bool:
        with self._lock:
            if request.request_id in self._records:
                return False
            now = self._clock()
            record = ReportRecord.from_request(request)
            self._records[request.request_id] = record.model_copy(update={"updated_at": now})
            return True

    def apply_status(self, request_id, status, sequence, progress=None, message=None, event_at=None):
        status = _check_progress_target(status)
        with self._lock:
            record = self._records.get(request_id)
            if record is None:
                return ApplyOutcome.UNKNOWN_REQUEST

            outcome = classify_status_update(record, status, sequence)
            if outcome is not ApplyOutcome.APPLIED:
                return outcome

            update = {
                "status": status,
                "last_sequence": sequence,
                "last_event_at": event_at,
                "updated_at": self._clock(),
            }
            if progress is not None:
                update["progress"] = progress
            if message is not None:
                update["message"] = message
            self._records[request_id] = record.model_copy(update=update)
            return ApplyOutcome.APPLIED

    def apply_completion(self, request_id, status, result_ref=None, error=None, event_at=None):
        target = ReportStatus(CompletionStatus(status).value)
        with self._lock:
            record = self._records.get(request_id)
            if record is None:
                return ApplyOutcome.UNKNOWN_REQUEST
            if record.terminal:
                return ApplyOutcome.TERMINAL

            update = {
                "status": target,
                "result_ref": result_ref if target == ReportStatus.COMPLETED else None,
                "error": error if target == ReportStatus.FAILED else None,
                "last_event_at": event_at,
                "updated_at": self._clock(),
            }
            if target == ReportStatus.COMPLETED:
                update["progress"] = 100
            self._records[request_id] = record.model_copy(update=update)
            return ApplyOutcome.APPLIED

    def get(self, request_id: str) -> Optional[ReportRecord]:
        with self._lock:
            return self._records.get(request_id)

    def list_stale_pending(self, older_than: datetime, limit: int = 100) -> list[ReportRecord]:
        with self._lock:
            stale = [
                record for record in self._records.values()
                if record.status == ReportStatus.PENDING and record.updated_at < older_than
            ]
        stale.sort(key=lambda record: record.updated_at)
        return stale[:limit]

    def mark_republished(self, request_id: str) -> bool:
        with self._lock:
            record = self._records.get(request_id)
            if record is None or record.status != ReportStatus.PENDING:
                return False
            self._records[request_id] = record.model_copy(update={
                "republish_count": record.republish_count + 1,
                "updated_at": self._clock(),
            })
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


REPORT_RECORD_DDL = """
    CREATE TABLE IF NOT EXISTS report_record (
        request_id       TEXT PRIMARY KEY,
        report_type      TEXT NOT NULL,
        subject_id       TEXT,
        parameters       JSONB NOT NULL DEFAULT '{}'::jsonb,
        requested_by     TEXT NOT NULL,
        status           TEXT NOT NULL DEFAULT 'pending'
                         CHECK (status IN ('pending', 'started', 'processing', 'completed', 'failed')),
        result_ref       TEXT,
        error            TEXT,
        progress         INTEGER,
        message          TEXT,
        last_sequence    INTEGER,
        last_event_at    TIMESTAMPTZ,
        republish_count  INTEGER NOT NULL DEFAULT 0,
        created_at       TIMESTAMPTZ NOT NULL,
        updated_at       TIMESTAMPTZ NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_report_record_pending
        ON report_record (updated_at) WHERE status = 'pending';
"""

# Status rank computed in SQL, mirroring STATUS_RANK
_RANK_SQL = (
    "CASE status WHEN 'pending' THEN 0 WHEN 'started' THEN 1 "
    "WHEN 'processing' THEN 2 ELSE 3 END"
)

_SELECT_COLUMNS = """
    request_id, report_type, subject_id, parameters, requested_by, status,
    result_ref, error, progress, message, last_sequence, last_event_at,
    republish_count, created_at, updated_at
"""


class PostgresReportStore:
    """
    ReportRecord persistence in PostgreSQL.

    Every mutation is a single conditional statement, so concurrent
    reconcilers cannot regress or overwrite a terminal record.
    """

    def __init__(self, pool: DatabaseConnectionPool):
        """
        Initialize the store.

        Args:
            pool: Open database connection pool
        """
        self.pool = pool

    @contextmanager
    def _errors(self, operation: str):
        try:
            yield
        except psycopg.Error as e:
            logger.error(f"Report store {operation} failed: {e}")
            raise StoreError(f"Report store {operation} failed: {e}") from e

    def create_schema(self) -> None:
        """Create the report_record table and its indexes if missing."""
        with self._errors("create_schema"):
            self.pool.execute_command(REPORT_RECORD_DDL)

    def create_pending(self, request: ReportRequest) -> bool:
        """
        Insert a pending record; a second insert for the same id is a no-op.

        Returns:
            True if the record was created by this call
        """
        query = f"""
            INSERT INTO report_record (
                request_id, report_type, subject_id, parameters, requested_by,
                status, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, '{ReportStatus.PENDING.value}', %s, %s)
            ON CONFLICT (request_id) DO NOTHING
        """
        with self._errors("create_pending"):
            inserted = self.pool.execute_command(
                query,
                (
                    request.request_id,
                    request.report_type.value,
                    request.subject_id,
                    json.dumps(request.parameters),
                    request.requested_by,
                    request.created_at,
                    utcnow(),
                ),
            )
        return inserted == 1

    def apply_status(self, request_id, status, sequence, progress=None, message=None, event_at=None):
        status = _check_progress_target(status)
        query = f"""
            UPDATE report_record
            SET status = %s,
                last_sequence = %s,
                progress = COALESCE(%s, progress),
                message = COALESCE(%s, message),
                last_event_at = %s,
                updated_at = now()
            WHERE request_id = %s
              AND status NOT IN ('completed', 'failed')
              AND (last_sequence IS NULL OR last_sequence < %s)
              AND {_RANK_SQL} <= %s
        """
        with self._errors("apply_status"):
            updated = self.pool.execute_command(
                query,
                (
                    status.value, sequence, progress, message, event_at,
                    request_id, sequence, STATUS_RANK[status],
                ),
            )
            if updated == 1:
                return ApplyOutcome.APPLIED

            record = self.get(request_id)

        if record is None:
            return ApplyOutcome.UNKNOWN_REQUEST
        outcome = classify_status_update(record, status, sequence)
        # Lost a race with a concurrent writer; the row no longer qualifies
        return ApplyOutcome.STALE if outcome is ApplyOutcome.APPLIED else outcome

    def apply_completion(self, request_id, status, result_ref=None, error=None, event_at=None):
        target = ReportStatus(CompletionStatus(status).value)
        completed = target == ReportStatus.COMPLETED
        query = """
            UPDATE report_record
            SET status = %s,
                result_ref = %s,
                error = %s,
                progress = CASE WHEN %s THEN 100 ELSE progress END,
                last_event_at = %s,
                updated_at = now()
            WHERE request_id = %s
              AND status NOT IN ('completed', 'failed')
        """
        with self._errors("apply_completion"):
            updated = self.pool.execute_command(
                query,
                (
                    target.value,
                    result_ref if completed else None,
                    None if completed else error,
                    completed,
                    event_at,
                    request_id,
                ),
            )
            if updated == 1:
                return ApplyOutcome.APPLIED

            record = self.get(request_id)

        return ApplyOutcome.UNKNOWN_REQUEST if record is None else ApplyOutcome.TERMINAL

    def get(self, request_id: str) -> Optional[ReportRecord]:
        query = f"SELECT {_SELECT_COLUMNS} FROM report_record WHERE request_id = %s"
        with self._errors("get"):
            rows = self.pool.execute_query(query, (request_id,))
        return ReportRecord.model_validate(rows[0]) if rows else None

    def list_stale_pending(self, older_than: datetime, limit: int = 100) -> list[ReportRecord]:
        """Pending records not touched since older_than, oldest first."""
        query = f"""
            SELECT {_SELECT_COLUMNS}
            FROM report_record
            WHERE status = 'pending' AND updated_at < %s
            ORDER BY updated_at
            LIMIT %s
        """
        with self._errors("list_stale_pending"):
            rows = self.pool.execute_query(query, (older_than, limit))
        return [ReportRecord.model_validate(row) for row in rows]

    def mark_republished(self, request_id: str) -> bool:
        query = """
            UPDATE report_record
            SET republish_count = republish_count + 1,
                updated_at = now()
            WHERE request_id = %s AND status = 'pending'
        """
        with self._errors("mark_republished"):
            return self.pool.execute_command(query, (request_id,)) == 1
