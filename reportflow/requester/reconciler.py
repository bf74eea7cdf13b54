"""
Status reconciler: merges worker events into persisted ReportRecords.

The merge is idempotent under duplicate delivery:

- status events advance a record only forward and only with a sequence
  newer than the last applied one;
- the first terminal completion wins, later ones are acknowledged no-ops;
- a status event reporting completed/failed never makes a record terminal
  by itself (it carries no result reference or error), it is applied as
  processing and the completion event finalizes the record.

Per-request work is serialized with a keyed lock, so two concurrent copies
of one event cannot both trigger the completion notifier.
"""

from typing import Callable, Optional

from reportflow.bus.base import HandlerResult
from reportflow.core.errors import StoreError
from reportflow.core.models import (
    EventEnvelope,
    ProcessingStatus,
    ProcessingStatusEvent,
    ReportCompletedEvent,
    ReportRecord,
    ReportStatus,
)
from reportflow.core.schema import EVENT_REPORT_COMPLETED, EVENT_REPORT_STATUS
from reportflow.observability.logger import get_logger
from reportflow.observability.metrics import increment_counter, reconciler_events_total
from reportflow.utils.keyed_lock import KeyedLock

from ..store import ApplyOutcome, ReportStore

logger = get_logger(__name__)

CompletionNotifier = Callable[[ReportRecord], None]

_PROGRESS_STATUS = {
    ProcessingStatus.STARTED: ReportStatus.STARTED,
    ProcessingStatus.PROCESSING: ReportStatus.PROCESSING,
    ProcessingStatus.COMPLETED: ReportStatus.PROCESSING,
    ProcessingStatus.FAILED: ReportStatus.PROCESSING,
}


class StatusReconciler:
    """
    Handler for the processing-status and report-completed subscriptions.

    Args:
        store: Report store holding the records
        notifier: Optional callback invoked once when a record becomes terminal
    """

    def __init__(self, store: ReportStore, notifier: Optional[CompletionNotifier] = None):
        self.store = store
        self.notifier = notifier
        self._locks = KeyedLock()

    def handle_status(self, envelope: EventEnvelope, event: ProcessingStatusEvent) -> HandlerResult:
        target = _PROGRESS_STATUS[event.status]
        with self._locks.hold(event.request_id):
            try:
                outcome = self.store.apply_status(
                    event.request_id,
                    target,
                    event.sequence,
                    progress=event.progress,
                    message=event.message,
                    event_at=event.emitted_at,
                )
            except StoreError as e:
                logger.warning(
                    f"Could not apply status for {event.request_id}, leaving for redelivery: {e}",
                    extra={"request_id": event.request_id, "event_id": envelope.event_id},
                )
                return HandlerResult.NACK

        self._record(EVENT_REPORT_STATUS, outcome, event.request_id, sequence=event.sequence,
                     status=event.status.value)
        return HandlerResult.ACK

    def handle_completed(self, envelope: EventEnvelope, event: ReportCompletedEvent) -> HandlerResult:
        with self._locks.hold(event.request_id):
            try:
                outcome = self.store.apply_completion(
                    event.request_id,
                    event.status,
                    result_ref=event.result_ref,
                    error=event.error,
                    event_at=event.emitted_at,
                )
                record = self.store.get(event.request_id) if outcome is ApplyOutcome.APPLIED else None
            except StoreError as e:
                logger.warning(
                    f"Could not apply completion for {event.request_id}, leaving for redelivery: {e}",
                    extra={"request_id": event.request_id, "event_id": envelope.event_id},
                )
                return HandlerResult.NACK

            if record is not None:
                self._notify(record)

        self._record(EVENT_REPORT_COMPLETED, outcome, event.request_id, status=event.status.value)
        return HandlerResult.ACK

    def _notify(self, record: ReportRecord) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier(record)
        except Exception:
            # The record is already terminal; a redelivery would not notify again
            logger.exception(
                f"Completion notifier failed for {record.request_id}",
                extra={"request_id": record.request_id},
            )

    def _record(self, event_type: str, outcome: ApplyOutcome, request_id: str, **fields) -> None:
        increment_counter(reconciler_events_total, event_type=event_type, result=outcome.value)
        extra = {"request_id": request_id, "event_type": event_type, "result": outcome.value, **fields}

        if outcome is ApplyOutcome.APPLIED:
            logger.info(f"Applied {event_type} to {request_id}", extra=extra)
        elif outcome is ApplyOutcome.UNKNOWN_REQUEST:
            logger.warning(f"Received {event_type} for unknown request {request_id}; dropping", extra=extra)
        else:
            logger.debug(f"Ignored {event_type} for {request_id} ({outcome.value})", extra=extra)
