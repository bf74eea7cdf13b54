"""
Report orchestrator (worker side).

Consumes report requests and drives each one through

    received -> fetching -> generating -> publishing -> done

emitting ProcessingStatusEvents along the way and exactly one logical
ReportCompletedEvent at the end. Generation failures of any kind become a
terminal failed completion; only bus failures escape, as a NACK, so that
the whole unit of work is retried from received on redelivery.
"""

import itertools
from typing import Iterator, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from reportflow.bus.base import EventBus, HandlerResult
from reportflow.core.errors import FetchError, ReportGenerationError, TransportError
from reportflow.core.models import (
    CompletionStatus,
    EventEnvelope,
    ProcessingStatus,
    ProcessingStatusEvent,
    ReportCompletedEvent,
    ReportRequest,
    ReportType,
)
from reportflow.core.schema import (
    TOPIC_PROCESSING_STATUS,
    TOPIC_REPORT_COMPLETED,
    EventRegistry,
)
from reportflow.observability.logger import get_logger
from reportflow.observability.metrics import (
    duplicate_requests_total,
    events_published_total,
    increment_counter,
    publish_failures_total,
    report_generation_seconds,
    reports_finished_total,
    track_duration,
)

from .artifacts import ArtifactWriter
from .idempotency import RecentRequestGuard, RequestState
from .strategies import GenerationStrategy

logger = get_logger(__name__)

# Progress reported once input data is available
PROGRESS_DATA_READY = 50


class ReportOrchestrator:
    """
    Turns report requests into status and completion events.

    Redelivered copies of a request that is in flight or already done
    (within the guard's window) are acknowledged without reprocessing.
    """

    def __init__(
        self,
        bus: EventBus,
        registry: EventRegistry,
        strategies: dict[ReportType, GenerationStrategy],
        artifact_writer: ArtifactWriter,
        guard: Optional[RecentRequestGuard] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            bus: Bus used to publish status and completion events
            registry: Registry used to wrap outgoing events
            strategies: Report type -> generation strategy
            artifact_writer: Writer for generated artifacts
            guard: Idempotency guard (a 24h window by default)
        """
        self.bus = bus
        self.registry = registry
        self.strategies = strategies
        self.artifact_writer = artifact_writer
        self.guard = guard or RecentRequestGuard()

    def handle(self, envelope: EventEnvelope, request: ReportRequest) -> HandlerResult:
        """
        Handle one report-request delivery.

        Returns:
            ACK once the completion event is published (or the request is a
            duplicate); NACK if publishing failed and the request must be
            redelivered.
        """
        log_extra = {"request_id": request.request_id, "report_type": request.report_type.value}

        claimed, state = self.guard.try_claim(request.request_id)
        if not claimed:
            logger.info(
                f"Duplicate request {request.request_id} acknowledged without reprocessing (state: {state.value})",
                extra=log_extra,
            )
            increment_counter(duplicate_requests_total, state=state.value)
            return HandlerResult.ACK

        try:
            self._process(request)
        except TransportError as e:
            logger.warning(
                f"Publishing failed for {request.request_id}; leaving request for redelivery: {e}",
                extra=log_extra,
            )
            self.guard.release(request.request_id)
            return HandlerResult.NACK
        except BaseException:
            self.guard.release(request.request_id)
            raise

        self.guard.advance(request.request_id, RequestState.DONE)
        return HandlerResult.ACK

    def _process(self, request: ReportRequest) -> None:
        sequence = itertools.count()
        request_id = request.request_id

        self._publish_status(request_id, sequence, ProcessingStatus.STARTED, progress=0)
        self.guard.advance(request_id, RequestState.FETCHING)

        strategy = self.strategies.get(request.report_type)
        if strategy is None:
            self._fail(request, sequence, f"No generation strategy for {request.report_type.value}")
            return

        try:
            parameters = request.typed_parameters()
        except PydanticValidationError as e:
            self._fail(request, sequence, f"Invalid parameters: {e.error_count()} validation error(s)")
            return

        try:
            data = strategy.fetch(request)
        except FetchError as e:
            logger.warning(
                f"Fetch failed for {request_id}: {e}",
                extra={"request_id": request_id, "reason": e.reason},
            )
            self._fail(request, sequence, str(e))
            return
        except ReportGenerationError as e:
            self._fail(request, sequence, str(e))
            return
        except Exception as e:
            logger.exception(f"Unexpected error fetching data for {request_id}", extra={"request_id": request_id})
            self._fail(request, sequence, f"Internal error while fetching data: {type(e).__name__}")
            return

        self.guard.advance(request_id, RequestState.GENERATING)
        self._publish_status(
            request_id, sequence, ProcessingStatus.PROCESSING,
            progress=PROGRESS_DATA_READY, message="Generating report",
        )

        try:
            with track_duration(report_generation_seconds, report_type=request.report_type.value):
                artifact = strategy.generate(request, parameters, data)
                result_ref = self.artifact_writer.write(request, artifact, parameters.format)
        except ReportGenerationError as e:
            self._fail(request, sequence, str(e))
            return
        except Exception as e:
            logger.exception(f"Unexpected error generating report {request_id}", extra={"request_id": request_id})
            self._fail(request, sequence, f"Internal error while generating report: {type(e).__name__}")
            return

        self.guard.advance(request_id, RequestState.PUBLISHING)
        self._publish_status(request_id, sequence, ProcessingStatus.COMPLETED, progress=100)
        self._publish(
            TOPIC_REPORT_COMPLETED,
            ReportCompletedEvent(
                request_id=request_id,
                status=CompletionStatus.COMPLETED,
                result_ref=result_ref,
            ),
        )
        increment_counter(reports_finished_total, report_type=request.report_type.value, status="completed")
        logger.info(f"Report {request_id} completed", extra={"request_id": request_id, "result_ref": result_ref})

    def _fail(self, request: ReportRequest, sequence: Iterator[int], error: str) -> None:
        self.guard.advance(request.request_id, RequestState.PUBLISHING)
        self._publish_status(request.request_id, sequence, ProcessingStatus.FAILED, message=error)
        self._publish(
            TOPIC_REPORT_COMPLETED,
            ReportCompletedEvent(
                request_id=request.request_id,
                status=CompletionStatus.FAILED,
                error=error,
            ),
        )
        increment_counter(reports_finished_total, report_type=request.report_type.value, status="failed")
        logger.info(f"Report {request.request_id} failed: {error}", extra={"request_id": request.request_id})

    def _publish_status(
        self,
        request_id: str,
        sequence: Iterator[int],
        status: ProcessingStatus,
        progress: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        self._publish(
            TOPIC_PROCESSING_STATUS,
            ProcessingStatusEvent(
                request_id=request_id,
                sequence=next(sequence),
                status=status,
                progress=progress,
                message=message,
            ),
        )

    def _publish(self, topic: str, event: BaseModel) -> str:
        envelope = self.registry.wrap(event)
        try:
            message_id = self.bus.publish(topic, envelope)
        except TransportError:
            increment_counter(publish_failures_total, topic=topic)
            raise
        increment_counter(events_published_total, topic=topic, event_type=envelope.event_type)
        return message_id
