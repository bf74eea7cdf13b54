"""
Request gateway: the synchronous entry point for report submissions.

submit() validates the input, persists a pending ReportRecord, publishes the
request and returns its id. Malformed input is rejected before anything is
persisted or published. A publish failure leaves the record pending and is
re-raised; the pending sweep re-publishes such records later.
"""

import uuid
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from reportflow.bus.base import EventBus
from reportflow.core.errors import TransportError
from reportflow.core.models import ReportRequest, ReportType, parse_parameters, utcnow
from reportflow.core.models.report_request import SUBJECT_REQUIRED
from reportflow.core.schema import TOPIC_REPORT_REQUESTS, EventRegistry
from reportflow.observability.logger import get_logger
from reportflow.observability.metrics import events_published_total, increment_counter, submissions_total
from reportflow.utils.validation import ValidationError, validate_requested_by, validate_subject_id

from ..store import ReportStore

logger = get_logger(__name__)


def _describe(error: PydanticValidationError) -> str:
    parts = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail.get("loc", ())) or "parameters"
        parts.append(f"{location}: {detail.get('msg')}")
    return "; ".join(parts)


class RequestGateway:
    """
    Accepts report requests on behalf of the front end.

    Usage:
        gateway = RequestGateway(bus, registry, store)
        request_id = gateway.submit("movie-analysis", subject_id="tt1234567")
    """

    def __init__(
        self,
        bus: EventBus,
        registry: EventRegistry,
        store: ReportStore,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        clock=utcnow,
    ):
        self.bus = bus
        self.registry = registry
        self.store = store
        self.id_factory = id_factory
        self._clock = clock

    def build_request(
        self,
        report_type: str | ReportType,
        subject_id: Optional[str] = None,
        parameters: Optional[dict[str, Any]] = None,
        requested_by: str = "anonymous",
    ) -> ReportRequest:
        """
        Validate raw input into a ReportRequest with a fresh id.

        Raises:
            ValidationError: If any field is malformed
        """
        try:
            report_type = ReportType(report_type)
        except ValueError:
            allowed = ", ".join(t.value for t in ReportType)
            raise ValidationError(f"Unknown report type {report_type!r}; expected one of: {allowed}")

        requested_by = validate_requested_by(requested_by)

        if report_type in SUBJECT_REQUIRED:
            if subject_id is None:
                raise ValidationError(f"subject_id is required for {report_type.value} reports")
            subject_id = validate_subject_id(subject_id)
        elif subject_id is not None:
            raise ValidationError(f"{report_type.value} reports do not take a subject_id")

        if parameters is not None and not isinstance(parameters, dict):
            raise ValidationError("parameters must be a mapping")

        try:
            typed = parse_parameters(report_type, parameters)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid parameters for {report_type.value}: {_describe(e)}") from e

        return ReportRequest(
            request_id=self.id_factory(),
            report_type=report_type,
            subject_id=subject_id,
            parameters=typed.model_dump(by_alias=True, mode="json"),
            requested_by=requested_by,
            created_at=self._clock(),
        )

    def submit(
        self,
        report_type: str | ReportType,
        subject_id: Optional[str] = None,
        parameters: Optional[dict[str, Any]] = None,
        requested_by: str = "anonymous",
    ) -> str:
        """
        Submit a report request.

        Args:
            report_type: movie-analysis, trend-report or user-stats
            subject_id: Movie id or user id (required for movie-analysis and user-stats)
            parameters: Per-type parameters (camelCase or snake_case keys)
            requested_by: Principal submitting the request

        Returns:
            The new request id

        Raises:
            ValidationError: On malformed input (nothing persisted or published)
            StoreError: If the pending record cannot be persisted
            TransportError: If the request could not be published (record stays pending)
        """
        try:
            request = self.build_request(report_type, subject_id, parameters, requested_by)
        except ValidationError as e:
            label = report_type.value if isinstance(report_type, ReportType) else str(report_type)
            if label not in {t.value for t in ReportType}:
                label = "unknown"
            increment_counter(submissions_total, report_type=label, status="rejected")
            logger.info(f"Rejected report submission: {e}", extra={"report_type": label})
            raise

        log_extra = {"request_id": request.request_id, "report_type": request.report_type.value}

        self.store.create_pending(request)

        try:
            self.publish(request)
        except TransportError as e:
            increment_counter(submissions_total, report_type=request.report_type.value, status="publish_failed")
            logger.warning(
                f"Request {request.request_id} persisted but not published; left pending for the sweep: {e}",
                extra=log_extra,
            )
            raise

        increment_counter(submissions_total, report_type=request.report_type.value, status="accepted")
        logger.info(f"Accepted report request {request.request_id}", extra=log_extra)
        return request.request_id

    def publish(self, request: ReportRequest) -> str:
        """Publish a (possibly previously published) request unchanged."""
        envelope = self.registry.wrap(request)
        message_id = self.bus.publish(TOPIC_REPORT_REQUESTS, envelope)
        increment_counter(events_published_total, topic=TOPIC_REPORT_REQUESTS, event_type=envelope.event_type)
        return message_id
