"""
Pending sweep: closes the gap between persisting a request and publishing it.

A record still pending after the stale threshold either was never published
or was published and lost before any worker started it. Its original
request is re-published with the same request id; the worker's idempotency
guard and the request-id-derived artifact name make that safe.
"""

from datetime import timedelta

from reportflow.core.errors import TransportError
from reportflow.core.models import utcnow
from reportflow.observability.logger import get_logger, log_operation
from reportflow.observability.metrics import increment_counter, pending_republished_total
from reportflow.utils.validation import validate_limit

from ..store import ReportStore
from .gateway import RequestGateway

logger = get_logger(__name__)


class PendingRequestSweeper:
    """Re-publishes stale pending requests."""

    def __init__(
        self,
        store: ReportStore,
        gateway: RequestGateway,
        stale_after_seconds: float = 300.0,
        batch_size: int = 100,
        clock=utcnow,
    ):
        """
        Initialize the sweeper.

        Args:
            store: Report store
            gateway: Gateway used to re-publish requests
            stale_after_seconds: Age (since last touch) after which a pending record is swept
            batch_size: Maximum records handled per sweep
            clock: Wall clock returning aware datetimes
        """
        if stale_after_seconds <= 0:
            raise ValueError("stale_after_seconds must be positive")
        self.store = store
        self.gateway = gateway
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.batch_size = validate_limit(batch_size, "batch_size")
        self._clock = clock

    def sweep(self) -> int:
        """
        Re-publish every stale pending request.

        Stops early when the bus is unreachable; the remaining records are
        picked up by the next sweep.

        Returns:
            Number of requests re-published
        """
        cutoff = self._clock() - self.stale_after
        republished = 0

        with log_operation("Sweeping stale pending requests", logger=logger, cutoff=cutoff.isoformat()):
            for record in self.store.list_stale_pending(cutoff, limit=self.batch_size):
                try:
                    self.gateway.publish(record.to_request())
                except TransportError as e:
                    logger.warning(
                        f"Bus unavailable while re-publishing {record.request_id}; stopping sweep: {e}",
                        extra={"request_id": record.request_id},
                    )
                    break

                self.store.mark_republished(record.request_id)
                increment_counter(pending_republished_total)
                republished += 1
                logger.info(
                    f"Re-published pending request {record.request_id}",
                    extra={"request_id": record.request_id, "republish_count": record.republish_count + 1},
                )

        return republished
