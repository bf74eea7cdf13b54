"""
Error taxonomy for the report orchestration core.

Transport and store failures surface as non-acknowledgment (the bus redelivers),
schema errors mark poison messages, and fetch/generation errors are folded into
a terminal failed completion by the orchestrator.
"""

from reportflow.utils.validation import ValidationError


class ReportFlowError(Exception):
    """Base class for all reportflow errors."""
    pass


class ConfigError(ReportFlowError):
    """Raised when settings cannot be loaded or are invalid."""
    pass


class TransportError(ReportFlowError):
    """Raised when the event bus is unreachable or rejects an operation."""

    def __init__(self, message: str, topic: str | None = None):
        self.topic = topic
        super().__init__(message)


class SchemaError(ReportFlowError):
    """
    Raised when an event payload is malformed or has an unknown type/version.

    A message that fails with SchemaError can never succeed on redelivery.
    """

    def __init__(self, message: str, event_type: str | None = None, schema_version: int | None = None):
        self.event_type = event_type
        self.schema_version = schema_version
        super().__init__(message)


class StoreError(ReportFlowError):
    """Raised when the persistence collaborator fails."""
    pass


class FetchError(ReportFlowError):
    """Raised when the external movie-data provider cannot supply a payload."""

    reason = "error"
    retryable = False

    def __init__(self, message: str, subject_id: str | None = None):
        self.subject_id = subject_id
        super().__init__(message)


class NotFoundError(FetchError):
    reason = "not_found"


class RateLimitedError(FetchError):
    reason = "rate_limited"
    retryable = True


class UnavailableError(FetchError):
    reason = "unavailable"
    retryable = True


class FetchTimeoutError(FetchError):
    reason = "timeout"


class ReportGenerationError(ReportFlowError):
    """Raised when a generation strategy cannot produce an artifact."""
    pass


__all__ = [
    "ReportFlowError",
    "ConfigError",
    "TransportError",
    "SchemaError",
    "StoreError",
    "FetchError",
    "NotFoundError",
    "RateLimitedError",
    "UnavailableError",
    "FetchTimeoutError",
    "ReportGenerationError",
    "ValidationError",
]
