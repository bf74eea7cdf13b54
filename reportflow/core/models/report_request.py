"""
ReportRequest model and the closed per-type parameter payloads.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from reportflow.utils.validation import validate_extensions


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class ReportType(str, Enum):
    MOVIE_ANALYSIS = "movie-analysis"
    TREND_REPORT = "trend-report"
    USER_STATS = "user-stats"


# Report types that cannot be generated without a subject
SUBJECT_REQUIRED = {ReportType.MOVIE_ANALYSIS, ReportType.USER_STATS}


class ReportParameters(BaseModel):
    """
    Parameters shared by every report type.

    Attributes:
        format: Artifact format ("json" or "csv")
        extensions: Flat scalar map for generic extension fields
    """

    format: Literal["json", "csv"] = "json"
    extensions: dict[str, Any] = Field(default_factory=dict)

    @field_validator("extensions")
    @classmethod
    def check_extensions(cls, v):
        return validate_extensions(v)

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        extra = "forbid"
        frozen = True


class MovieAnalysisParameters(ReportParameters):
    include_ratings: bool = True


class TrendReportParameters(ReportParameters):
    period_days: int = Field(default=30, ge=1, le=365)
    limit: int = Field(default=10, ge=1, le=100)


class UserStatsParameters(ReportParameters):
    pass


PARAMETER_MODELS: dict[ReportType, type[ReportParameters]] = {
    ReportType.MOVIE_ANALYSIS: MovieAnalysisParameters,
    ReportType.TREND_REPORT: TrendReportParameters,
    ReportType.USER_STATS: UserStatsParameters,
}


def parse_parameters(report_type: ReportType, raw: dict[str, Any] | None) -> ReportParameters:
    """
    Parse a raw parameter mapping into the closed model for a report type.

    Raises:
        pydantic.ValidationError: If the mapping does not fit the model
    """
    model = PARAMETER_MODELS[ReportType(report_type)]
    return model.model_validate(raw or {})


class ReportRequest(BaseModel):
    """
    An accepted report request. Immutable once published.

    Attributes:
        request_id: Globally unique id assigned at ingestion
        report_type: movie-analysis, trend-report or user-stats
        subject_id: Movie or user id, depending on report type
        parameters: Parameters as dumped from the closed per-type model
        requested_by: Principal that submitted the request
        created_at: Ingestion time
    """

    request_id: str = Field(..., min_length=1)
    report_type: ReportType
    subject_id: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    requested_by: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_subject(self):
        if self.report_type in SUBJECT_REQUIRED and not self.subject_id:
            raise ValueError(f"subjectId is required for {self.report_type.value} reports")
        return self

    def typed_parameters(self) -> ReportParameters:
        """Parameters re-parsed into the closed model for this report type."""
        return parse_parameters(self.report_type, self.parameters)

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True
        json_schema_extra = {
            "example": {
                "requestId": "5b0c3f2e-8f43-4d8a-9a0c-1f6f1b2d9e11",
                "reportType": "movie-analysis",
                "subjectId": "tt1234567",
                "parameters": {"format": "csv", "includeRatings": True, "extensions": {}},
                "requestedBy": "analyst@example.com",
                "createdAt": "2025-11-17T10:00:00Z"
            }
        }
