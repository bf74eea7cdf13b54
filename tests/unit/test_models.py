"""
Unit tests for Pydantic data models.

Tests request, event, record and cache models for validation, aliasing and
state-machine helpers.
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from reportflow.core.models import (
    CacheEntry,
    CompletionStatus,
    MovieAnalysisParameters,
    ProcessingStatus,
    ProcessingStatusEvent,
    ReportCompletedEvent,
    ReportRecord,
    ReportRequest,
    ReportStatus,
    ReportType,
    TrendReportParameters,
    is_forward,
    is_terminal,
    parse_parameters,
)


class TestReportRequest:
    """Tests for ReportRequest model"""

    def test_valid_movie_request(self):
        """Test creating a valid movie-analysis request"""
        request = ReportRequest(
            request_id="req-1",
            report_type="movie-analysis",
            subject_id="tt1234567",
            requested_by="analyst",
        )
        assert request.report_type == ReportType.MOVIE_ANALYSIS
        assert request.parameters == {}
        assert request.created_at.tzinfo is not None

    def test_subject_required_for_movie_analysis(self):
        """Test movie-analysis without subject is rejected"""
        with pytest.raises(ValidationError) as exc_info:
            ReportRequest(request_id="req-1", report_type="movie-analysis", requested_by="analyst")
        assert "subjectId" in str(exc_info.value)

    def test_trend_report_needs_no_subject(self):
        request = ReportRequest(request_id="req-1", report_type="trend-report", requested_by="analyst")
        assert request.subject_id is None

    def test_camel_case_wire_format(self):
        """Test serialization uses camelCase and accepts it back"""
        request = ReportRequest(
            request_id="req-1", report_type="user-stats", subject_id="u1", requested_by="analyst"
        )
        dumped = request.model_dump(mode="json", by_alias=True)
        assert {"requestId", "reportType", "subjectId", "requestedBy", "createdAt"} <= set(dumped)

        restored = ReportRequest.model_validate(dumped)
        assert restored == request

    def test_request_is_immutable(self):
        request = ReportRequest(request_id="req-1", report_type="trend-report", requested_by="analyst")
        with pytest.raises(ValidationError):
            request.subject_id = "tt1"

    def test_typed_parameters(self):
        request = ReportRequest(
            request_id="req-1",
            report_type="trend-report",
            parameters={"periodDays": 7, "limit": 3},
            requested_by="analyst",
        )
        params = request.typed_parameters()
        assert isinstance(params, TrendReportParameters)
        assert params.period_days == 7
        assert params.limit == 3
        assert params.format == "json"


class TestReportParameters:
    """Tests for the closed per-type parameter models"""

    def test_defaults(self):
        params = parse_parameters(ReportType.MOVIE_ANALYSIS, None)
        assert isinstance(params, MovieAnalysisParameters)
        assert params.include_ratings is True
        assert params.format == "json"

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError):
            parse_parameters(ReportType.USER_STATS, {"periodDays": 3})

    def test_period_bounds(self):
        with pytest.raises(ValidationError):
            parse_parameters(ReportType.TREND_REPORT, {"periodDays": 0})
        with pytest.raises(ValidationError):
            parse_parameters(ReportType.TREND_REPORT, {"limit": 101})

    def test_format_restricted(self):
        with pytest.raises(ValidationError):
            parse_parameters(ReportType.TREND_REPORT, {"format": "xml"})

    def test_extensions_must_be_flat(self):
        """Test nested extension values are rejected"""
        with pytest.raises(ValidationError):
            parse_parameters(ReportType.TREND_REPORT, {"extensions": {"nested": {"a": 1}}})

        params = parse_parameters(ReportType.TREND_REPORT, {"extensions": {"locale": "en", "top": 5}})
        assert params.extensions == {"locale": "en", "top": 5}


class TestEvents:
    """Tests for status and completion events"""

    def test_progress_bounds(self):
        with pytest.raises(ValidationError):
            ProcessingStatusEvent(request_id="r", sequence=0, status="started", progress=101)

    def test_negative_sequence_rejected(self):
        with pytest.raises(ValidationError):
            ProcessingStatusEvent(request_id="r", sequence=-1, status="started")

    def test_completed_requires_result_ref(self):
        with pytest.raises(ValidationError):
            ReportCompletedEvent(request_id="r", status="completed")

    def test_failed_requires_error(self):
        with pytest.raises(ValidationError):
            ReportCompletedEvent(request_id="r", status="failed", error="   ")

    def test_valid_completion(self):
        event = ReportCompletedEvent(request_id="r", status="completed", result_ref="file:///tmp/r.json")
        assert event.status == CompletionStatus.COMPLETED
        assert event.model_dump(by_alias=True)["resultRef"] == "file:///tmp/r.json"

    def test_status_values(self):
        event = ProcessingStatusEvent(request_id="r", sequence=2, status="processing", progress=50)
        assert event.status == ProcessingStatus.PROCESSING


class TestReportRecord:
    """Tests for ReportRecord and the status state machine"""

    def test_from_request_roundtrip(self):
        created = datetime(2025, 11, 17, 10, 0, tzinfo=timezone.utc)
        request = ReportRequest(
            request_id="req-9",
            report_type="movie-analysis",
            subject_id="tt1234567",
            parameters={"format": "csv"},
            requested_by="analyst",
            created_at=created,
        )
        record = ReportRecord.from_request(request)

        assert record.status == ReportStatus.PENDING
        assert record.last_sequence is None
        assert record.republish_count == 0
        assert record.to_request() == request

    @pytest.mark.parametrize("current,target,expected", [
        (ReportStatus.PENDING, ReportStatus.STARTED, True),
        (ReportStatus.STARTED, ReportStatus.PROCESSING, True),
        (ReportStatus.PROCESSING, ReportStatus.PROCESSING, True),
        (ReportStatus.PROCESSING, ReportStatus.STARTED, False),
        (ReportStatus.PENDING, ReportStatus.COMPLETED, True),
        (ReportStatus.COMPLETED, ReportStatus.FAILED, False),
        (ReportStatus.FAILED, ReportStatus.FAILED, False),
    ])
    def test_is_forward(self, current, target, expected):
        assert is_forward(current, target) is expected

    def test_terminal_statuses(self):
        assert is_terminal(ReportStatus.COMPLETED)
        assert is_terminal(ReportStatus.FAILED)
        assert not is_terminal(ReportStatus.PROCESSING)


class TestCacheEntry:
    """Tests for CacheEntry expiry"""

    def test_expiry_boundary(self):
        entry = CacheEntry(subject_id="tt1", payload={}, fetched_at=0.0, expires_at=3600.0)
        assert not entry.is_expired(3599.9)
        assert entry.is_expired(3600.0)
        assert entry.is_expired(3601.0)
