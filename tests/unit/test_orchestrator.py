"""
Unit tests for the report orchestrator state machine.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

import pytest

from reportflow.bus import HandlerResult
from reportflow.core.errors import UnavailableError
from reportflow.core.models import (
    CompletionStatus,
    ProcessingStatus,
    ProcessingStatusEvent,
    ReportCompletedEvent,
    ReportRequest,
)
from reportflow.core.schema import TOPIC_PROCESSING_STATUS, TOPIC_REPORT_COMPLETED
from reportflow.worker import (
    ArtifactWriter,
    ExternalDataCache,
    InMemoryViewDataset,
    RecentRequestGuard,
    ReportOrchestrator,
    RequestState,
    build_strategies,
)

OBSERVER = "observer"


@pytest.fixture
def cache(fake_provider):
    cache = ExternalDataCache(fake_provider, retry_attempts=2, retry_wait=0)
    yield cache
    cache.close()


@pytest.fixture
def orchestrator(memory_bus, registry, cache, view_events, tmp_path):
    memory_bus.ensure_subscription(TOPIC_PROCESSING_STATUS, OBSERVER)
    memory_bus.ensure_subscription(TOPIC_REPORT_COMPLETED, OBSERVER)
    return ReportOrchestrator(
        memory_bus,
        registry,
        build_strategies(cache, InMemoryViewDataset(view_events)),
        ArtifactWriter(tmp_path / "reports"),
        RecentRequestGuard(),
    )


def published(bus, registry, topic):
    events = []
    while True:
        delivery = bus.receive(topic, OBSERVER, timeout=0)
        if delivery is None:
            return events
        events.append(registry.decode(delivery.data).event)
        delivery.ack()


def handle(orchestrator, registry, request):
    return orchestrator.handle(registry.wrap(request), request)


def movie_request(subject="tt1234567", **parameters):
    return ReportRequest(
        request_id=f"req-{subject}",
        report_type="movie-analysis",
        subject_id=subject,
        parameters=parameters,
        requested_by="analyst",
    )


class TestHappyPath:

    def test_status_sequence_and_single_completion(self, orchestrator, memory_bus, registry):
        request = movie_request()

        assert handle(orchestrator, registry, request) == HandlerResult.ACK

        statuses = published(memory_bus, registry, TOPIC_PROCESSING_STATUS)
        assert [s.status for s in statuses] == [
            ProcessingStatus.STARTED, ProcessingStatus.PROCESSING, ProcessingStatus.COMPLETED
        ]
        assert [s.sequence for s in statuses] == [0, 1, 2]
        assert all(isinstance(s, ProcessingStatusEvent) for s in statuses)

        completions = published(memory_bus, registry, TOPIC_REPORT_COMPLETED)
        assert len(completions) == 1
        assert isinstance(completions[0], ReportCompletedEvent)
        assert completions[0].status == CompletionStatus.COMPLETED
        assert completions[0].result_ref.startswith("file://")

        assert orchestrator.guard.state(request.request_id) == RequestState.DONE

    def test_artifact_written_under_request_id(self, orchestrator, memory_bus, registry, tmp_path):
        request = movie_request(format="csv")
        handle(orchestrator, registry, request)

        completion = published(memory_bus, registry, TOPIC_REPORT_COMPLETED)[0]
        path = Path(urlparse(completion.result_ref).path)
        assert path.name == f"{request.request_id}.csv"
        assert path.read_text().startswith("metric,value")

    def test_trend_report_needs_no_provider(self, orchestrator, memory_bus, registry, fake_provider):
        request = ReportRequest(
            request_id="req-trend",
            report_type="trend-report",
            parameters={"periodDays": 30, "limit": 2},
            requested_by="analyst",
            created_at=datetime(2025, 11, 17, 12, 0, tzinfo=timezone.utc),
        )

        assert handle(orchestrator, registry, request) == HandlerResult.ACK

        completion = published(memory_bus, registry, TOPIC_REPORT_COMPLETED)[0]
        document = json.loads(Path(urlparse(completion.result_ref).path).read_text())
        assert [row[2] for row in document["rows"]] == ["Alpha", "Beta"]
        assert fake_provider.calls == []


class TestFailurePaths:

    def test_provider_not_found_becomes_failed_completion(self, orchestrator, memory_bus, registry):
        request = movie_request("tt_nonexistent")

        assert handle(orchestrator, registry, request) == HandlerResult.ACK

        statuses = published(memory_bus, registry, TOPIC_PROCESSING_STATUS)
        assert statuses[-1].status == ProcessingStatus.FAILED

        completions = published(memory_bus, registry, TOPIC_REPORT_COMPLETED)
        assert len(completions) == 1
        assert completions[0].status == CompletionStatus.FAILED
        assert "not found" in completions[0].error
        assert completions[0].result_ref is None

    def test_unavailable_after_local_retries_becomes_failed(
        self, orchestrator, memory_bus, registry, fake_provider
    ):
        fake_provider.errors["tt1234567"] = [UnavailableError("down", "tt1234567") for _ in range(2)]

        assert handle(orchestrator, registry, movie_request()) == HandlerResult.ACK

        completion = published(memory_bus, registry, TOPIC_REPORT_COMPLETED)[0]
        assert completion.status == CompletionStatus.FAILED
        assert fake_provider.call_count("tt1234567") == 2

    def test_invalid_stored_parameters_become_failed(self, orchestrator, memory_bus, registry):
        request = ReportRequest(
            request_id="req-bad",
            report_type="trend-report",
            parameters={"periodDays": 0},
            requested_by="analyst",
        )

        assert handle(orchestrator, registry, request) == HandlerResult.ACK
        completion = published(memory_bus, registry, TOPIC_REPORT_COMPLETED)[0]
        assert completion.status == CompletionStatus.FAILED
        assert "Invalid parameters" in completion.error

    def test_generation_bug_becomes_failed(self, orchestrator, memory_bus, registry, fake_provider):
        fake_provider.payloads["tt0000001"] = {"Title": "Broken", "Ratings": "not-a-list"}

        assert handle(orchestrator, registry, movie_request("tt0000001")) == HandlerResult.ACK
        completion = published(memory_bus, registry, TOPIC_REPORT_COMPLETED)[0]
        assert completion.status == CompletionStatus.FAILED
        assert completion.error


class TestIdempotency:

    def test_duplicate_delivery_is_acked_without_reprocessing(
        self, orchestrator, memory_bus, registry, fake_provider
    ):
        request = movie_request()
        handle(orchestrator, registry, request)
        published(memory_bus, registry, TOPIC_PROCESSING_STATUS)
        published(memory_bus, registry, TOPIC_REPORT_COMPLETED)

        assert handle(orchestrator, registry, request) == HandlerResult.ACK

        assert published(memory_bus, registry, TOPIC_PROCESSING_STATUS) == []
        assert published(memory_bus, registry, TOPIC_REPORT_COMPLETED) == []
        assert fake_provider.call_count("tt1234567") == 1

    def test_publish_failure_nacks_and_releases_claim(self, orchestrator, memory_bus, registry):
        request = movie_request()
        memory_bus.inject_publish_failures(1)

        assert handle(orchestrator, registry, request) == HandlerResult.NACK
        assert orchestrator.guard.state(request.request_id) is None

        # Redelivery reprocesses from received
        assert handle(orchestrator, registry, request) == HandlerResult.ACK
        completions = published(memory_bus, registry, TOPIC_REPORT_COMPLETED)
        assert len(completions) == 1
        assert completions[0].status == CompletionStatus.COMPLETED
