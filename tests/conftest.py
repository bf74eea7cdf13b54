"""
Pytest configuration and fixtures for reportflow tests

This module provides shared fixtures for unit, integration, and E2E tests.
"""
import os
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest

from reportflow.bus import InMemoryEventBus, SubscriptionConsumer
from reportflow.core.errors import NotFoundError
from reportflow.core.models import ReportRecord
from reportflow.core.schema import (
    TOPIC_PROCESSING_STATUS,
    TOPIC_REPORT_COMPLETED,
    TOPIC_REPORT_REQUESTS,
    create_default_registry,
)
from reportflow.requester import PendingRequestSweeper, RequestGateway, StatusReconciler
from reportflow.store import InMemoryReportStore
from reportflow.worker import (
    ArtifactWriter,
    ExternalDataCache,
    InMemoryViewDataset,
    RecentRequestGuard,
    ReportOrchestrator,
    ViewEvent,
    build_strategies,
)


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests that require Docker containers"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests that run requester and worker together"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds to run"
    )


# =======================
# TEST DOUBLES
# =======================

class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    """Manually advanced wall clock returning aware datetimes."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 11, 17, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class FakeMovieProvider:
    """
    Provider double that counts calls.

    Subjects without a payload raise NotFoundError; errors queued in
    `errors[subject_id]` are raised (in order) before the payload is served.
    """

    def __init__(self, payloads: dict | None = None, delay: float = 0.0):
        self.payloads = dict(payloads or {})
        self.errors: dict[str, list[Exception]] = {}
        self.delay = delay
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def fetch(self, subject_id: str) -> dict:
        with self._lock:
            self.calls.append(subject_id)
            queued = self.errors.get(subject_id)
            error = queued.pop(0) if queued else None

        if self.delay:
            time.sleep(self.delay)
        if error is not None:
            raise error
        if subject_id not in self.payloads:
            raise NotFoundError(f"Movie {subject_id} not found", subject_id)
        return self.payloads[subject_id]

    def call_count(self, subject_id: str) -> int:
        with self._lock:
            return self.calls.count(subject_id)


# =======================
# DATA FIXTURES
# =======================

MOVIE_PAYLOAD = {
    "Title": "The Example",
    "Year": "2010",
    "Runtime": "148 min",
    "Genre": "Action, Adventure, Sci-Fi",
    "BoxOffice": "$292,587,330",
    "imdbVotes": "2,512,345",
    "imdbRating": "8.8",
    "Ratings": [
        {"Source": "Internet Movie Database", "Value": "8.8/10"},
        {"Source": "Rotten Tomatoes", "Value": "87%"},
        {"Source": "Metacritic", "Value": "74/100"},
    ],
    "Response": "True",
}


@pytest.fixture
def movie_payload() -> dict:
    """OMDb-style payload for tt1234567"""
    return dict(MOVIE_PAYLOAD)


@pytest.fixture
def fake_provider() -> FakeMovieProvider:
    """Provider that knows tt1234567 and nothing else"""
    return FakeMovieProvider({"tt1234567": dict(MOVIE_PAYLOAD)})


@pytest.fixture
def make_provider():
    """Factory for providers with custom payloads or latency"""
    return FakeMovieProvider


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def view_events() -> list[ViewEvent]:
    """Small view history anchored around 2025-11-17"""
    base = datetime(2025, 11, 17, 9, 0, tzinfo=timezone.utc)
    rows = [
        ("u1", "tt1", "Alpha", 8.0, 1),
        ("u1", "tt2", "Beta", 6.0, 2),
        ("u2", "tt1", "Alpha", 9.0, 3),
        ("u2", "tt3", "Gamma", None, 4),
        ("u3", "tt1", "Alpha", 7.0, 5),
        ("u3", "tt2", "Beta", None, 6),
        ("u1", "tt1", "Alpha", None, 7),
        # Outside a 30 day window
        ("u2", "tt3", "Gamma", 5.0, 45),
    ]
    return [
        ViewEvent(user_id=user, movie_id=movie, title=title, rating=rating,
                  viewed_at=base - timedelta(days=days_ago))
        for user, movie, title, rating, days_ago in rows
    ]


@pytest.fixture
def registry():
    return create_default_registry()


@pytest.fixture
def memory_bus() -> Generator[InMemoryEventBus, None, None]:
    bus = InMemoryEventBus(visibility_timeout=30.0)
    yield bus
    bus.close()


@pytest.fixture
def report_store() -> InMemoryReportStore:
    return InMemoryReportStore()


# =======================
# IN-PROCESS SYSTEM
# =======================

class ReportFlowHarness:
    """
    Requester and worker wired together over one in-memory bus.

    Consumers are created up front so every topic has its subscriptions
    before anything is published.
    """

    def __init__(self, reports_dir, provider: FakeMovieProvider, dataset: InMemoryViewDataset):
        self.registry = create_default_registry()
        self.bus = InMemoryEventBus(visibility_timeout=30.0)
        self.store = InMemoryReportStore()
        self.provider = provider
        self.notifications: list[ReportRecord] = []

        self.cache = ExternalDataCache(provider, ttl_seconds=3600, retry_attempts=2, retry_wait=0)
        self.writer = ArtifactWriter(reports_dir)
        self.guard = RecentRequestGuard()
        self.orchestrator = ReportOrchestrator(
            self.bus, self.registry, build_strategies(self.cache, dataset), self.writer, self.guard
        )
        self.gateway = RequestGateway(self.bus, self.registry, self.store)
        self.reconciler = StatusReconciler(self.store, notifier=self.notifications.append)
        self.sweeper = PendingRequestSweeper(self.store, self.gateway, stale_after_seconds=60)

        self.worker_consumer = SubscriptionConsumer(
            self.bus, self.registry, TOPIC_REPORT_REQUESTS, "report-orchestrator", self.orchestrator.handle
        )
        self.status_consumer = SubscriptionConsumer(
            self.bus, self.registry, TOPIC_PROCESSING_STATUS, "status-reconciler", self.reconciler.handle_status
        )
        self.completed_consumer = SubscriptionConsumer(
            self.bus, self.registry, TOPIC_REPORT_COMPLETED, "completion-reconciler",
            self.reconciler.handle_completed,
        )

    def pump(self, max_rounds: int = 20) -> None:
        """Drain worker, then status, then completion consumers until idle."""
        for _ in range(max_rounds):
            handled = (
                self.worker_consumer.drain()
                + self.status_consumer.drain()
                + self.completed_consumer.drain()
            )
            if handled == 0:
                return
        raise AssertionError("System did not become idle")

    def close(self) -> None:
        self.cache.close()
        self.bus.close()


@pytest.fixture
def harness(tmp_path, fake_provider, view_events) -> Generator[ReportFlowHarness, None, None]:
    system = ReportFlowHarness(tmp_path / "reports", fake_provider, InMemoryViewDataset(view_events))
    yield system
    system.close()


# =======================
# CONTAINER FIXTURES (Testcontainers)
# =======================

def _docker_available() -> bool:
    try:
        import docker

        docker.from_env().ping()
        return True
    except Exception:
        return False


@pytest.fixture(scope="session")
def redis_container():
    """
    Start a Redis container for integration tests

    Yields:
        RedisContainer instance
    """
    if not _docker_available():
        pytest.skip("Docker is not available")

    from testcontainers.redis import RedisContainer

    with RedisContainer(image="redis:7.2-alpine") as redis_server:
        yield redis_server


@pytest.fixture(scope="session")
def redis_url(redis_container) -> str:
    host = redis_container.get_container_host_ip()
    port = redis_container.get_exposed_port(6379)
    return f"redis://{host}:{port}/0"


@pytest.fixture(scope="session")
def postgres_container():
    """
    Start PostgreSQL container for integration tests

    Yields:
        PostgresContainer instance
    """
    if not _docker_available():
        pytest.skip("Docker is not available")

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:16.2-alpine",
        username="test_reportflow",
        password="test_password",
        dbname="test_reportflow",
    ) as postgres:
        postgres.get_connection_url()
        yield postgres


@pytest.fixture
def db_pool(postgres_container):
    """Open DatabaseConnectionPool against the container"""
    from reportflow.store import DatabaseConnectionPool

    pool = DatabaseConnectionPool(
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        database="test_reportflow",
        user="test_reportflow",
        password="test_password",
    )
    pool.open()
    yield pool
    pool.close()


# =======================
# CONFIGURATION FIXTURES
# =======================

@pytest.fixture
def clean_env(monkeypatch):
    """Remove every settings-related variable from the environment"""
    from reportflow.config.settings import CONFIG_PATH_ENV, ENV_OVERRIDES

    for variable in list(ENV_OVERRIDES) + [CONFIG_PATH_ENV]:
        monkeypatch.delenv(variable, raising=False)
    return os.environ
