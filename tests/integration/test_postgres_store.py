"""
Integration tests for the PostgreSQL connection pool and report store.

Requires Docker; a PostgreSQL container is started once per session.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from reportflow.core.models import ReportRequest, ReportStatus, utcnow
from reportflow.store import ApplyOutcome, DatabaseConnectionPool, PostgresReportStore

pytestmark = pytest.mark.integration


@pytest.fixture
def store(db_pool):
    store = PostgresReportStore(db_pool)
    store.create_schema()
    db_pool.execute_command("TRUNCATE report_record")
    return store


def make_request(request_id="req-1", **kwargs):
    kwargs.setdefault("report_type", "movie-analysis")
    kwargs.setdefault("subject_id", "tt1234567")
    kwargs.setdefault("parameters", {"format": "csv", "includeRatings": True, "extensions": {}})
    return ReportRequest(request_id=request_id, requested_by="analyst", **kwargs)


class TestConnectionPool:

    def test_pool_sizes(self, postgres_container):
        """Test that connection pool initializes correctly"""
        pool = DatabaseConnectionPool(
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            database="test_reportflow",
            user="test_reportflow",
            password="test_password",
            min_size=2,
            max_size=5,
        )
        pool.open()

        assert pool.is_open
        assert pool._pool.min_size == 2
        assert pool._pool.max_size == 5

        pool.close()
        assert not pool.is_open

    def test_rows_are_dictionaries(self, db_pool):
        assert db_pool.execute_query("SELECT 42 AS answer") == [{"answer": 42}]

    def test_context_manager(self, postgres_container):
        """Test using pool as context manager"""
        with DatabaseConnectionPool(
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            database="test_reportflow",
            user="test_reportflow",
            password="test_password",
        ) as pool:
            assert pool.execute_query("SELECT 1 AS test")[0]["test"] == 1

        with pytest.raises(RuntimeError):
            pool.execute_query("SELECT 1")

    def test_password_is_required(self, monkeypatch):
        monkeypatch.delenv("DB_PASSWORD", raising=False)
        with pytest.raises(ValueError, match="password"):
            DatabaseConnectionPool(host="localhost")


class TestPostgresReportStore:

    def test_create_pending_is_idempotent(self, store):
        request = make_request()

        assert store.create_pending(request) is True
        assert store.create_pending(request) is False

        record = store.get("req-1")
        assert record.status == ReportStatus.PENDING
        assert record.parameters == request.parameters
        assert record.last_sequence is None

    def test_schema_creation_is_repeatable(self, store):
        store.create_schema()

    def test_status_merge_rules(self, store):
        store.create_pending(make_request())

        assert store.apply_status("req-1", ReportStatus.STARTED, 0, progress=0) is ApplyOutcome.APPLIED
        assert store.apply_status("req-1", ReportStatus.PROCESSING, 2, progress=50) is ApplyOutcome.APPLIED
        assert store.apply_status("req-1", ReportStatus.PROCESSING, 1, progress=10) is ApplyOutcome.STALE
        assert store.apply_status("req-1", ReportStatus.STARTED, 3) is ApplyOutcome.BACKWARD
        assert store.apply_status("nope", ReportStatus.STARTED, 0) is ApplyOutcome.UNKNOWN_REQUEST

        record = store.get("req-1")
        assert record.status == ReportStatus.PROCESSING
        assert record.last_sequence == 2
        assert record.progress == 50

    def test_first_completion_wins(self, store):
        store.create_pending(make_request())

        assert store.apply_completion("req-1", "completed", result_ref="file:///r.csv") is ApplyOutcome.APPLIED
        assert store.apply_completion("req-1", "failed", error="late") is ApplyOutcome.TERMINAL
        assert store.apply_status("req-1", ReportStatus.PROCESSING, 9) is ApplyOutcome.TERMINAL
        assert store.apply_completion("nope", "failed", error="x") is ApplyOutcome.UNKNOWN_REQUEST

        record = store.get("req-1")
        assert record.status == ReportStatus.COMPLETED
        assert record.result_ref == "file:///r.csv"
        assert record.error is None
        assert record.progress == 100

    def test_concurrent_completions_apply_once(self, store):
        store.create_pending(make_request())
        barrier = threading.Barrier(6)

        def complete(i):
            barrier.wait()
            return store.apply_completion("req-1", "completed", result_ref=f"file:///r{i}.csv")

        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(complete, range(6)))

        assert outcomes.count(ApplyOutcome.APPLIED) == 1
        assert outcomes.count(ApplyOutcome.TERMINAL) == 5

    def test_stale_pending_listing_and_republish(self, store):
        store.create_pending(make_request("req-a"))
        store.create_pending(make_request("req-b"))
        store.apply_status("req-b", ReportStatus.STARTED, 0)

        future = utcnow() + timedelta(minutes=1)
        stale = store.list_stale_pending(future)
        assert [r.request_id for r in stale] == ["req-a"]

        assert store.mark_republished("req-a") is True
        assert store.mark_republished("req-b") is False
        assert store.get("req-a").republish_count == 1
        assert store.list_stale_pending(utcnow() - timedelta(minutes=1)) == []
