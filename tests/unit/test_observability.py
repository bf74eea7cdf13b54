"""
Unit tests for structured logging and metrics helpers.
"""

import io
import json
import logging

import pytest

from reportflow.observability.logger import CustomJsonFormatter, configure_logging, log_operation
from reportflow.observability.metrics import (
    generate_metrics,
    get_counter_value,
    increment_counter,
    reports_finished_total,
)


@pytest.fixture
def json_logger():
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(CustomJsonFormatter(fmt="%(timestamp)s %(level)s %(logger)s %(message)s"))

    logger = logging.getLogger("reportflow.tests.observability")
    logger.handlers = [handler]
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    yield logger, stream
    logger.handlers.clear()


def lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


class TestJsonLogging:

    def test_extra_fields_are_emitted(self, json_logger):
        logger, stream = json_logger

        logger.info("Applied report.status", extra={"request_id": "req-1", "result": "applied"})

        (entry,) = lines(stream)
        assert entry["message"] == "Applied report.status"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "reportflow.tests.observability"
        assert entry["request_id"] == "req-1"
        assert entry["result"] == "applied"
        assert "thread_id" in entry

    def test_log_operation_success(self, json_logger):
        logger, stream = json_logger

        with log_operation("Sweeping stale pending requests", logger=logger, cutoff="t0"):
            pass

        start, done = lines(stream)
        assert start["message"] == "Starting: Sweeping stale pending requests"
        assert done["status"] == "success"
        assert done["cutoff"] == "t0"
        assert done["duration_seconds"] >= 0

    def test_log_operation_failure_propagates(self, json_logger):
        logger, stream = json_logger

        with pytest.raises(KeyError):
            with log_operation("Generating report", logger=logger):
                raise KeyError("Title")

        failed = lines(stream)[-1]
        assert failed["level"] == "ERROR"
        assert failed["status"] == "error"
        assert failed["error_type"] == "KeyError"


class TestConfigureLogging:

    @pytest.fixture(autouse=True)
    def restore_package_logger(self):
        yield
        package_logger = logging.getLogger("reportflow")
        package_logger.handlers.clear()
        package_logger.propagate = True
        package_logger.setLevel(logging.NOTSET)

    def test_reconfiguring_replaces_the_handler(self):
        configure_logging("DEBUG", "json")
        package_logger = configure_logging("WARNING", "text")

        assert len(package_logger.handlers) == 1
        assert package_logger.level == logging.WARNING
        assert not package_logger.propagate
        assert not isinstance(package_logger.handlers[0].formatter, CustomJsonFormatter)

    def test_unknown_level_falls_back_to_info(self):
        package_logger = configure_logging("LOUD", "json")

        assert package_logger.level == logging.INFO
        assert isinstance(package_logger.handlers[0].formatter, CustomJsonFormatter)


class TestMetrics:

    def test_counter_helpers(self):
        before = get_counter_value(reports_finished_total, report_type="user-stats", status="completed")
        increment_counter(reports_finished_total, report_type="user-stats", status="completed")
        after = get_counter_value(reports_finished_total, report_type="user-stats", status="completed")
        assert after == before + 1

    def test_exposition_format(self):
        increment_counter(reports_finished_total, report_type="trend-report", status="failed")

        text = generate_metrics().decode("utf-8")

        assert "reportflow_reports_finished_total" in text
        assert 'report_type="trend-report"' in text
