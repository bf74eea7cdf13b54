"""
Prometheus metrics collection for reportflow

This module provides metrics instrumentation for monitoring event
delivery, report generation, cache efficiency, and reconciliation.
"""
import os
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)


# Global registry for metrics
REGISTRY = CollectorRegistry()


# =======================
# BUS METRICS
# =======================

events_published_total = Counter(
    name="reportflow_events_published_total",
    documentation="Total number of events published to the bus",
    labelnames=["topic", "event_type"],
    registry=REGISTRY,
)

publish_failures_total = Counter(
    name="reportflow_publish_failures_total",
    documentation="Total number of publish attempts that failed after retries",
    labelnames=["topic"],
    registry=REGISTRY,
)

deliveries_handled_total = Counter(
    name="reportflow_deliveries_handled_total",
    documentation="Total number of deliveries handled by a subscription",
    labelnames=["subscription", "outcome"],  # outcome: ack, nack, poison
    registry=REGISTRY,
)

delivery_handling_seconds = Histogram(
    name="reportflow_delivery_handling_seconds",
    documentation="Time spent handling a single delivery",
    labelnames=["subscription"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)

# =======================
# WORKER METRICS
# =======================

duplicate_requests_total = Counter(
    name="reportflow_duplicate_requests_total",
    documentation="Report requests acknowledged without reprocessing",
    labelnames=["state"],  # state the request was in when the duplicate arrived
    registry=REGISTRY,
)

report_generation_seconds = Histogram(
    name="reportflow_report_generation_seconds",
    documentation="Time spent generating a report artifact",
    labelnames=["report_type"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
    registry=REGISTRY,
)

reports_finished_total = Counter(
    name="reportflow_reports_finished_total",
    documentation="Reports that reached a terminal status on the worker",
    labelnames=["report_type", "status"],  # status: completed, failed
    registry=REGISTRY,
)

cache_lookups_total = Counter(
    name="reportflow_cache_lookups_total",
    documentation="External data cache lookups",
    labelnames=["result"],  # result: hit, miss, coalesced, expired
    registry=REGISTRY,
)

cache_evictions_total = Counter(
    name="reportflow_cache_evictions_total",
    documentation="External data cache evictions",
    labelnames=["reason"],  # reason: expired, capacity
    registry=REGISTRY,
)

provider_fetch_seconds = Histogram(
    name="reportflow_provider_fetch_seconds",
    documentation="Latency of calls to the external movie-data provider",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
    registry=REGISTRY,
)

provider_failures_total = Counter(
    name="reportflow_provider_failures_total",
    documentation="Failed calls to the external movie-data provider",
    labelnames=["reason"],  # reason: not_found, rate_limited, unavailable, timeout
    registry=REGISTRY,
)

# =======================
# REQUESTER METRICS
# =======================

submissions_total = Counter(
    name="reportflow_submissions_total",
    documentation="Report submissions received by the gateway",
    labelnames=["report_type", "status"],  # status: accepted, rejected, publish_failed
    registry=REGISTRY,
)

reconciler_events_total = Counter(
    name="reportflow_reconciler_events_total",
    documentation="Events processed by the status reconciler",
    labelnames=["event_type", "result"],  # result: applied, unknown_request, ignored_terminal, ignored_stale, ignored_backward
    registry=REGISTRY,
)

pending_republished_total = Counter(
    name="reportflow_pending_republished_total",
    documentation="Stale pending requests re-published by the sweep",
    registry=REGISTRY,
)


# =======================
# HELPER FUNCTIONS
# =======================

def generate_metrics() -> bytes:
    """
    Generate Prometheus metrics in text format

    Returns:
        Metrics in Prometheus text format
    """
    return generate_latest(REGISTRY)


def start_metrics_server(port: Optional[int] = None) -> None:
    """
    Start HTTP server for Prometheus metrics

    Args:
        port: Port to listen on (defaults to env var METRICS_PORT or 8000)
    """
    # Lazy import: the HTTP server is only needed when the endpoint is enabled
    from prometheus_client import start_http_server

    metrics_port = port or int(os.getenv("METRICS_PORT", "8000"))
    start_http_server(metrics_port, registry=REGISTRY)


class track_duration:
    """
    Context manager for tracking operation duration

    Usage:
        with track_duration(report_generation_seconds, report_type="trend-report"):
            # do work
            pass
    """

    def __init__(self, histogram: Histogram, **labels):
        self.histogram = histogram
        self.labels = labels
        self.timer = None

    def __enter__(self):
        metric = self.histogram.labels(**self.labels) if self.labels else self.histogram
        self.timer = metric.time()
        self.timer.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.timer.__exit__(exc_type, exc_val, exc_tb)
        return False


def increment_counter(counter: Counter, value: float = 1.0, **labels) -> None:
    """
    Increment a counter metric

    Args:
        counter: Prometheus Counter metric
        value: Amount to increment (default: 1.0)
        **labels: Label values for the metric
    """
    if labels:
        counter.labels(**labels).inc(value)
    else:
        counter.inc(value)


def observe_histogram(histogram: Histogram, value: float, **labels) -> None:
    """
    Observe a value in a histogram metric

    Args:
        histogram: Prometheus Histogram metric
        value: Value to observe
        **labels: Label values for the metric
    """
    if labels:
        histogram.labels(**labels).observe(value)
    else:
        histogram.observe(value)


def get_counter_value(counter: Counter, **labels) -> float:
    """
    Read the current value of a counter (used by tests).

    Args:
        counter: Prometheus Counter metric
        **labels: Label values for the metric

    Returns:
        Current counter value
    """
    metric = counter.labels(**labels) if labels else counter
    return metric._value.get()
