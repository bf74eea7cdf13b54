"""
Wiring shared by the worker and requester command-line entry points.
"""

import argparse
import signal
import threading
from typing import Optional

from reportflow.bus import EventBus, InMemoryEventBus
from reportflow.config import Settings, load_settings
from reportflow.observability.logger import configure_logging, get_logger
from reportflow.observability.metrics import start_metrics_server
from reportflow.store import DatabaseConnectionPool, InMemoryReportStore, PostgresReportStore, ReportStore

logger = get_logger(__name__)


def add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        help="Path to YAML settings file (default: $REPORTFLOW_CONFIG)"
    )


def bootstrap(args: argparse.Namespace) -> Settings:
    """Load settings, configure logging and start the metrics endpoint if enabled."""
    settings = load_settings(getattr(args, "config", None))
    configure_logging(level=settings.logging.level, format_type=settings.logging.format)

    if settings.metrics.enabled:
        start_metrics_server(settings.metrics.port)
        logger.info(f"Metrics endpoint listening on port {settings.metrics.port}")

    return settings


def build_bus(settings: Settings) -> EventBus:
    if settings.bus.backend == "redis":
        # Only needed when the redis backend is selected
        from reportflow.bus.redis_bus import RedisStreamsEventBus

        return RedisStreamsEventBus(
            url=settings.bus.redis_url,
            stream_prefix=settings.bus.stream_prefix,
            visibility_timeout=settings.bus.visibility_timeout,
            publish_attempts=settings.bus.publish_attempts,
        )

    logger.warning("Using the in-memory bus; events are not shared with other processes")
    return InMemoryEventBus(visibility_timeout=settings.bus.visibility_timeout)


def build_store(settings: Settings) -> tuple[ReportStore, Optional[DatabaseConnectionPool]]:
    """
    Create the report store.

    Returns:
        (store, pool) where pool is None for the in-memory backend
    """
    if settings.store.backend == "postgres":
        pool = DatabaseConnectionPool(
            host=settings.store.host,
            port=settings.store.port,
            database=settings.store.database,
            user=settings.store.user,
            password=settings.store.password,
            min_size=settings.store.min_size,
            max_size=settings.store.max_size,
        )
        pool.open()
        store = PostgresReportStore(pool)
        store.create_schema()
        return store, pool

    logger.warning("Using the in-memory report store; records are lost on exit")
    return InMemoryReportStore(), None


def install_signal_handlers(stop_event: threading.Event) -> None:
    """Set stop_event on SIGINT/SIGTERM for graceful shutdown."""

    def signal_handler(signum, frame):  # type: ignore[no-untyped-def]
        signal_name = signal.Signals(signum).name
        logger.info(f"Received {signal_name} signal, initiating graceful shutdown...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
