"""
CLI for the report worker.

Runs the report orchestrator against the report-requests topic.
"""

import argparse
import json
import sys
import threading

from reportflow.bus import EventBus, SubscriptionConsumer
from reportflow.config import Settings
from reportflow.core.errors import ConfigError
from reportflow.core.schema import TOPIC_REPORT_REQUESTS, create_default_registry
from reportflow.observability.logger import get_logger
from reportflow.worker import (
    ArtifactWriter,
    ExternalDataCache,
    InMemoryViewDataset,
    JsonLinesViewDataset,
    OmdbMovieProvider,
    RecentRequestGuard,
    ReportOrchestrator,
    build_strategies,
)

from .common import add_config_argument, bootstrap, build_bus, install_signal_handlers

logger = get_logger(__name__)


def build_worker(settings: Settings, bus: EventBus) -> tuple[SubscriptionConsumer, ExternalDataCache]:
    """
    Assemble the orchestrator and its consumer from settings.

    Returns:
        (consumer, cache); the cache owns threads and must be closed
    """
    if not settings.provider.api_key:
        logger.warning("No provider API key configured; movie-analysis requests will likely fail")

    provider = OmdbMovieProvider(
        base_url=settings.provider.base_url,
        api_key=settings.provider.api_key,
        timeout=settings.provider.timeout,
    )
    cache = ExternalDataCache(
        provider,
        ttl_seconds=settings.cache.ttl_seconds,
        max_entries=settings.cache.max_entries,
        fetch_timeout=settings.provider.timeout,
        retry_attempts=settings.provider.retry_attempts,
        retry_wait=settings.provider.retry_wait,
    )

    if settings.worker.dataset_path:
        dataset = JsonLinesViewDataset(settings.worker.dataset_path)
    else:
        logger.warning("No view dataset configured; trend-report and user-stats reports will be empty")
        dataset = InMemoryViewDataset()

    registry = create_default_registry()
    orchestrator = ReportOrchestrator(
        bus=bus,
        registry=registry,
        strategies=build_strategies(cache, dataset),
        artifact_writer=ArtifactWriter(settings.worker.reports_dir),
        guard=RecentRequestGuard(
            window_seconds=settings.worker.idempotency_window_seconds,
            max_entries=settings.worker.idempotency_max_entries,
        ),
    )
    consumer = SubscriptionConsumer(
        bus,
        registry,
        TOPIC_REPORT_REQUESTS,
        settings.worker.subscription,
        orchestrator.handle,
        max_concurrency=settings.worker.concurrency,
        poll_timeout=settings.bus.block_timeout,
    )
    return consumer, cache


def run_worker(args: argparse.Namespace) -> int:
    """
    Run the orchestrator until SIGINT/SIGTERM (or once, with --once).

    Returns:
        Exit code (0 for success)
    """
    try:
        settings = bootstrap(args)
    except ConfigError as e:
        print(json.dumps({"status": "error", "error": str(e)}), file=sys.stderr)
        return 2

    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    try:
        with build_bus(settings) as bus:
            consumer, cache = build_worker(settings, bus)
            try:
                if args.once:
                    processed = consumer.drain(max_messages=args.max_messages)
                    print(json.dumps({"status": "drained", "processed": processed}, indent=2))
                    return 0

                consumer.start()
                logger.info(
                    f"Worker consuming {TOPIC_REPORT_REQUESTS} as {settings.worker.subscription} "
                    "(press Ctrl+C to stop)"
                )
                stop_event.wait()
                logger.info("Stopping consumer...")
                consumer.stop()
                logger.info("Shutdown complete")
                return 0
            finally:
                cache.close()

    except Exception as e:
        logger.error(f"Worker failed: {e}", exc_info=True)
        print(json.dumps({"status": "error", "error": str(e)}), file=sys.stderr)
        return 1


def main():
    """Main entry point for the worker CLI."""
    parser = argparse.ArgumentParser(
        description="Run the report worker (orchestrator)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Consume report requests until interrupted
  %(prog)s run --config config/reportflow.yaml

  # Process what is queued right now and exit
  %(prog)s run --once
        """
    )
    add_config_argument(parser)

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    run_parser = subparsers.add_parser("run", help="Start the report orchestrator")
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Process every currently available request, then exit"
    )
    run_parser.add_argument(
        "--max-messages",
        type=int,
        help="Upper bound on requests processed with --once"
    )

    args = parser.parse_args()

    if args.command == "run":
        return run_worker(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
