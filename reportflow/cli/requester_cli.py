"""
CLI for the requester side.

Submits report requests, shows persisted records, runs the status
reconciler and sweeps stale pending requests.
"""

import argparse
import json
import sys
import threading
from typing import Any

from reportflow.bus import EventBus, SubscriptionConsumer
from reportflow.config import Settings
from reportflow.core.errors import ConfigError, StoreError, TransportError
from reportflow.core.models import ReportRecord, ReportType
from reportflow.core.schema import TOPIC_PROCESSING_STATUS, TOPIC_REPORT_COMPLETED, create_default_registry
from reportflow.observability.logger import get_logger
from reportflow.requester import PendingRequestSweeper, RequestGateway, StatusReconciler
from reportflow.store import ReportStore
from reportflow.utils.validation import ValidationError

from .common import add_config_argument, bootstrap, build_bus, build_store, install_signal_handlers

logger = get_logger(__name__)


def parse_param(item: str) -> tuple[str, Any]:
    """
    Parse a KEY=VALUE parameter; VALUE is read as JSON when possible.

    Examples:
        >>> parse_param("periodDays=7")
        ('periodDays', 7)
        >>> parse_param("format=csv")
        ('format', 'csv')
    """
    key, sep, value = item.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got {item!r}")
    try:
        return key, json.loads(value)
    except json.JSONDecodeError:
        return key, value


def record_to_dict(record: ReportRecord) -> dict[str, Any]:
    return record.model_dump(mode="json")


def log_completion(record: ReportRecord) -> None:
    """Default completion notifier: one log line per terminal transition."""
    logger.info(
        f"Report {record.request_id} finished with status {record.status.value}",
        extra={
            "request_id": record.request_id,
            "status": record.status.value,
            "result_ref": record.result_ref,
            "error": record.error,
        },
    )


def build_reconciler_consumers(
    settings: Settings, bus: EventBus, store: ReportStore
) -> list[SubscriptionConsumer]:
    registry = create_default_registry()
    reconciler = StatusReconciler(store, notifier=log_completion)
    return [
        SubscriptionConsumer(
            bus, registry, TOPIC_PROCESSING_STATUS, settings.requester.status_subscription,
            reconciler.handle_status,
            max_concurrency=settings.requester.concurrency,
            poll_timeout=settings.bus.block_timeout,
        ),
        SubscriptionConsumer(
            bus, registry, TOPIC_REPORT_COMPLETED, settings.requester.completed_subscription,
            reconciler.handle_completed,
            max_concurrency=settings.requester.concurrency,
            poll_timeout=settings.bus.block_timeout,
        ),
    ]


def submit_request(args: argparse.Namespace, settings: Settings) -> int:
    parameters: dict[str, Any] = {}
    if args.parameters_json:
        try:
            parameters.update(json.loads(args.parameters_json))
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            print(json.dumps({"status": "rejected", "error": f"Invalid --parameters-json: {e}"}), file=sys.stderr)
            return 2
    parameters.update(dict(args.param or []))

    store, pool = build_store(settings)
    try:
        with build_bus(settings) as bus:
            gateway = RequestGateway(bus, create_default_registry(), store)
            request_id = gateway.submit(
                args.report_type,
                subject_id=args.subject,
                parameters=parameters,
                requested_by=args.requested_by or settings.requester.requested_by,
            )
    except ValidationError as e:
        print(json.dumps({"status": "rejected", "error": str(e)}), file=sys.stderr)
        return 2
    except TransportError as e:
        print(json.dumps({"status": "pending", "error": f"Request stored but not published: {e}"}), file=sys.stderr)
        return 1
    finally:
        if pool is not None:
            pool.close()

    print(json.dumps({"requestId": request_id, "status": "pending"}, indent=2))
    return 0


def show_status(args: argparse.Namespace, settings: Settings) -> int:
    store, pool = build_store(settings)
    try:
        record = store.get(args.request_id)
    finally:
        if pool is not None:
            pool.close()

    if record is None:
        print(json.dumps({"status": "error", "error": f"Request '{args.request_id}' not found"}), file=sys.stderr)
        return 1

    print(json.dumps(record_to_dict(record), indent=2))
    return 0


def run_reconciler(args: argparse.Namespace, settings: Settings) -> int:
    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    store, pool = build_store(settings)
    try:
        with build_bus(settings) as bus:
            consumers = build_reconciler_consumers(settings, bus, store)
            sweeper = None
            if args.sweep_interval:
                gateway = RequestGateway(bus, create_default_registry(), store)
                sweeper = PendingRequestSweeper(
                    store, gateway,
                    stale_after_seconds=settings.requester.stale_pending_seconds,
                    batch_size=settings.requester.sweep_batch_size,
                )

            for consumer in consumers:
                consumer.start()
            logger.info("Status reconciler running (press Ctrl+C to stop)...")

            # Wakes up for the periodic sweep, or only on shutdown
            while not stop_event.wait(args.sweep_interval or None):
                try:
                    sweeper.sweep()
                except StoreError as e:
                    logger.error(f"Pending sweep failed: {e}")

            logger.info("Stopping consumers...")
            for consumer in consumers:
                consumer.stop()
            logger.info("Shutdown complete")
    finally:
        if pool is not None:
            pool.close()
    return 0


def sweep_pending(args: argparse.Namespace, settings: Settings) -> int:
    store, pool = build_store(settings)
    try:
        with build_bus(settings) as bus:
            gateway = RequestGateway(bus, create_default_registry(), store)
            sweeper = PendingRequestSweeper(
                store, gateway,
                stale_after_seconds=args.stale_after or settings.requester.stale_pending_seconds,
                batch_size=settings.requester.sweep_batch_size,
            )
            republished = sweeper.sweep()
    finally:
        if pool is not None:
            pool.close()

    print(json.dumps({"status": "swept", "republished": republished}, indent=2))
    return 0


COMMANDS = {
    "submit": submit_request,
    "status": show_status,
    "run": run_reconciler,
    "sweep": sweep_pending,
}


def main():
    """Main entry point for the requester CLI."""
    parser = argparse.ArgumentParser(
        description="Submit report requests and reconcile their status",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Submit a movie analysis
  %(prog)s submit --type movie-analysis --subject tt1234567 --param format=csv

  # Submit a trend report over the last week
  %(prog)s submit --type trend-report --param periodDays=7 --param limit=5

  # Show a persisted record
  %(prog)s status 5b0c3f2e-8f43-4d8a-9a0c-1f6f1b2d9e11

  # Run the reconciler and sweep stale pending requests every minute
  %(prog)s run --sweep-interval 60
        """
    )
    add_config_argument(parser)

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    submit_parser = subparsers.add_parser("submit", help="Submit a report request")
    submit_parser.add_argument(
        "--type",
        dest="report_type",
        required=True,
        choices=[t.value for t in ReportType],
        help="Report type"
    )
    submit_parser.add_argument("--subject", help="Movie id or user id")
    submit_parser.add_argument(
        "--param",
        action="append",
        type=parse_param,
        metavar="KEY=VALUE",
        help="Report parameter (repeatable)"
    )
    submit_parser.add_argument("--parameters-json", help="Report parameters as a JSON object")
    submit_parser.add_argument("--requested-by", help="Principal submitting the request")

    status_parser = subparsers.add_parser("status", help="Show a report record")
    status_parser.add_argument("request_id", help="Request id returned by submit")

    run_parser = subparsers.add_parser("run", help="Run the status reconciler")
    run_parser.add_argument(
        "--sweep-interval",
        type=float,
        help="Also sweep stale pending requests every N seconds"
    )

    sweep_parser = subparsers.add_parser("sweep", help="Re-publish stale pending requests once")
    sweep_parser.add_argument(
        "--stale-after",
        type=float,
        help="Seconds a request must have been pending (default from settings)"
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    try:
        settings = bootstrap(args)
    except ConfigError as e:
        print(json.dumps({"status": "error", "error": str(e)}), file=sys.stderr)
        return 2

    try:
        return COMMANDS[args.command](args, settings)
    except Exception as e:
        logger.error(f"Command {args.command} failed: {e}", exc_info=True)
        print(json.dumps({"status": "error", "error": str(e)}), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
