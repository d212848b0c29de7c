"""
Command line entry point.

    mongo-cdc                                   continuous replication
    mongo-cdc --start-time 2024-01-01T00:00:00  replicate from a point in time
    mongo-cdc --compare-id 65a1...              compare one document
    mongo-cdc --compare-window START,END        compare documents changed in a window
    mongo-cdc --health-check                    one health check, then exit
"""

from datetime import datetime, timezone
from typing import List, Optional, Tuple
import argparse
import json
import logging

from pydantic import ValidationError

from .config.settings import Settings, load_settings
from .connectors.cdc.checkpoint_store import create_checkpoint_store
from .alerts.notifier import create_alert_sink
from .core.utils.bson_convert import bson_safe, parse_document_id
from .exceptions import CDCError
from .jobs.service import ReplicationService
from .monitoring.health import HealthMonitor
from .reconciliation.compare import open_reconciler
from .utils.logging import CorrelationContext, setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def parse_time(value: str) -> datetime:
    """ISO-8601 instant; naive values are UTC, a trailing Z is accepted."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid ISO-8601 time: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_window(value: str) -> Tuple[datetime, datetime]:
    parts = value.split(",")
    if len(parts) != 2:
        raise argparse.ArgumentTypeError("expected <start>,<end>")
    start, end = parse_time(parts[0]), parse_time(parts[1])
    if end < start:
        raise argparse.ArgumentTypeError("window end precedes start")
    return start, end


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mongo-cdc",
        description="Replicate a MongoDB collection to another cluster using change streams"
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Load settings from this .env file (default: .env if present)"
    )
    parser.add_argument(
        "--start-time",
        type=parse_time,
        default=None,
        help="Replicate changes from this ISO-8601 time (ignores the stored checkpoint)"
    )
    parser.add_argument(
        "--end-time",
        type=parse_time,
        default=None,
        help="Replicate changes up to this ISO-8601 time (requires --start-time)"
    )
    parser.add_argument(
        "--limit",
        type=positive_int,
        default=100,
        help="Maximum documents to compare with --compare-window (default: 100)"
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--compare-id",
        default=None,
        help="Compare one document between source and target"
    )
    mode.add_argument(
        "--compare-window",
        type=parse_window,
        default=None,
        metavar="START,END",
        help="Compare documents inserted or updated in this time window"
    )
    mode.add_argument(
        "--health-check",
        action="store_true",
        help="Run one health check and exit"
    )
    return parser


def _validate(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    replication_only = args.start_time is not None or args.end_time is not None
    if args.end_time is not None and args.start_time is None:
        parser.error("--end-time requires --start-time")
    if args.start_time is not None and args.end_time is not None and args.end_time < args.start_time:
        parser.error("--end-time must not precede --start-time")
    if replication_only and (args.compare_id or args.compare_window or args.health_check):
        parser.error("--start-time/--end-time only apply to replication mode")


def _print_json(payload) -> None:
    print(json.dumps(bson_safe(payload), indent=2))


def run_compare_id(settings: Settings, raw_id: str) -> int:
    with open_reconciler(settings) as reconciler:
        result = reconciler.compare_document(parse_document_id(raw_id))
    payload = result.model_dump(by_alias=True)
    payload["hasDifferences"] = result.has_differences
    _print_json(payload)
    return EXIT_OK


def run_compare_window(settings: Settings, window: Tuple[datetime, datetime], limit: int) -> int:
    start, end = window
    with open_reconciler(settings) as reconciler:
        result = reconciler.compare_window(start, end, limit=limit)
    payload = result.model_dump(by_alias=True)
    for detail, comparison in zip(payload["details"], result.details):
        detail["hasDifferences"] = comparison.has_differences
    _print_json(payload)
    return EXIT_OK


def run_health_check(settings: Settings) -> int:
    store = create_checkpoint_store(settings)
    alerts = create_alert_sink(settings.alert)
    try:
        report = HealthMonitor(settings, store, alerts).check()
    finally:
        store.close()
        alerts.close()
    _print_json(report.model_dump(by_alias=True))
    return EXIT_OK if report.healthy else EXIT_FAILURE


def run_replication(settings: Settings, args: argparse.Namespace) -> int:
    service = ReplicationService(settings, start_time=args.start_time, end_time=args.end_time)
    stats = service.run()
    logger.info("Replication finished", extra=stats.as_dict())
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _validate(parser, args)

    try:
        settings = load_settings(args.env_file)
    except ValidationError as e:
        parser.error(f"invalid configuration: {e}")

    setup_logging(settings.log)

    with CorrelationContext():
        try:
            if args.compare_id is not None:
                return run_compare_id(settings, args.compare_id)
            if args.compare_window is not None:
                return run_compare_window(settings, args.compare_window, args.limit)
            if args.health_check:
                return run_health_check(settings)
            return run_replication(settings, args)
        except CDCError as e:
            logger.error(f"{type(e).__name__}: {e}")
            return EXIT_FAILURE
