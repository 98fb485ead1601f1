#!/usr/bin/env python3
"""Command-line interface for reconciliation tools.

Usage:
    recon-sdk run --config transfer_status_reconciliation
    recon-sdk run --source stripe --force
    recon-sdk run --catch-up-days 30
    recon-sdk premium --billing-period 2025-01 --include-pending
    recon-sdk history --hours 48
    recon-sdk report <job-id> --format text
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta
from typing import Optional

from ..connectors.stripe_events import StripeEventSource
from ..database import (
    Base,
    JobStatus,
    create_async_engine,
    get_async_session_factory,
    get_database_url,
)
from ..errors import ReconciliationError
from .models import DateRange
from .manager import ReconciliationJobManager

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ISSUES = 1
EXIT_FAILURE = 2


def parse_datetime(dt_string: str) -> datetime:
    """Parse datetime string in various formats.

    Raises:
        ValueError: If the string cannot be parsed.
    """
    formats = [
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%dT%H:%M:%S.%f",
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%d",
    ]

    for fmt in formats:
        try:
            return datetime.strptime(dt_string, fmt)
        except ValueError:
            continue

    raise ValueError(
        f"Unable to parse datetime: {dt_string}. "
        f"Expected formats: YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS"
    )


def _write(output: str, output_file: Optional[str]) -> None:
    if output_file:
        with open(output_file, "w") as f:
            f.write(output)
        logger.info(f"Output written to {output_file}")
    else:
        print(output)


async def run_command_async(args: argparse.Namespace) -> int:
    """Open the database, build a job manager and run one command.

    Returns:
        Exit code: 0 clean, 1 discrepancies or validation errors, 2 failure.
    """
    engine = create_async_engine(database_url=get_database_url())

    # Create tables if they don't exist
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = get_async_session_factory(engine)
    event_source = StripeEventSource() if getattr(args, "source", "local") == "stripe" else None
    manager = ReconciliationJobManager(session_factory, event_source=event_source)

    try:
        if args.command == "run":
            if args.catch_up_days is not None:
                if args.since or args.until:
                    logger.error("--catch-up-days cannot be combined with --since or --until")
                    return EXIT_FAILURE
                job = await manager.run_catch_up(
                    config_names=args.config or None,
                    days_back=args.catch_up_days,
                    created_by="cli",
                )
            else:
                job = await manager.run_reconciliation(
                    config_names=args.config or None,
                    force_run=args.force,
                    created_by="cli",
                    since=parse_datetime(args.since) if args.since else None,
                    until=parse_datetime(args.until) if args.until else None,
                )
            _write(json.dumps(job.to_dict(), indent=2, default=str), args.output)
            totals = (job.results or {}).get("totals", {})
            if totals.get("discrepancies_found") or totals.get("errors_encountered"):
                logger.warning(
                    f"Reconciliation completed with issues: "
                    f"{totals.get('discrepancies_found', 0)} discrepancies, "
                    f"{totals.get('errors_encountered', 0)} errors"
                )
                return EXIT_ISSUES
            return EXIT_OK

        if args.command == "premium":
            date_range = None
            if args.start or args.end:
                if not (args.start and args.end):
                    logger.error("--start and --end must be given together")
                    return EXIT_FAILURE
                end_time = parse_datetime(args.end)
                if "T" not in args.end and " " not in args.end:
                    end_time = end_time + timedelta(days=1) - timedelta(microseconds=1)
                date_range = DateRange(start=parse_datetime(args.start), end=end_time)

            job = await manager.run_premium(
                billing_period=args.billing_period,
                date_range=date_range,
                include_pending=args.include_pending,
                force_run=args.force,
                created_by="cli",
            )
            _write(json.dumps(job.to_dict(), indent=2, default=str), args.output)
            if job.status != JobStatus.COMPLETED.value:
                logger.warning(f"Premium reconciliation {job.id} finished as {job.status}")
                return EXIT_ISSUES
            return EXIT_OK

        if args.command == "history":
            jobs = await manager.get_reconciliation_history(args.hours)
            _write(json.dumps([job.to_dict() for job in jobs], indent=2, default=str), args.output)
            return EXIT_OK

        if args.command == "report":
            reporter = await manager.generate_report(args.job_id)
            if args.format == "text":
                output = reporter.to_summary_text()
            elif args.format == "csv":
                output = reporter.to_csv()
            else:
                output = reporter.to_json()
            _write(output, args.output)
            return EXIT_OK

    except ReconciliationError as e:
        logger.error(f"{args.command} failed: {e}")
        return EXIT_FAILURE
    except ValueError as e:
        logger.error(str(e))
        return EXIT_FAILURE
    finally:
        await engine.dispose()

    return EXIT_OK


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="recon-sdk",
        description="Webhook and premium reconciliation tools.",
    )
    parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run webhook reconciliation")
    run_parser.add_argument(
        "--config", "-c",
        action="append",
        help="Config name to run; repeat for several (default: all)",
    )
    run_parser.add_argument(
        "--source",
        choices=["local", "stripe"],
        default="local",
        help="Event source (default: local event log)",
    )
    run_parser.add_argument(
        "--force",
        action="store_true",
        help="Run even if a run is in progress and ignore watermarks",
    )
    run_parser.add_argument("--since", help="Window start, overriding the watermark")
    run_parser.add_argument("--until", help="Window end (inclusive)")
    run_parser.add_argument(
        "--catch-up-days",
        type=int,
        help="Reconcile the last N days regardless of watermarks",
    )

    premium_parser = subparsers.add_parser("premium", help="Run premium reconciliation")
    premium_parser.add_argument(
        "--billing-period", "-b",
        required=True,
        help="Billing period (YYYY-MM)",
    )
    premium_parser.add_argument("--start", "-s", help="Window start (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)")
    premium_parser.add_argument("--end", "-e", help="Window end (YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS)")
    premium_parser.add_argument(
        "--include-pending",
        action="store_true",
        help="Count transfers that are not yet processed",
    )
    premium_parser.add_argument(
        "--force",
        action="store_true",
        help="Start a new job even if one is in progress",
    )

    history_parser = subparsers.add_parser("history", help="List recent reconciliation jobs")
    history_parser.add_argument(
        "--hours",
        type=int,
        default=24,
        help="History window in hours (default: 24)",
    )

    report_parser = subparsers.add_parser("report", help="Report on a reconciliation job")
    report_parser.add_argument("job_id", help="Job ID")
    report_parser.add_argument(
        "--format", "-f",
        choices=["json", "text", "csv"],
        default="json",
        help="Output format (default: json)",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return EXIT_ISSUES

    return asyncio.run(run_command_async(parsed_args))


if __name__ == "__main__":
    sys.exit(main())
