"""CLI command for recovering jobs left behind by crashed workers.

Fails jobs stuck in 'processing' longer than the timeout (refunding their
reservation) and finishes refunds interrupted between the two transactions
of a failure.

Usage:
    python -m genjobs.cli.recover_jobs [OPTIONS]

Examples:
    # Recover with the configured timeout (STALE_JOB_TIMEOUT_MINUTES)
    python -m genjobs.cli.recover_jobs

    # Treat jobs processing for more than 30 minutes as stale
    python -m genjobs.cli.recover_jobs --timeout-minutes 30

    # Dry run (no database writes)
    python -m genjobs.cli.recover_jobs --dry-run

    # Verbose logging
    python -m genjobs.cli.recover_jobs -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from typing import Optional, Sequence

import structlog

from genjobs.core import timezone  # noqa: F401
from genjobs.core.config import Settings, configure_logging
from genjobs.core.database import setup_db_session
from genjobs.services.ledger import CreditLedger
from genjobs.services.lifecycle import JobStateMachine, RecoveryReport
from genjobs.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: Optional[Sequence[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Recover stale generation jobs and finish interrupted refunds",
    )

    parser.add_argument(
        "--timeout-minutes",
        type=int,
        help="Processing age after which a job is failed (default: STALE_JOB_TIMEOUT_MINUTES)",
    )

    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of jobs of each kind to handle (default: 100)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List affected jobs without database writes",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


def print_summary(report: RecoveryReport, dry_run: bool) -> None:
    print("\n" + "=" * 60)
    print("Job Recovery Summary")
    print("=" * 60)
    print(f"Stale processing jobs failed: {len(report.stale_failed)}")
    print(f"Interrupted refunds completed: {len(report.refunds_completed)}")

    if report.errors:
        print(f"\nErrors encountered: {len(report.errors)}")
        for error in report.errors[:5]:
            print(f"  - {error}")
        if len(report.errors) > 5:
            print(f"  ... and {len(report.errors) - 5} more errors")

    if dry_run:
        print("\n[DRY RUN] No changes were persisted to database")

    print("=" * 60 + "\n")


async def async_main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (partial success)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info(
        "cli.started",
        timeout_minutes=(
            settings.stale_job_timeout_minutes
            if args.timeout_minutes is None
            else args.timeout_minutes
        ),
        dry_run=args.dry_run,
    )

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    state_machine = JobStateMachine(
        create_uow_factory(session_factory),
        CreditLedger(max_cas_attempts=settings.ledger_cas_max_attempts),
        settings,
    )

    try:
        report = await state_machine.recover_stale_jobs(
            timeout_minutes=args.timeout_minutes,
            dry_run=args.dry_run,
            limit=args.limit,
        )
    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nRecovery interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error("cli.unexpected_error", error=str(e), error_type=type(e).__name__)
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    print_summary(report, args.dry_run)

    recovered = len(report.stale_failed) + len(report.refunds_completed)
    if not report.errors:
        logger.info("cli.success", recovered=recovered)
        return 0
    if recovered > 0:
        logger.warning("cli.partial_success", recovered=recovered, errors=len(report.errors))
        return 2
    logger.error("cli.failure", errors=len(report.errors))
    return 1


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
