"""
Evaluate cleanup rules once. Meant to be invoked by an external scheduler.

Usage:
    # Every enabled rule
    python -m testdata_lifecycle.jobs.run_cleanup

    # Only rules registered for a schedule (e.g. the nightly cron entry)
    python -m testdata_lifecycle.jobs.run_cleanup --schedule "0 3 * * *"

    # One rule, even if it is scheduled on-demand
    python -m testdata_lifecycle.jobs.run_cleanup --rule 5f0c...

Prints a JSON summary to stdout. Exit code is 1 when any action or rule failed.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional
from uuid import UUID

from testdata_lifecycle.core.errors import LifecycleError
from testdata_lifecycle.core.logging import configure_logging, log_context
from testdata_lifecycle.core.settings import get_app_settings
from testdata_lifecycle.db.base import utc_now
from testdata_lifecycle.db.session import dispose_engine, get_async_session
from testdata_lifecycle.schemas.cleanup import ActionOutcome, CleanupRunSummary, validate_schedule
from testdata_lifecycle.services.cleanup_engine import CleanupRuleEngine

logger = logging.getLogger(__name__)


def _schedule_arg(value: str) -> str:
    try:
        return validate_schedule(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Evaluate test data cleanup rules once.")
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--schedule", type=_schedule_arg, help="Only evaluate enabled rules with this schedule (e.g. '0 3 * * *')"
    )
    group.add_argument("--rule", type=UUID, help="Evaluate a single rule by id")
    return parser


# PUBLIC_INTERFACE
async def run_cleanup(schedule: Optional[str] = None, rule_id: Optional[UUID] = None) -> CleanupRunSummary:
    """
    Evaluate the selected rules in the system context and return the run summary.

    The schedule is normalized the same way stored schedules are, so extra
    whitespace between cron fields still matches.
    """
    if schedule is not None:
        schedule = validate_schedule(schedule)
    summary: Optional[CleanupRunSummary] = None
    async for session in get_async_session():
        engine = CleanupRuleEngine(session)
        if rule_id is None:
            summary = await engine.evaluate_enabled(schedule=schedule)
        else:
            summary = await _evaluate_one(engine, rule_id)
    if summary is None:
        raise RuntimeError("No database session available")
    return summary


async def _evaluate_one(engine: CleanupRuleEngine, rule_id: UUID) -> CleanupRunSummary:
    started = utc_now()
    summary = CleanupRunSummary(started_at=started, completed_at=started)
    with log_context(correlation_id=str(rule_id)):
        try:
            results = await engine.evaluate_rule(rule_id)
        except LifecycleError as exc:
            logger.error("Cleanup rule %s could not be evaluated: %s", rule_id, exc)
            summary.rule_errors[str(rule_id)] = str(exc)
            results = None
    if results is not None:
        summary.rules_evaluated = 1
        summary.results[str(rule_id)] = results
        summary.applied = sum(r.outcome is ActionOutcome.APPLIED for r in results)
        summary.skipped = sum(r.outcome is ActionOutcome.SKIPPED for r in results)
        summary.failed = sum(r.outcome is ActionOutcome.FAILED for r in results)
    summary.completed_at = utc_now()
    return summary


async def _main(schedule: Optional[str], rule_id: Optional[UUID]) -> CleanupRunSummary:
    try:
        return await run_cleanup(schedule=schedule, rule_id=rule_id)
    finally:
        await dispose_engine()


# PUBLIC_INTERFACE
def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_app_settings()
    configure_logging(settings.LOG_LEVEL)

    if settings.RUN_MIGRATIONS_ON_STARTUP:
        from testdata_lifecycle.db.run_migrations import upgrade_head

        upgrade_head()

    summary = asyncio.run(_main(args.schedule, args.rule))
    print(summary.model_dump_json(indent=2))
    logger.info(
        "Cleanup run finished: rules=%d applied=%d skipped=%d failed=%d rule_errors=%d",
        summary.rules_evaluated, summary.applied, summary.skipped, summary.failed, len(summary.rule_errors),
    )
    return 1 if summary.failed or summary.rule_errors else 0


if __name__ == "__main__":
    sys.exit(main())
