"""
Cron job: scheduled psychometric audit.

Runs one full audit pass (item statistics, IRT calibration, competency and
Big Five reliability, validity statuses) when AUDIT_INTERVAL_HOURS have
passed since the last completed run. Pass ``--force`` to ignore the interval.

Exit codes:
    0 - Success (audit ran, was not yet due, or analysis is disabled)
    1 - Database error
    2 - Audit error
    3 - Configuration/import error
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("psychometric_audit_cron")

SERVICE_NAME = "psychometric_audit_cron"


def _emit_heartbeat(status: str, **fields) -> None:
    """Print a single-line JSON heartbeat for log-based monitoring."""
    heartbeat = {"type": "HEARTBEAT", "service": SERVICE_NAME, "status": status}
    heartbeat.update(fields)
    print(json.dumps(heartbeat, default=str), flush=True)


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the psychometric audit")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Run even if the audit interval has not elapsed",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None, session_factory=None) -> int:
    args = _parse_args(argv)

    # Defer imports so config/import failures produce exit code 3
    try:
        from psychometrics.core.audit import (
            get_last_audit_run,
            is_audit_due,
            run_psychometric_audit,
        )
        from psychometrics.core.config import settings
        from psychometrics.core.data_sources import SqlItemCatalog, SqlResponseSource
        from psychometrics.core.datetime_utils import utc_now
        from psychometrics.core.logging_config import setup_logging
        from psychometrics.models.models import AuditTrigger

        setup_logging()

        if session_factory is None:
            from psychometrics.models.base import SessionLocal

            session_factory = SessionLocal
    except Exception as exc:
        logger.error("Failed to import required modules: %s", exc)
        return 3

    if not settings.PSYCHOMETRICS_ENABLED:
        logger.info("Psychometric analysis disabled; nothing to do")
        _emit_heartbeat("skipped", reason="disabled")
        return 0

    try:
        db = session_factory()
    except Exception as exc:
        logger.error("Failed to create database session: %s", exc)
        return 1

    try:
        started_at = utc_now()

        try:
            last_run = get_last_audit_run(db)
        except Exception as exc:
            logger.error("Failed to read last audit run: %s", exc)
            return 1

        last_completed_at = last_run.completed_at if last_run else None
        logger.info(
            "Last completed audit: %s (interval: %dh)",
            last_completed_at.isoformat() if last_completed_at else "never",
            settings.AUDIT_INTERVAL_HOURS,
        )

        if not args.force and not is_audit_due(last_run, started_at):
            logger.info("Skipping audit: interval has not elapsed")
            _emit_heartbeat(
                "skipped",
                reason="not_due",
                last_completed_at=last_completed_at,
                evaluated_at=started_at.isoformat(),
            )
            return 0

        trigger = AuditTrigger.MANUAL if args.force else AuditTrigger.SCHEDULED
        try:
            summary = run_psychometric_audit(
                db,
                SqlResponseSource(db),
                SqlItemCatalog(db),
                now=started_at,
                last_run=last_run,
                trigger=trigger,
            )
        except Exception as exc:
            logger.error("Psychometric audit failed: %s", exc)
            _emit_heartbeat("failed", error=str(exc)[:500])
            return 2

        if summary is None:
            _emit_heartbeat("skipped", reason="disabled")
            return 0

        _emit_heartbeat(
            "completed",
            audit_run_id=summary.audit_run_id,
            items_initialized=summary.items_initialized,
            items_recalculated=summary.items_recalculated,
            calibrations_run=summary.calibrations_run,
            competencies_recalculated=summary.competencies_recalculated,
            traits_recalculated=summary.traits_recalculated,
            statuses_updated=summary.statuses_updated,
            failures=summary.failures,
            duration_seconds=round(summary.duration_seconds, 1),
            completed_at=summary.completed_at.isoformat() if summary.completed_at else None,
        )
        return 0

    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
