"""
Psychometric audit job.

One audit pass walks the whole item pool in a fixed order:

1. Initialize statistics records for items that have none
2. Recalculate item statistics for items with enough responses and new
   responses since their last calculation (or never calculated)
3. Run IRT calibration for competencies where it is due
4. Recalculate reliability for every competency
5. Recalculate reliability for all five Big Five traits
6. Apply the automatic status policy to the items recalculated in step 2

A failure on one entity is logged, counted and skipped; it never aborts the
pass. The pass itself is stateless: the previous AuditRun is passed in and
the new one is written at the end.

The milestone trigger (on_answer_submitted) recalculates a single item each
time its response count reaches a multiple of PSYCHOMETRICS_MIN_RESPONSES.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from psychometrics.core.config import settings
from psychometrics.core.data_sources import ItemCatalog, ResponseSource
from psychometrics.core.datetime_utils import (
    ensure_timezone_aware,
    interval_elapsed,
    utc_now,
)
from psychometrics.core.graceful_failure import graceful_failure
from psychometrics.core.irt.calibration import calibrate_competency, is_calibration_due
from psychometrics.core.item_statistics import (
    calculate_item_statistics,
    initialize_item_statistics,
)
from psychometrics.core.logging_config import audit_run_context
from psychometrics.core.reliability import (
    calculate_big_five_reliability,
    calculate_competency_reliability,
)
from psychometrics.core.validity_status import update_item_validity_status
from psychometrics.models.models import (
    AuditRun,
    AuditRunStatus,
    AuditTrigger,
    BigFiveTrait,
    ItemStatistics,
)

logger = logging.getLogger(__name__)

# error_message column is free text; keep stored messages bounded
MAX_ERROR_MESSAGE_LENGTH = 2000


@dataclass
class AuditSummary:
    """Counts produced by one audit pass."""

    trigger: AuditTrigger
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    items_initialized: int = 0
    items_recalculated: int = 0
    calibrations_run: int = 0
    competencies_recalculated: int = 0
    traits_recalculated: int = 0
    statuses_updated: int = 0
    failures: int = 0
    audit_run_id: Optional[int] = None
    failed_entities: List[str] = field(default_factory=list)

    def record_failure(self, entity: str) -> None:
        self.failures += 1
        self.failed_entities.append(entity)


def get_last_audit_run(db: Session) -> Optional[AuditRun]:
    """Most recent completed audit run, or None if none has completed."""
    return (
        db.query(AuditRun)
        .filter(AuditRun.status == AuditRunStatus.COMPLETED)
        .order_by(AuditRun.started_at.desc(), AuditRun.id.desc())
        .first()
    )


def is_audit_due(last_run: Optional[AuditRun], now: Optional[datetime] = None) -> bool:
    """Whether AUDIT_INTERVAL_HOURS have passed since the last completed run."""
    return interval_elapsed(
        last_run.completed_at if last_run is not None else None,
        timedelta(hours=settings.AUDIT_INTERVAL_HOURS),
        now,
    )


def _items_needing_recalculation(
    db: Session, source: ResponseSource, catalog: ItemCatalog
) -> List[int]:
    """Items with enough responses and at least one response since their last calculation."""
    last_calculated = {
        item_id: calculated_at
        for item_id, calculated_at in db.query(
            ItemStatistics.item_id, ItemStatistics.last_calculated_at
        ).all()
    }

    due: List[int] = []
    for item_id in catalog.item_ids():
        if source.count_item_responses(item_id) < settings.PSYCHOMETRICS_MIN_RESPONSES:
            continue
        calculated_at = last_calculated.get(item_id)
        if calculated_at is None:
            due.append(item_id)
            continue
        since = ensure_timezone_aware(calculated_at)
        if source.count_item_responses(item_id, since=since) > 0:
            due.append(item_id)
    return due


def run_psychometric_audit(
    db: Session,
    source: ResponseSource,
    catalog: ItemCatalog,
    *,
    now: Optional[datetime] = None,
    last_run: Optional[AuditRun] = None,
    trigger: AuditTrigger = AuditTrigger.SCHEDULED,
) -> Optional[AuditSummary]:
    """
    Run one full audit pass and record it as an AuditRun.

    Args:
        db: Database session
        source: Response data source
        catalog: Item catalog
        now: Timestamp stamped on every record written by this pass
            (defaults to the current UTC time)
        last_run: Previous completed AuditRun, if any
        trigger: What started the pass

    Returns:
        AuditSummary, or None when PSYCHOMETRICS_ENABLED is off.

    Raises:
        Exception: Only for failures outside per-entity processing (e.g. the
            database is unreachable); the AuditRun is then marked FAILED.
    """
    if not settings.PSYCHOMETRICS_ENABLED:
        logger.info("Psychometric analysis disabled; skipping audit")
        return None

    now = now or utc_now()
    summary = AuditSummary(trigger=trigger, started_at=now)
    start_time = time.perf_counter()

    audit_run = AuditRun(trigger=trigger, status=AuditRunStatus.RUNNING, started_at=now)
    db.add(audit_run)
    db.commit()
    summary.audit_run_id = audit_run.id
    token = audit_run_context.set(str(audit_run.id))

    logger.info(
        f"Starting psychometric audit run {audit_run.id} ({trigger.value}); "
        f"previous run: {last_run.id if last_run is not None else 'none'}"
    )

    try:
        # Step 1
        summary.items_initialized = initialize_item_statistics(db, catalog)

        # Step 2
        recalculated: List[int] = []
        for item_id in _items_needing_recalculation(db, source, catalog):
            try:
                calculate_item_statistics(db, source, catalog, item_id, now)
                recalculated.append(item_id)
            except Exception as e:
                db.rollback()
                logger.warning(f"Error calculating statistics for item {item_id}: {e}")
                summary.record_failure(f"item:{item_id}")
        summary.items_recalculated = len(recalculated)

        # Step 3
        competency_ids = catalog.competency_ids()
        for competency_id in competency_ids:
            try:
                if not is_calibration_due(db, catalog, competency_id, now):
                    continue
                result = calibrate_competency(db, source, catalog, competency_id, now)
                if not result["insufficient_data"]:
                    summary.calibrations_run += 1
            except Exception as e:
                db.rollback()
                logger.warning(f"Error calibrating competency {competency_id}: {e}")
                summary.record_failure(f"calibration:{competency_id}")

        # Step 4
        for competency_id in competency_ids:
            try:
                calculate_competency_reliability(db, source, catalog, competency_id, now)
                summary.competencies_recalculated += 1
            except Exception as e:
                db.rollback()
                logger.warning(
                    f"Error calculating reliability for competency {competency_id}: {e}"
                )
                summary.record_failure(f"competency:{competency_id}")

        # Step 5
        for trait in BigFiveTrait:
            try:
                calculate_big_five_reliability(db, source, catalog, trait, now)
                summary.traits_recalculated += 1
            except Exception as e:
                db.rollback()
                logger.warning(
                    f"Error calculating reliability for Big Five trait {trait.value}: {e}"
                )
                summary.record_failure(f"trait:{trait.value}")

        # Step 6
        for item_id in recalculated:
            try:
                update_item_validity_status(db, item_id, now)
                summary.statuses_updated += 1
            except Exception as e:
                db.rollback()
                logger.warning(f"Error updating status for item {item_id}: {e}")
                summary.record_failure(f"status:{item_id}")

    except Exception as e:
        db.rollback()
        logger.exception(f"Psychometric audit run {audit_run.id} failed")
        audit_run.status = AuditRunStatus.FAILED
        audit_run.completed_at = utc_now()
        audit_run.duration_seconds = time.perf_counter() - start_time
        audit_run.error_message = str(e)[:MAX_ERROR_MESSAGE_LENGTH]
        db.commit()
        audit_run_context.reset(token)
        raise

    summary.duration_seconds = time.perf_counter() - start_time
    summary.completed_at = utc_now()

    audit_run.status = AuditRunStatus.COMPLETED
    audit_run.completed_at = summary.completed_at
    audit_run.duration_seconds = summary.duration_seconds
    audit_run.items_initialized = summary.items_initialized
    audit_run.items_recalculated = summary.items_recalculated
    audit_run.calibrations_run = summary.calibrations_run
    audit_run.competencies_recalculated = summary.competencies_recalculated
    audit_run.traits_recalculated = summary.traits_recalculated
    audit_run.statuses_updated = summary.statuses_updated
    audit_run.failures = summary.failures
    if summary.failed_entities:
        audit_run.error_message = (
            "Failed: " + ", ".join(summary.failed_entities)
        )[:MAX_ERROR_MESSAGE_LENGTH]
    db.commit()

    logger.info(
        f"Psychometric audit run {audit_run.id} completed in "
        f"{summary.duration_seconds:.1f}s: {summary.items_initialized} initialized, "
        f"{summary.items_recalculated} items, {summary.calibrations_run} calibrations, "
        f"{summary.competencies_recalculated} competencies, "
        f"{summary.traits_recalculated} traits, {summary.statuses_updated} statuses, "
        f"{summary.failures} failures"
    )
    audit_run_context.reset(token)
    return summary


def recalculate_item(
    db: Session,
    source: ResponseSource,
    catalog: ItemCatalog,
    item_id: int,
    now: Optional[datetime] = None,
) -> ItemStatistics:
    """
    Manually recalculate one item's statistics and apply the status policy.

    Raises:
        NotFoundError: If the item is unknown or has no responses.
        ConcurrentModificationError: If optimistic-lock retries are exhausted.
    """
    now = now or utc_now()
    calculate_item_statistics(db, source, catalog, item_id, now)
    return update_item_validity_status(db, item_id, now)


def on_answer_submitted(
    db: Session,
    source: ResponseSource,
    catalog: ItemCatalog,
    item_id: int,
    now: Optional[datetime] = None,
) -> bool:
    """
    Recalculate an item when its response count reaches a milestone.

    Milestones are every multiple of PSYCHOMETRICS_MIN_RESPONSES (50, 100,
    150, ...). The item's competency reliability is refreshed afterwards on a
    best-effort basis.

    Returns:
        True if the milestone recalculation ran, False otherwise.
    """
    if not settings.PSYCHOMETRICS_ENABLED:
        return False

    milestone = settings.PSYCHOMETRICS_MIN_RESPONSES
    response_count = source.count_item_responses(item_id)
    if response_count < milestone or response_count % milestone != 0:
        return False

    now = now or utc_now()
    logger.info(f"Item {item_id} reached {response_count} responses; recalculating")

    recalculate_item(db, source, catalog, item_id, now)

    item = catalog.get_item(item_id)
    if item is not None:
        with graceful_failure(
            "recalculate competency reliability",
            logger,
            context={"item_id": item_id, "competency_id": item.competency_id},
        ):
            calculate_competency_reliability(
                db, source, catalog, item.competency_id, now
            )

    return True
