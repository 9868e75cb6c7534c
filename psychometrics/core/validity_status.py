"""
Item validity status machine.

Every item moves through four statuses driven by its CTT metrics:

    PROBATION          - fewer than PSYCHOMETRICS_MIN_RESPONSES responses, or
                         no discrimination could be computed
    ACTIVE             - discriminates well at an acceptable difficulty
    FLAGGED_FOR_REVIEW - metrics computed but outside the ACTIVE band
    RETIRED            - negative discrimination, or retired by hand

Each status change appends one ItemStatusChange row in the same transaction
as the status field. Nothing here updates or deletes history rows.

The automatic policy never moves a RETIRED item; only the manual operations
can bring one back, and only when its discrimination is non-negative.
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy.orm import Session

from psychometrics.core.config import settings
from psychometrics.core.datetime_utils import utc_now
from psychometrics.core.db_error_handling import run_with_optimistic_retry
from psychometrics.core.errors import InvalidTransitionError, NotFoundError
from psychometrics.core.item_statistics import (
    DIFFICULTY_TOO_EASY,
    DIFFICULTY_TOO_HARD,
    get_item_statistics,
)
from psychometrics.models.models import (
    ItemStatistics,
    ItemStatusChange,
    ItemValidityStatus,
    StatusChangeSource,
)

logger = logging.getLogger(__name__)

# =============================================================================
# STATUS THRESHOLDS
# =============================================================================

# Discrimination at or above this (with acceptable difficulty) means ACTIVE
DISCRIMINATION_EXCELLENT = 0.30
DISCRIMINATION_GOOD = 0.25
DISCRIMINATION_MARGINAL = 0.20

# Manual transitions. PROBATION is never a manual target: it only reflects
# missing data.
ALLOWED_TRANSITIONS: Dict[ItemValidityStatus, FrozenSet[ItemValidityStatus]] = {
    ItemValidityStatus.PROBATION: frozenset(
        {
            ItemValidityStatus.ACTIVE,
            ItemValidityStatus.FLAGGED_FOR_REVIEW,
            ItemValidityStatus.RETIRED,
        }
    ),
    ItemValidityStatus.ACTIVE: frozenset(
        {ItemValidityStatus.FLAGGED_FOR_REVIEW, ItemValidityStatus.RETIRED}
    ),
    ItemValidityStatus.FLAGGED_FOR_REVIEW: frozenset(
        {ItemValidityStatus.ACTIVE, ItemValidityStatus.RETIRED}
    ),
    ItemValidityStatus.RETIRED: frozenset(
        {ItemValidityStatus.ACTIVE, ItemValidityStatus.FLAGGED_FOR_REVIEW}
    ),
}

MANUAL_OVERRIDE_PREFIX = "Manual override: "
MANUAL_RETIREMENT_PREFIX = "Manual retirement: "
MANUAL_ACTIVATION_REASON = "Manual activation"


def determine_validity_status(
    difficulty: Optional[float], discrimination: Optional[float]
) -> ItemValidityStatus:
    """
    Target status for an item's metrics under the automatic policy.

    Args:
        difficulty: Difficulty index (p-value), or None.
        discrimination: Discrimination index, or None.

    Returns:
        RETIRED for negative discrimination, ACTIVE for discrimination of at
        least 0.3 with difficulty in [0.2, 0.9], FLAGGED_FOR_REVIEW for any
        other computed discrimination, PROBATION when none was computed.
    """
    if discrimination is None:
        return ItemValidityStatus.PROBATION
    if discrimination < 0:
        return ItemValidityStatus.RETIRED
    if (
        discrimination >= DISCRIMINATION_EXCELLENT
        and difficulty is not None
        and DIFFICULTY_TOO_HARD <= difficulty <= DIFFICULTY_TOO_EASY
    ):
        return ItemValidityStatus.ACTIVE
    return ItemValidityStatus.FLAGGED_FOR_REVIEW


def _discrimination_band(discrimination: float) -> str:
    if discrimination < 0:
        return "toxic"
    if discrimination >= DISCRIMINATION_EXCELLENT:
        return "excellent"
    if discrimination >= DISCRIMINATION_GOOD:
        return "good"
    if discrimination >= DISCRIMINATION_MARGINAL:
        return "marginal"
    return "poor"


def _difficulty_band(difficulty: float) -> str:
    if difficulty < DIFFICULTY_TOO_HARD:
        return "too hard"
    if difficulty > DIFFICULTY_TOO_EASY:
        return "too easy"
    return "acceptable"


def generate_status_reason(
    difficulty: Optional[float], discrimination: Optional[float]
) -> str:
    """
    Human-readable reason for an automatic status, e.g.
    ``"rpb=0.342 (excellent), p=0.550 (acceptable)"``.
    """
    parts: List[str] = []
    if discrimination is not None:
        parts.append(
            f"rpb={discrimination:.3f} ({_discrimination_band(discrimination)})"
        )
    if difficulty is not None:
        parts.append(f"p={difficulty:.3f} ({_difficulty_band(difficulty)})")
    return ", ".join(parts) if parts else "No metrics available"


def _record_status_change(
    db: Session,
    stats: ItemStatistics,
    new_status: ItemValidityStatus,
    reason: str,
    source: StatusChangeSource,
    now: datetime,
) -> Optional[ItemStatusChange]:
    """
    Set the status and append a history row, if the status actually changes.

    Does NOT commit.
    """
    old_status = stats.validity_status
    if old_status == new_status:
        return None

    change = ItemStatusChange(
        item_statistics_id=stats.id,
        item_id=stats.item_id,
        from_status=old_status,
        to_status=new_status,
        changed_at=now,
        reason=reason,
        change_source=source,
    )
    db.add(change)
    stats.validity_status = new_status

    logger.info(
        f"Item {stats.item_id} status {old_status.value} -> {new_status.value} "
        f"({source.value}): {reason}"
    )
    return change


def _require_statistics(db: Session, item_id: int) -> ItemStatistics:
    stats = get_item_statistics(db, item_id)
    if stats is None:
        raise NotFoundError(
            "No statistics found for item", context={"item_id": item_id}
        )
    return stats


def update_item_validity_status(
    db: Session, item_id: int, now: Optional[datetime] = None
) -> ItemStatistics:
    """
    Apply the automatic status policy to one item.

    Items below PSYCHOMETRICS_MIN_RESPONSES stay (or return to) PROBATION.
    RETIRED items are left alone.

    Args:
        db: Database session
        item_id: Item to evaluate
        now: Change timestamp (defaults to the current UTC time)

    Returns:
        The item's statistics record.

    Raises:
        NotFoundError: If the item has no statistics record.
        ConcurrentModificationError: If optimistic-lock retries are exhausted.
    """
    now = now or utc_now()

    def _apply() -> ItemStatistics:
        stats = _require_statistics(db, item_id)

        if stats.validity_status == ItemValidityStatus.RETIRED:
            logger.debug(f"Item {item_id} is retired; automatic policy skips it")
            return stats

        if stats.response_count < settings.PSYCHOMETRICS_MIN_RESPONSES:
            _record_status_change(
                db,
                stats,
                ItemValidityStatus.PROBATION,
                f"Insufficient responses: {stats.response_count} < "
                f"{settings.PSYCHOMETRICS_MIN_RESPONSES}",
                StatusChangeSource.AUTOMATIC,
                now,
            )
            return stats

        new_status = determine_validity_status(
            stats.difficulty_index, stats.discrimination_index
        )
        _record_status_change(
            db,
            stats,
            new_status,
            generate_status_reason(stats.difficulty_index, stats.discrimination_index),
            StatusChangeSource.AUTOMATIC,
            now,
        )
        return stats

    return run_with_optimistic_retry(
        db, "update item validity status", _apply, context={"item_id": item_id}
    )


def force_status_override(
    db: Session,
    item_id: int,
    new_status: ItemValidityStatus,
    reason: str,
    now: Optional[datetime] = None,
) -> ItemStatistics:
    """
    Manually move an item to a new status.

    Args:
        db: Database session
        item_id: Item to update
        new_status: Target status (never PROBATION)
        reason: Mandatory explanation, stored with a "Manual override: " prefix
        now: Change timestamp (defaults to the current UTC time)

    Returns:
        The item's statistics record.

    Raises:
        InvalidTransitionError: If the reason is blank, the transition is not
            allowed, or a RETIRED item lacks non-negative discrimination.
        NotFoundError: If the item has no statistics record.
        ConcurrentModificationError: If optimistic-lock retries are exhausted.
    """
    if not reason or not reason.strip():
        raise InvalidTransitionError(
            "A reason is required for a manual status override",
            context={"item_id": item_id},
        )

    now = now or utc_now()

    def _apply() -> ItemStatistics:
        stats = _require_statistics(db, item_id)
        current = stats.validity_status
        context = {
            "item_id": item_id,
            "from": current.value,
            "to": new_status.value,
        }

        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError("Status transition not allowed", context=context)

        if current == ItemValidityStatus.RETIRED and (
            stats.discrimination_index is None or stats.discrimination_index < 0
        ):
            raise InvalidTransitionError(
                "Cannot reinstate a retired item without non-negative discrimination",
                context={**context, "discrimination": stats.discrimination_index},
            )

        _record_status_change(
            db,
            stats,
            new_status,
            f"{MANUAL_OVERRIDE_PREFIX}{reason.strip()}",
            StatusChangeSource.MANUAL,
            now,
        )
        return stats

    return run_with_optimistic_retry(
        db, "override item status", _apply, context={"item_id": item_id}
    )


def retire_item(
    db: Session, item_id: int, reason: str, now: Optional[datetime] = None
) -> ItemStatistics:
    """
    Manually retire an item. Retiring an already retired item is a no-op.

    Raises:
        InvalidTransitionError: If the reason is blank.
        NotFoundError: If the item has no statistics record.
    """
    if not reason or not reason.strip():
        raise InvalidTransitionError(
            "A reason is required to retire an item",
            context={"item_id": item_id},
        )

    now = now or utc_now()

    def _apply() -> ItemStatistics:
        stats = _require_statistics(db, item_id)
        _record_status_change(
            db,
            stats,
            ItemValidityStatus.RETIRED,
            f"{MANUAL_RETIREMENT_PREFIX}{reason.strip()}",
            StatusChangeSource.MANUAL,
            now,
        )
        return stats

    return run_with_optimistic_retry(
        db, "retire item", _apply, context={"item_id": item_id}
    )


def activate_item(
    db: Session, item_id: int, now: Optional[datetime] = None
) -> ItemStatistics:
    """
    Manually activate an item that meets the ACTIVE discrimination bar.

    Raises:
        InvalidTransitionError: If the item has too few responses, negative
            discrimination, or discrimination below 0.3.
        NotFoundError: If the item has no statistics record.
    """
    now = now or utc_now()

    def _apply() -> ItemStatistics:
        stats = _require_statistics(db, item_id)
        discrimination = stats.discrimination_index
        context = {"item_id": item_id, "discrimination": discrimination}

        if stats.response_count < settings.PSYCHOMETRICS_MIN_RESPONSES:
            raise InvalidTransitionError(
                f"Cannot activate item with insufficient responses "
                f"({stats.response_count} < {settings.PSYCHOMETRICS_MIN_RESPONSES})",
                context=context,
            )
        if discrimination is not None and discrimination < 0:
            raise InvalidTransitionError(
                "Cannot activate item with negative discrimination", context=context
            )
        if discrimination is None or discrimination < DISCRIMINATION_EXCELLENT:
            raise InvalidTransitionError(
                f"Cannot activate item with discrimination below "
                f"{DISCRIMINATION_EXCELLENT}",
                context=context,
            )

        _record_status_change(
            db,
            stats,
            ItemValidityStatus.ACTIVE,
            MANUAL_ACTIVATION_REASON,
            StatusChangeSource.MANUAL,
            now,
        )
        return stats

    return run_with_optimistic_retry(
        db, "activate item", _apply, context={"item_id": item_id}
    )


def get_status_history(db: Session, item_id: int) -> List[ItemStatusChange]:
    """Status changes of an item, oldest first."""
    return (
        db.query(ItemStatusChange)
        .filter(ItemStatusChange.item_id == item_id)
        .order_by(ItemStatusChange.changed_at, ItemStatusChange.id)
        .all()
    )
