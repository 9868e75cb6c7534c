"""
Classical Test Theory (CTT) statistics for individual items.

Metrics calculated per item:
1. Difficulty index (p-value): mean normalized score, 0-1
2. Discrimination index: point-biserial (Pearson) correlation between the
   item score and the respondent's rest score on the same competency
3. Distractor efficiency: selection rate of every non-correct option of a
   choice item

Difficulty and discrimination stay None (and their flags NONE) until the
item has PSYCHOMETRICS_MIN_RESPONSES responses. None always means
"insufficient data", never zero.
"""
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
from sqlalchemy.orm import Session

from psychometrics.core.config import settings
from psychometrics.core.data_sources import ItemCatalog, ResponseSource
from psychometrics.core.datetime_utils import utc_now
from psychometrics.core.db_error_handling import run_with_optimistic_retry
from psychometrics.core.errors import NotFoundError
from psychometrics.models.models import (
    DifficultyFlag,
    DiscriminationFlag,
    ItemStatistics,
    ItemValidityStatus,
)

logger = logging.getLogger(__name__)

# =============================================================================
# THRESHOLDS
# =============================================================================

# Metrics are stored with this many decimal places
SCALE = 4

DIFFICULTY_TOO_HARD = 0.2  # p below this: most respondents fail
DIFFICULTY_TOO_EASY = 0.9  # p above this: most respondents succeed

DISCRIMINATION_CRITICAL = 0.1
DISCRIMINATION_WARNING = 0.25

# Drop in discrimination since the previous calculation worth reporting
DISCRIMINATION_DECLINE_THRESHOLD = 0.05


def round_metric(value: Optional[float]) -> Optional[float]:
    """Round a metric half-up to SCALE decimal places, passing None through."""
    if value is None:
        return None
    quantum = Decimal(1).scaleb(-SCALE)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


# =============================================================================
# PURE METRICS
# =============================================================================


def difficulty_index(scores: Sequence[float]) -> Optional[float]:
    """
    Calculate the difficulty index (p-value) of an item.

    Args:
        scores: Normalized scores in [0, 1], one per response.

    Returns:
        Mean score rounded to SCALE places, or None if there are no scores.
    """
    if len(scores) == 0:
        return None
    return round_metric(float(np.mean(np.asarray(scores, dtype=np.float64))))


def discrimination_index(
    item_scores: Sequence[float], rest_totals: Sequence[float]
) -> Optional[float]:
    """
    Calculate the point-biserial discrimination of an item.

    Uses the Pearson correlation, which equals the point-biserial for
    dichotomous scores and extends naturally to partial-credit items. The
    total excludes the item itself so the item does not correlate with its
    own contribution.

    Args:
        item_scores: Item score per respondent.
        rest_totals: Competency total excluding this item, per respondent.

    Returns:
        Correlation in [-1, 1] rounded to SCALE places, or None if fewer than
        two pairs or either side has zero variance.
    """
    if len(item_scores) != len(rest_totals):
        logger.warning("Item scores and rest totals length mismatch")
        return None

    if len(item_scores) < 2:
        return None

    x = np.asarray(item_scores, dtype=np.float64)
    y = np.asarray(rest_totals, dtype=np.float64)

    x_dev = x - x.mean()
    y_dev = y - y.mean()
    denominator = float(np.sqrt(np.sum(x_dev**2) * np.sum(y_dev**2)))
    if denominator == 0.0:
        return None

    correlation = float(np.sum(x_dev * y_dev)) / denominator
    # Clamp floating point overshoot
    correlation = max(-1.0, min(1.0, correlation))
    return round_metric(correlation)


def distractor_efficiency(
    selections: Iterable[Optional[str]],
    option_ids: Sequence[str],
    correct_option: Optional[str],
) -> Dict[str, float]:
    """
    Selection rate of each non-correct option of a choice item.

    Rates are fractions of all responses that selected an option. Options
    never selected are reported with rate 0.0 (non-functioning distractors).

    Args:
        selections: Selected option id per response (None when unanswered).
        option_ids: Every option id offered by the item.
        correct_option: Keyed option id, excluded from the result.

    Returns:
        Dict mapping distractor option id to its selection rate. Empty when
        no response selected an option.
    """
    counts: Dict[str, int] = {}
    total = 0
    for selected in selections:
        if selected is None:
            continue
        key = str(selected).strip()
        counts[key] = counts.get(key, 0) + 1
        total += 1

    if total == 0:
        return {}

    return {
        option_id: round_metric(counts.get(option_id, 0) / total)  # type: ignore[misc]
        for option_id in option_ids
        if option_id != correct_option
    }


def determine_difficulty_flag(difficulty: Optional[float]) -> DifficultyFlag:
    """Classify a difficulty index; None yields NONE."""
    if difficulty is None:
        return DifficultyFlag.NONE
    if difficulty < DIFFICULTY_TOO_HARD:
        return DifficultyFlag.TOO_HARD
    if difficulty > DIFFICULTY_TOO_EASY:
        return DifficultyFlag.TOO_EASY
    return DifficultyFlag.NONE


def determine_discrimination_flag(
    discrimination: Optional[float],
) -> DiscriminationFlag:
    """Classify a discrimination index; None yields NONE."""
    if discrimination is None:
        return DiscriminationFlag.NONE
    if discrimination < 0:
        return DiscriminationFlag.NEGATIVE
    if discrimination < DISCRIMINATION_CRITICAL:
        return DiscriminationFlag.CRITICAL
    if discrimination < DISCRIMINATION_WARNING:
        return DiscriminationFlag.WARNING
    return DiscriminationFlag.NONE


# =============================================================================
# PERSISTENCE
# =============================================================================


def get_item_statistics(db: Session, item_id: int) -> Optional[ItemStatistics]:
    """Return the statistics record of an item, or None if it has none yet."""
    return db.query(ItemStatistics).filter(ItemStatistics.item_id == item_id).first()


def get_or_create_item_statistics(db: Session, item_id: int) -> ItemStatistics:
    """
    Return the statistics record of an item, creating a PROBATION record if missing.

    Does NOT commit; the new record is added to the session for the caller's
    transaction.
    """
    stats = get_item_statistics(db, item_id)
    if stats is None:
        stats = ItemStatistics(
            item_id=item_id,
            response_count=0,
            validity_status=ItemValidityStatus.PROBATION,
            difficulty_flag=DifficultyFlag.NONE,
            discrimination_flag=DiscriminationFlag.NONE,
        )
        db.add(stats)
        db.flush()
    return stats


def initialize_item_statistics(db: Session, catalog: ItemCatalog) -> int:
    """
    Create PROBATION statistics records for catalog items that have none.

    Args:
        db: Database session
        catalog: Item catalog listing every item

    Returns:
        Number of records created.
    """
    existing = {item_id for (item_id,) in db.query(ItemStatistics.item_id).all()}
    missing = [item_id for item_id in catalog.item_ids() if item_id not in existing]

    if not missing:
        return 0

    for item_id in missing:
        db.add(
            ItemStatistics(
                item_id=item_id,
                response_count=0,
                validity_status=ItemValidityStatus.PROBATION,
                difficulty_flag=DifficultyFlag.NONE,
                discrimination_flag=DiscriminationFlag.NONE,
            )
        )
    db.commit()

    logger.info(f"Initialized statistics records for {len(missing)} items")
    return len(missing)


def _rest_totals_by_session(
    source: ResponseSource, competency_id: int, item_id: int
) -> Dict[str, float]:
    """Sum each session's competency scores, excluding ``item_id``."""
    totals: Dict[str, float] = {}
    for session_id, other_item_id, score in source.stream_competency_scores(
        competency_id
    ):
        if other_item_id == item_id:
            totals.setdefault(session_id, 0.0)
            continue
        totals[session_id] = totals.get(session_id, 0.0) + score
    return totals


def calculate_item_statistics(
    db: Session,
    source: ResponseSource,
    catalog: ItemCatalog,
    item_id: int,
    now: Optional[datetime] = None,
) -> ItemStatistics:
    """
    Recalculate and persist the CTT statistics of one item.

    The previous discrimination index is snapshotted before the new value is
    written, so trend detection always compares consecutive calculations.
    Validity status is not touched here; see validity_status.

    Args:
        db: Database session
        source: Response data source
        catalog: Item catalog
        item_id: Item to recalculate
        now: Calculation timestamp (defaults to the current UTC time)

    Returns:
        The updated ItemStatistics record.

    Raises:
        NotFoundError: If the item is unknown or has no responses at all.
        ConcurrentModificationError: If optimistic-lock retries are exhausted.
    """
    now = now or utc_now()

    item = catalog.get_item(item_id)
    if item is None:
        raise NotFoundError("Item not found", context={"item_id": item_id})

    item_scores = list(source.stream_item_scores(item_id))
    if not item_scores:
        raise NotFoundError(
            "Item has no responses to analyze", context={"item_id": item_id}
        )

    response_count = len(item_scores)
    difficulty: Optional[float] = None
    discrimination: Optional[float] = None
    distractors: Optional[Dict[str, float]] = None

    if response_count >= settings.PSYCHOMETRICS_MIN_RESPONSES:
        scores = [row.score for row in item_scores]
        difficulty = difficulty_index(scores)

        rest_totals = _rest_totals_by_session(source, item.competency_id, item_id)
        discrimination = discrimination_index(
            scores, [rest_totals.get(row.session_id, 0.0) for row in item_scores]
        )

        if item.is_choice and item.option_ids:
            distractors = distractor_efficiency(
                (row.selected_option for row in item_scores),
                item.option_ids,
                item.correct_option,
            )
    else:
        logger.debug(
            f"Item {item_id} has {response_count} responses "
            f"(< {settings.PSYCHOMETRICS_MIN_RESPONSES}); metrics left empty"
        )

    def _write() -> ItemStatistics:
        stats = get_or_create_item_statistics(db, item_id)
        stats.previous_discrimination_index = stats.discrimination_index
        stats.response_count = response_count
        stats.difficulty_index = difficulty
        stats.discrimination_index = discrimination
        stats.distractor_efficiency = distractors
        stats.difficulty_flag = determine_difficulty_flag(difficulty)
        stats.discrimination_flag = determine_discrimination_flag(discrimination)
        stats.last_calculated_at = now
        return stats

    stats = run_with_optimistic_retry(
        db,
        "update item statistics",
        _write,
        context={"item_id": item_id},
    )

    logger.info(
        f"Item statistics calculated for item {item_id}: n={response_count}, "
        f"p={difficulty}, rpb={discrimination}"
    )
    return stats


# =============================================================================
# RECOMMENDATIONS
# =============================================================================


def generate_item_recommendations(stats: ItemStatistics) -> List[str]:
    """
    Build human-readable improvement hints for an item.

    Args:
        stats: The item's statistics record

    Returns:
        Non-empty list of recommendation strings.
    """
    recommendations: List[str] = []

    if stats.discrimination_flag == DiscriminationFlag.NEGATIVE:
        recommendations.append(
            "CRITICAL: Negative discrimination. High performers fail this item "
            "while low performers succeed. Retire or completely revise it."
        )
    elif stats.discrimination_flag == DiscriminationFlag.CRITICAL:
        recommendations.append(
            f"Poor discrimination (rpb < {DISCRIMINATION_CRITICAL}). Review the "
            "question wording and answer options for clarity."
        )
    elif stats.discrimination_flag == DiscriminationFlag.WARNING:
        recommendations.append(
            "Marginal discrimination. Consider revising the item to better "
            "separate skill levels."
        )

    if stats.difficulty_flag == DifficultyFlag.TOO_HARD:
        recommendations.append(
            f"Too difficult (p < {DIFFICULTY_TOO_HARD}). Consider simplifying the "
            "question or giving clearer context."
        )
    elif stats.difficulty_flag == DifficultyFlag.TOO_EASY:
        recommendations.append(
            f"Too easy (p > {DIFFICULTY_TOO_EASY}). Consider increasing complexity "
            "or removing obvious answer options."
        )

    if stats.distractor_efficiency:
        non_functioning = sum(
            1 for rate in stats.distractor_efficiency.values() if rate == 0.0
        )
        if non_functioning > 0:
            recommendations.append(
                f"{non_functioning} non-functioning distractor(s) never selected. "
                "Revise these options to be more plausible."
            )

    response_count = stats.response_count or 0
    if response_count < settings.PSYCHOMETRICS_MIN_RESPONSES:
        needed = settings.PSYCHOMETRICS_MIN_RESPONSES - response_count
        recommendations.append(
            f"Insufficient data for reliable analysis. Need {needed} more responses."
        )

    if (
        stats.previous_discrimination_index is not None
        and stats.discrimination_index is not None
    ):
        decline = stats.previous_discrimination_index - stats.discrimination_index
        if decline > DISCRIMINATION_DECLINE_THRESHOLD:
            recommendations.append(
                f"Discrimination has declined by {decline:.2f} since the last "
                "calculation. Monitor for continued degradation."
            )

    if not recommendations:
        recommendations.append(
            "Item is performing within acceptable parameters. No action required."
        )

    return recommendations
