"""
Review list and psychometric health report.

Read-only views over the stored statistics:

- get_items_requiring_review: items flagged for review or carrying a
  difficulty/discrimination flag, most severe first
- generate_health_report: pool-wide status counts, reliability summary and
  the top flagged items
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, TypedDict

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, joinedload

from psychometrics.core.datetime_utils import utc_now
from psychometrics.core.item_statistics import round_metric
from psychometrics.models.models import (
    AssessmentItem,
    BigFiveReliability,
    CompetencyReliability,
    DifficultyFlag,
    DiscriminationFlag,
    ItemStatistics,
    ItemValidityStatus,
    ReliabilityStatus,
)

logger = logging.getLogger(__name__)

# =============================================================================
# SEVERITY
# =============================================================================

SEVERITY_CRITICAL = 3  # Negative discrimination (toxic item)
SEVERITY_HIGH = 2  # Critical discrimination or extreme difficulty
SEVERITY_MEDIUM = 1  # Warning-level discrimination
SEVERITY_LOW = 0

TOP_FLAGGED_ITEMS_LIMIT = 10
QUESTION_TEXT_MAX_LENGTH = 100
RECENT_ANALYSIS_WINDOW = timedelta(hours=24)

# Health thresholds, as fractions of items or competencies
CRITICAL_FLAGGED_RATIO = 0.2
CRITICAL_RETIRED_RATIO = 0.3
CRITICAL_UNRELIABLE_RATIO = 0.3
WARNING_FLAGGED_RATIO = 0.1
WARNING_PROBATION_RATIO = 0.5
WARNING_UNRELIABLE_RATIO = 0.1
WARNING_AVERAGE_ALPHA = 0.7

HEALTH_HEALTHY = "healthy"
HEALTH_WARNING = "warning"
HEALTH_CRITICAL = "critical"


def calculate_severity(
    difficulty_flag: DifficultyFlag, discrimination_flag: DiscriminationFlag
) -> int:
    """Severity level (0-3) of an item's flags."""
    if discrimination_flag == DiscriminationFlag.NEGATIVE:
        return SEVERITY_CRITICAL
    if (
        discrimination_flag == DiscriminationFlag.CRITICAL
        or difficulty_flag != DifficultyFlag.NONE
    ):
        return SEVERITY_HIGH
    if discrimination_flag == DiscriminationFlag.WARNING:
        return SEVERITY_MEDIUM
    return SEVERITY_LOW


def _truncate(text: Optional[str], max_length: int = QUESTION_TEXT_MAX_LENGTH) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


@dataclass
class FlaggedItemSummary:
    """Compact view of an item that needs attention."""

    item_id: int
    question_text: str
    competency_name: str
    difficulty_index: Optional[float]
    discrimination_index: Optional[float]
    response_count: int
    validity_status: ItemValidityStatus
    difficulty_flag: DifficultyFlag
    discrimination_flag: DiscriminationFlag
    last_calculated_at: Optional[datetime]

    @property
    def severity(self) -> int:
        return calculate_severity(self.difficulty_flag, self.discrimination_flag)

    @property
    def primary_issue(self) -> str:
        """The single most important problem, in plain words."""
        if self.discrimination_flag == DiscriminationFlag.NEGATIVE:
            return "Toxic item: high performers fail, low performers succeed"
        if self.discrimination_flag == DiscriminationFlag.CRITICAL:
            return "Poor discrimination: item does not differentiate skill levels"
        if self.difficulty_flag == DifficultyFlag.TOO_HARD:
            return "Too difficult: most respondents fail this item"
        if self.difficulty_flag == DifficultyFlag.TOO_EASY:
            return "Too easy: most respondents answer correctly"
        if self.discrimination_flag == DiscriminationFlag.WARNING:
            return "Marginal discrimination: item has limited differentiating power"
        return "Under review for potential issues"

    @classmethod
    def from_statistics(cls, stats: ItemStatistics) -> "FlaggedItemSummary":
        item = stats.item
        competency = item.competency if item is not None else None
        return cls(
            item_id=stats.item_id,
            question_text=_truncate(item.question_text if item is not None else None),
            competency_name=competency.name if competency is not None else "Unknown",
            difficulty_index=stats.difficulty_index,
            discrimination_index=stats.discrimination_index,
            response_count=stats.response_count,
            validity_status=stats.validity_status,
            difficulty_flag=stats.difficulty_flag,
            discrimination_flag=stats.discrimination_flag,
            last_calculated_at=stats.last_calculated_at,
        )


class BigFiveSummary(TypedDict):
    """Trait-level reliability summary within the health report."""

    total_traits: int
    reliable_traits: int
    acceptable_traits: int
    unreliable_traits: int
    insufficient_data_traits: int
    average_alpha: Optional[float]
    lowest_alpha_trait: Optional[str]
    lowest_alpha_value: Optional[float]


class HealthReport(TypedDict):
    """Pool-wide psychometric health report."""

    generated_at: datetime
    total_items: int
    status_counts: Dict[str, int]
    items_needing_attention: int
    total_competencies: int
    reliability_counts: Dict[str, int]
    average_alpha: Optional[float]
    average_discrimination: Optional[float]
    top_flagged_items: List[FlaggedItemSummary]
    big_five: BigFiveSummary
    items_analyzed_last_24h: int
    overall_health: str


def get_items_requiring_review(
    db: Session, limit: Optional[int] = None
) -> List[FlaggedItemSummary]:
    """
    Items flagged for review or carrying any non-NONE flag, most severe first.

    Args:
        db: Database session
        limit: Optional maximum number of summaries

    Returns:
        List of FlaggedItemSummary sorted by severity descending, then item id.
    """
    records = (
        db.query(ItemStatistics)
        .options(joinedload(ItemStatistics.item).joinedload(AssessmentItem.competency))
        .filter(
            or_(
                ItemStatistics.validity_status == ItemValidityStatus.FLAGGED_FOR_REVIEW,
                ItemStatistics.difficulty_flag != DifficultyFlag.NONE,
                ItemStatistics.discrimination_flag != DiscriminationFlag.NONE,
            )
        )
        .all()
    )

    summaries = [FlaggedItemSummary.from_statistics(stats) for stats in records]
    summaries.sort(key=lambda s: (-s.severity, s.item_id))
    if limit is not None:
        summaries = summaries[:limit]
    return summaries


def _count_by(db: Session, column, enum_type) -> Dict[str, int]:
    counts = {member.value: 0 for member in enum_type}
    for value, count in db.query(column, func.count()).group_by(column).all():
        counts[value.value] = count
    return counts


def _average(db: Session, column) -> Optional[float]:
    value = db.query(func.avg(column)).filter(column.isnot(None)).scalar()
    return round_metric(float(value)) if value is not None else None


def _big_five_summary(db: Session) -> BigFiveSummary:
    traits = db.query(BigFiveReliability).all()
    by_status = {status: 0 for status in ReliabilityStatus}
    for record in traits:
        by_status[record.reliability_status] += 1

    with_alpha = [record for record in traits if record.cronbach_alpha is not None]
    lowest = min(with_alpha, key=lambda r: r.cronbach_alpha) if with_alpha else None

    return {
        "total_traits": len(traits),
        "reliable_traits": by_status[ReliabilityStatus.RELIABLE],
        "acceptable_traits": by_status[ReliabilityStatus.ACCEPTABLE],
        "unreliable_traits": by_status[ReliabilityStatus.UNRELIABLE],
        "insufficient_data_traits": by_status[ReliabilityStatus.INSUFFICIENT_DATA],
        "average_alpha": _average(db, BigFiveReliability.cronbach_alpha),
        "lowest_alpha_trait": lowest.trait.value if lowest is not None else None,
        "lowest_alpha_value": lowest.cronbach_alpha if lowest is not None else None,
    }


def determine_overall_health(
    total_items: int,
    status_counts: Dict[str, int],
    total_competencies: int,
    reliability_counts: Dict[str, int],
    average_alpha: Optional[float],
) -> str:
    """Overall health: critical, warning or healthy."""
    flagged = status_counts[ItemValidityStatus.FLAGGED_FOR_REVIEW.value]
    retired = status_counts[ItemValidityStatus.RETIRED.value]
    probation = status_counts[ItemValidityStatus.PROBATION.value]
    unreliable = reliability_counts[ReliabilityStatus.UNRELIABLE.value]

    if (
        flagged > total_items * CRITICAL_FLAGGED_RATIO
        or retired > total_items * CRITICAL_RETIRED_RATIO
        or unreliable > total_competencies * CRITICAL_UNRELIABLE_RATIO
    ):
        return HEALTH_CRITICAL

    if (
        flagged > total_items * WARNING_FLAGGED_RATIO
        or probation > total_items * WARNING_PROBATION_RATIO
        or unreliable > total_competencies * WARNING_UNRELIABLE_RATIO
        or (average_alpha is not None and average_alpha < WARNING_AVERAGE_ALPHA)
    ):
        return HEALTH_WARNING

    return HEALTH_HEALTHY


def generate_health_report(db: Session, now: Optional[datetime] = None) -> HealthReport:
    """
    Build the psychometric health report for the whole item pool.

    Args:
        db: Database session
        now: Report timestamp (defaults to the current UTC time)

    Returns:
        HealthReport dictionary.
    """
    now = now or utc_now()

    total_items = db.query(func.count(ItemStatistics.id)).scalar() or 0
    status_counts = _count_by(db, ItemStatistics.validity_status, ItemValidityStatus)

    total_competencies = db.query(func.count(CompetencyReliability.id)).scalar() or 0
    reliability_counts = _count_by(
        db, CompetencyReliability.reliability_status, ReliabilityStatus
    )

    average_alpha = _average(db, CompetencyReliability.cronbach_alpha)
    average_discrimination = _average(db, ItemStatistics.discrimination_index)

    analyzed_recently = (
        db.query(func.count(ItemStatistics.id))
        .filter(ItemStatistics.last_calculated_at > now - RECENT_ANALYSIS_WINDOW)
        .scalar()
        or 0
    )

    report: HealthReport = {
        "generated_at": now,
        "total_items": total_items,
        "status_counts": status_counts,
        "items_needing_attention": (
            status_counts[ItemValidityStatus.FLAGGED_FOR_REVIEW.value]
            + status_counts[ItemValidityStatus.PROBATION.value]
        ),
        "total_competencies": total_competencies,
        "reliability_counts": reliability_counts,
        "average_alpha": average_alpha,
        "average_discrimination": average_discrimination,
        "top_flagged_items": get_items_requiring_review(
            db, limit=TOP_FLAGGED_ITEMS_LIMIT
        ),
        "big_five": _big_five_summary(db),
        "items_analyzed_last_24h": analyzed_recently,
        "overall_health": determine_overall_health(
            total_items,
            status_counts,
            total_competencies,
            reliability_counts,
            average_alpha,
        ),
    }

    logger.info(
        f"Health report generated: {total_items} items, "
        f"{total_competencies} competencies, overall={report['overall_health']}"
    )
    return report
