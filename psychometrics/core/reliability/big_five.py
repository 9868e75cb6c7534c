"""
Big Five trait-level reliability.

A trait's scale is the union of the items of every competency mapped to it.
All five traits always have a record: a trait with no mapped competencies
is stored as INSUFFICIENT_DATA with zero counts.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from psychometrics.core.data_sources import ItemCatalog, ResponseSource
from psychometrics.core.datetime_utils import utc_now
from psychometrics.core.db_error_handling import run_with_optimistic_retry
from psychometrics.models.models import (
    BigFiveReliability,
    BigFiveTrait,
    ReliabilityStatus,
)

from ._data_loader import load_score_matrix
from .cronbach import (
    calculate_alpha_if_deleted,
    calculate_cronbach_alpha,
    determine_reliability_status,
)

logger = logging.getLogger(__name__)


def get_big_five_reliability(
    db: Session, trait: BigFiveTrait
) -> Optional[BigFiveReliability]:
    """Return the stored reliability snapshot of a trait, if any."""
    return (
        db.query(BigFiveReliability).filter(BigFiveReliability.trait == trait).first()
    )


def get_all_big_five_reliability(db: Session) -> List[BigFiveReliability]:
    """Return every stored trait snapshot in trait declaration order."""
    order = {trait: index for index, trait in enumerate(BigFiveTrait)}
    records = db.query(BigFiveReliability).all()
    return sorted(records, key=lambda record: order[record.trait])


def calculate_big_five_reliability(
    db: Session,
    source: ResponseSource,
    catalog: ItemCatalog,
    trait: BigFiveTrait,
    now: Optional[datetime] = None,
) -> BigFiveReliability:
    """
    Recalculate and persist Cronbach's alpha for one Big Five trait.

    Args:
        db: Database session
        source: Response data source
        catalog: Item catalog providing the trait mapping
        trait: Trait to recalculate
        now: Calculation timestamp (defaults to the current UTC time)

    Returns:
        The updated BigFiveReliability record.

    Raises:
        ConcurrentModificationError: If optimistic-lock retries are exhausted.
    """
    now = now or utc_now()

    competency_ids = catalog.competencies_for_trait(trait)

    if competency_ids:
        matrix = load_score_matrix(source, competency_ids)
        alpha_result = calculate_cronbach_alpha(matrix.session_scores, matrix.item_ids)
        alpha = alpha_result["cronbach_alpha"]
        sample_size = alpha_result["sample_size"]
        item_count = alpha_result["item_count"]
        alpha_if_deleted = (
            calculate_alpha_if_deleted(matrix.session_scores, matrix.item_ids)
            if alpha is not None
            else {}
        )
        status = determine_reliability_status(alpha, sample_size, item_count)
    else:
        logger.info(f"No competencies mapped to Big Five trait: {trait.value}")
        alpha = None
        sample_size = 0
        item_count = 0
        alpha_if_deleted = {}
        status = ReliabilityStatus.INSUFFICIENT_DATA

    def _write() -> BigFiveReliability:
        record = get_big_five_reliability(db, trait)
        if record is None:
            record = BigFiveReliability(trait=trait)
            db.add(record)
        record.cronbach_alpha = alpha
        record.sample_size = sample_size
        record.item_count = item_count
        record.reliability_status = status
        record.alpha_if_deleted = (
            {str(item_id): value for item_id, value in alpha_if_deleted.items()}
            if alpha_if_deleted
            else None
        )
        record.contributing_competencies = len(competency_ids)
        record.total_items = item_count
        record.last_calculated_at = now
        return record

    record = run_with_optimistic_retry(
        db,
        "update Big Five reliability",
        _write,
        context={"trait": trait.value},
    )

    logger.info(
        f"Big Five reliability calculated for {trait.value}: alpha={alpha}, "
        f"competencies={len(competency_ids)}, items={item_count}"
    )
    return record
