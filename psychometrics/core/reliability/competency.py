"""
Competency-level reliability.

Each competency is one scale; its alpha and alpha-if-deleted are
recalculated from all observed responses and stored in a single
CompetencyReliability record per competency.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from psychometrics.core.data_sources import ItemCatalog, ResponseSource
from psychometrics.core.datetime_utils import utc_now
from psychometrics.core.db_error_handling import run_with_optimistic_retry
from psychometrics.core.errors import NotFoundError
from psychometrics.models.models import CompetencyReliability, ReliabilityStatus

from ._data_loader import load_score_matrix
from ._types import RemovalCandidate
from .cronbach import (
    calculate_alpha_if_deleted,
    calculate_cronbach_alpha,
    determine_reliability_status,
    get_removal_candidates,
)

logger = logging.getLogger(__name__)


def get_competency_reliability(
    db: Session, competency_id: int
) -> Optional[CompetencyReliability]:
    """Return the stored reliability snapshot of a competency, if any."""
    return (
        db.query(CompetencyReliability)
        .filter(CompetencyReliability.competency_id == competency_id)
        .first()
    )


def calculate_competency_reliability(
    db: Session,
    source: ResponseSource,
    catalog: ItemCatalog,
    competency_id: int,
    now: Optional[datetime] = None,
) -> CompetencyReliability:
    """
    Recalculate and persist Cronbach's alpha for one competency.

    Args:
        db: Database session
        source: Response data source
        catalog: Item catalog
        competency_id: Competency to recalculate
        now: Calculation timestamp (defaults to the current UTC time)

    Returns:
        The updated CompetencyReliability record. A competency without
        enough data gets INSUFFICIENT_DATA, not an error.

    Raises:
        NotFoundError: If the competency is unknown.
        ConcurrentModificationError: If optimistic-lock retries are exhausted.
    """
    if not catalog.competency_exists(competency_id):
        raise NotFoundError(
            "Competency not found", context={"competency_id": competency_id}
        )

    now = now or utc_now()

    matrix = load_score_matrix(source, [competency_id])
    alpha_result = calculate_cronbach_alpha(matrix.session_scores, matrix.item_ids)
    alpha = alpha_result["cronbach_alpha"]
    alpha_if_deleted = (
        calculate_alpha_if_deleted(matrix.session_scores, matrix.item_ids)
        if alpha is not None
        else {}
    )
    status = determine_reliability_status(
        alpha, alpha_result["sample_size"], alpha_result["item_count"]
    )

    def _write() -> CompetencyReliability:
        record = get_competency_reliability(db, competency_id)
        if record is None:
            record = CompetencyReliability(competency_id=competency_id)
            db.add(record)
        record.cronbach_alpha = alpha
        record.sample_size = alpha_result["sample_size"]
        record.item_count = alpha_result["item_count"]
        record.reliability_status = status
        # JSON object keys are strings
        record.alpha_if_deleted = (
            {str(item_id): value for item_id, value in alpha_if_deleted.items()}
            if alpha_if_deleted
            else None
        )
        record.last_calculated_at = now
        return record

    record = run_with_optimistic_retry(
        db,
        "update competency reliability",
        _write,
        context={"competency_id": competency_id},
    )

    logger.info(
        f"Competency reliability calculated for {competency_id}: alpha={alpha}, "
        f"n={alpha_result['sample_size']}, k={alpha_result['item_count']}, "
        f"status={status.value}"
    )
    return record


def get_competency_removal_candidates(
    db: Session, competency_id: int
) -> List[RemovalCandidate]:
    """Removal candidates from a competency's stored reliability snapshot."""
    record = get_competency_reliability(db, competency_id)
    if record is None or record.reliability_status == ReliabilityStatus.INSUFFICIENT_DATA:
        return []
    stored = record.alpha_if_deleted or {}
    return get_removal_candidates(
        record.cronbach_alpha,
        {int(item_id): value for item_id, value in stored.items()},
    )
