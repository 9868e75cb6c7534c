r"""
Cronbach's alpha calculation for internal consistency.

Alpha indicates how closely related a set of items are as a group; higher
values mean the items of a scale measure the same underlying construct.

Formula:
    α = (k / (k-1)) × (1 - Σσ²ᵢ / σ²ₜ)

Where:
    k = number of items
    σ²ᵢ = sample variance of item i
    σ²ₜ = sample variance of total scores

Only respondents who answered at least RELIABILITY_COMPLETENESS_THRESHOLD of
the items take part; their missing items are scored 0. Variances use the
sample (n-1) denominator.

Usage Example:
    from psychometrics.core.reliability import (
        calculate_cronbach_alpha,
        calculate_alpha_if_deleted,
        get_removal_candidates,
    )

    result = calculate_cronbach_alpha(matrix.session_scores, matrix.item_ids)
    if result["cronbach_alpha"] is not None:
        deleted = calculate_alpha_if_deleted(matrix.session_scores, matrix.item_ids)
        for candidate in get_removal_candidates(result["cronbach_alpha"], deleted):
            print(candidate["item_id"], candidate["recommendation"])
"""

import logging
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
from numpy.typing import NDArray

from psychometrics.core.config import settings
from psychometrics.core.item_statistics import round_metric
from psychometrics.models.models import ReliabilityStatus

from ._constants import (
    ALPHA_ACCEPTABLE,
    ALPHA_RELIABLE,
    MIN_ITEMS_FOR_ALPHA,
    MIN_ITEMS_FOR_ALPHA_IF_DELETED,
    RECOMMENDATION_MINOR_IMPACT,
    RECOMMENDATION_REVISE_OR_REMOVE,
    RECOMMENDATION_STRONG_REMOVAL,
    REMOVAL_IMPROVEMENT_THRESHOLD,
    STRONG_REMOVAL_IMPROVEMENT_THRESHOLD,
)
from ._types import CronbachAlphaResult, RemovalCandidate

logger = logging.getLogger(__name__)


def _complete_score_matrix(
    session_scores: Mapping[str, Mapping[int, float]],
    item_ids: Sequence[int],
    completeness_threshold: float,
) -> NDArray[np.float64]:
    """
    Dense (respondents x items) matrix of the sufficiently complete respondents.

    Missing items of an included respondent are scored 0.
    """
    k = len(item_ids)
    required = k * completeness_threshold
    rows = [
        [scores.get(item_id, 0.0) for item_id in item_ids]
        for scores in session_scores.values()
        if sum(1 for item_id in item_ids if item_id in scores) >= required
    ]
    if not rows:
        return np.zeros((0, k), dtype=np.float64)
    return np.asarray(rows, dtype=np.float64)


def calculate_cronbach_alpha(
    session_scores: Mapping[str, Mapping[int, float]],
    item_ids: Sequence[int],
    min_sample_size: Optional[int] = None,
    completeness_threshold: Optional[float] = None,
) -> CronbachAlphaResult:
    """
    Calculate Cronbach's alpha for a scale.

    Args:
        session_scores: Score per item id for each respondent session.
        item_ids: Items forming the scale.
        min_sample_size: Minimum complete respondents. Defaults to
            settings.PSYCHOMETRICS_MIN_RESPONSES.
        completeness_threshold: Fraction of items a respondent must have
            answered. Defaults to settings.RELIABILITY_COMPLETENESS_THRESHOLD.

    Returns:
        CronbachAlphaResult; ``cronbach_alpha`` is None when the data is
        insufficient.
    """
    if min_sample_size is None:
        min_sample_size = settings.PSYCHOMETRICS_MIN_RESPONSES
    if completeness_threshold is None:
        completeness_threshold = settings.RELIABILITY_COMPLETENESS_THRESHOLD

    k = len(item_ids)
    if k < MIN_ITEMS_FOR_ALPHA:
        logger.debug(f"Insufficient items for alpha calculation: k={k}")
        return {"cronbach_alpha": None, "sample_size": 0, "item_count": k}

    scores = _complete_score_matrix(session_scores, item_ids, completeness_threshold)
    n = scores.shape[0]

    if n < max(min_sample_size, 2):
        logger.debug(f"Insufficient complete respondents for alpha: n={n}")
        return {"cronbach_alpha": None, "sample_size": n, "item_count": k}

    item_variances = scores.var(axis=0, ddof=1)
    total_variance = float(scores.sum(axis=1).var(ddof=1))

    if total_variance == 0.0:
        logger.debug("Total variance is zero, cannot calculate alpha")
        return {"cronbach_alpha": None, "sample_size": n, "item_count": k}

    alpha = (k / (k - 1)) * (1.0 - float(item_variances.sum()) / total_variance)

    return {"cronbach_alpha": round_metric(alpha), "sample_size": n, "item_count": k}


def determine_reliability_status(
    alpha: Optional[float],
    sample_size: int,
    item_count: int,
    min_sample_size: Optional[int] = None,
) -> ReliabilityStatus:
    """
    Classify a scale's alpha.

    Returns INSUFFICIENT_DATA when alpha is None, the sample is below the
    minimum, or the scale has fewer than two items.
    """
    if min_sample_size is None:
        min_sample_size = settings.PSYCHOMETRICS_MIN_RESPONSES

    if alpha is None or sample_size < min_sample_size or item_count < MIN_ITEMS_FOR_ALPHA:
        return ReliabilityStatus.INSUFFICIENT_DATA
    if alpha >= ALPHA_RELIABLE:
        return ReliabilityStatus.RELIABLE
    if alpha >= ALPHA_ACCEPTABLE:
        return ReliabilityStatus.ACCEPTABLE
    return ReliabilityStatus.UNRELIABLE


def calculate_alpha_if_deleted(
    session_scores: Mapping[str, Mapping[int, float]],
    item_ids: Sequence[int],
    min_sample_size: Optional[int] = None,
    completeness_threshold: Optional[float] = None,
) -> Dict[int, float]:
    """
    Alpha of the scale with each item removed in turn.

    Computed in a single pass: removing item i leaves

        Σσ²' = Σσ² - σ²ᵢ
        σ²ₜ' = σ²ₜ - 2·cov(i, total) + σ²ᵢ

    so no per-item matrix rebuild is needed. The respondent set is the one
    used for the full-scale alpha.

    Args:
        session_scores: Score per item id for each respondent session.
        item_ids: Items forming the scale.
        min_sample_size: Minimum complete respondents.
        completeness_threshold: Fraction of items a respondent must have answered.

    Returns:
        Dict mapping item id to alpha without it. Empty when the scale has
        fewer than three items or too few complete respondents; items whose
        removal leaves zero total variance are omitted.
    """
    if min_sample_size is None:
        min_sample_size = settings.PSYCHOMETRICS_MIN_RESPONSES
    if completeness_threshold is None:
        completeness_threshold = settings.RELIABILITY_COMPLETENESS_THRESHOLD

    k = len(item_ids)
    if k < MIN_ITEMS_FOR_ALPHA_IF_DELETED:
        return {}

    scores = _complete_score_matrix(session_scores, item_ids, completeness_threshold)
    n = scores.shape[0]
    if n < max(min_sample_size, 2):
        return {}

    item_variances = scores.var(axis=0, ddof=1)
    totals = scores.sum(axis=1)
    total_variance = float(totals.var(ddof=1))
    sum_item_variances = float(item_variances.sum())

    item_deviations = scores - scores.mean(axis=0)
    total_deviations = totals - totals.mean()
    cov_with_total = (item_deviations * total_deviations[:, None]).sum(axis=0) / (n - 1)

    factor = (k - 1) / (k - 2)
    result: Dict[int, float] = {}
    for i, item_id in enumerate(item_ids):
        variance_without = (
            total_variance - 2.0 * float(cov_with_total[i]) + float(item_variances[i])
        )
        # Tolerate floating point residue around zero
        if abs(variance_without) < 1e-12:
            continue
        sum_without = sum_item_variances - float(item_variances[i])
        alpha_without = factor * (1.0 - sum_without / variance_without)
        result[item_id] = round_metric(alpha_without)  # type: ignore[assignment]

    logger.debug(f"Alpha-if-deleted for {k} items computed in single pass")
    return result


def removal_recommendation(improvement: float) -> str:
    """Recommendation text for the alpha gain from removing an item."""
    if improvement >= STRONG_REMOVAL_IMPROVEMENT_THRESHOLD:
        return RECOMMENDATION_STRONG_REMOVAL
    if improvement >= REMOVAL_IMPROVEMENT_THRESHOLD:
        return RECOMMENDATION_REVISE_OR_REMOVE
    return RECOMMENDATION_MINOR_IMPACT


def get_removal_candidates(
    alpha: Optional[float],
    alpha_if_deleted: Mapping[int, float],
) -> List[RemovalCandidate]:
    """
    Items whose removal would raise alpha by at least REMOVAL_IMPROVEMENT_THRESHOLD.

    Args:
        alpha: Current scale alpha.
        alpha_if_deleted: Alpha without each item.

    Returns:
        Candidates sorted by improvement, largest first. Empty if alpha is None.
    """
    if alpha is None:
        return []

    candidates: List[RemovalCandidate] = []
    for item_id, alpha_without in alpha_if_deleted.items():
        improvement = round_metric(alpha_without - alpha)
        if improvement is None or improvement < REMOVAL_IMPROVEMENT_THRESHOLD:
            continue
        candidates.append(
            {
                "item_id": int(item_id),
                "alpha_if_deleted": alpha_without,
                "improvement": improvement,
                "recommendation": removal_recommendation(improvement),
            }
        )

    candidates.sort(key=lambda c: c["improvement"], reverse=True)
    return candidates
