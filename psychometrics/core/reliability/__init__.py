r"""
Reliability estimation for competency scales and Big Five traits.

Cronbach's alpha is calculated per competency and per Big Five trait (the
union of the items of its mapped competencies), together with
alpha-if-item-deleted for spotting items that weaken a scale.

Usage Example
-------------
    from psychometrics.core.reliability import (
        calculate_competency_reliability,
        get_competency_removal_candidates,
    )

    record = calculate_competency_reliability(db, source, catalog, competency_id)
    print(f"alpha={record.cronbach_alpha} ({record.reliability_status.value})")

    for candidate in get_competency_removal_candidates(db, competency_id):
        print(f"Item {candidate['item_id']}: +{candidate['improvement']:.3f}")
        print(f"  {candidate['recommendation']}")
"""

from ._constants import (
    ALPHA_ACCEPTABLE,
    ALPHA_RELIABLE,
    REMOVAL_IMPROVEMENT_THRESHOLD,
    STRONG_REMOVAL_IMPROVEMENT_THRESHOLD,
)
from ._data_loader import ScoreMatrix, load_score_matrix
from ._types import CronbachAlphaResult, RemovalCandidate
from .big_five import (
    calculate_big_five_reliability,
    get_all_big_five_reliability,
    get_big_five_reliability,
)
from .competency import (
    calculate_competency_reliability,
    get_competency_reliability,
    get_competency_removal_candidates,
)
from .cronbach import (
    calculate_alpha_if_deleted,
    calculate_cronbach_alpha,
    determine_reliability_status,
    get_removal_candidates,
    removal_recommendation,
)

__all__ = [
    # Types
    "CronbachAlphaResult",
    "RemovalCandidate",
    "ScoreMatrix",
    # Thresholds
    "ALPHA_ACCEPTABLE",
    "ALPHA_RELIABLE",
    "REMOVAL_IMPROVEMENT_THRESHOLD",
    "STRONG_REMOVAL_IMPROVEMENT_THRESHOLD",
    # Cronbach's alpha
    "calculate_alpha_if_deleted",
    "calculate_cronbach_alpha",
    "determine_reliability_status",
    "get_removal_candidates",
    "removal_recommendation",
    # Scales
    "load_score_matrix",
    "calculate_competency_reliability",
    "get_competency_reliability",
    "get_competency_removal_candidates",
    "calculate_big_five_reliability",
    "get_all_big_five_reliability",
    "get_big_five_reliability",
]
