"""
TypedDict definitions for reliability calculation results.
"""

from typing import Optional, TypedDict


class CronbachAlphaResult(TypedDict):
    """
    Result structure for a Cronbach's alpha calculation.

    Fields:
        cronbach_alpha: Alpha rounded to 4 places, or None when the data is
            insufficient (fewer than 2 items, too few complete respondents,
            or zero total variance).
        sample_size: Respondents meeting the completeness threshold.
        item_count: Items in the scale.
    """

    cronbach_alpha: Optional[float]
    sample_size: int
    item_count: int


class RemovalCandidate(TypedDict):
    """An item whose removal would raise the scale's alpha."""

    item_id: int
    alpha_if_deleted: float
    improvement: float
    recommendation: str
