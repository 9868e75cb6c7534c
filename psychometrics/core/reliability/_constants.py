"""
Shared constants for reliability estimation.

Threshold constants and recommendation texts used across the reliability
submodules.
"""


# =============================================================================
# CRONBACH'S ALPHA THRESHOLDS
# =============================================================================

ALPHA_RELIABLE = 0.70  # α ≥ 0.70: reliable internal consistency
ALPHA_ACCEPTABLE = 0.60  # α ≥ 0.60: acceptable; below is unreliable

# Alpha needs at least two items to have any item covariance
MIN_ITEMS_FOR_ALPHA = 2

# Dropping one item must still leave two, so alpha-if-deleted needs three
MIN_ITEMS_FOR_ALPHA_IF_DELETED = 3


# =============================================================================
# ITEM REMOVAL CANDIDATES
# =============================================================================

# Minimum alpha gain from dropping an item for it to be reported
REMOVAL_IMPROVEMENT_THRESHOLD = 0.02

# Gain above which removal is strongly recommended
STRONG_REMOVAL_IMPROVEMENT_THRESHOLD = 0.05

RECOMMENDATION_STRONG_REMOVAL = (
    "Strongly consider removing this item - would significantly improve scale reliability"
)
RECOMMENDATION_REVISE_OR_REMOVE = (
    "Consider revising or removing this item to improve reliability"
)
RECOMMENDATION_MINOR_IMPACT = "Minor impact - review if other issues are present"
