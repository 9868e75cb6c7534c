"""
Two-parameter logistic (2PL) item response model.

Formula:
    P(correct | theta, a, b) = 1 / (1 + exp(-a * (theta - b)))

Where:
    theta = respondent ability
    a     = item discrimination (slope)
    b     = item difficulty (location)

The exponent is clamped so that |theta| or |b| up to 100 (and beyond)
returns exactly 0.0 or 1.0 instead of overflowing: exp(35) is already
~1.6e15, far past double precision for the logistic tails.
"""

import math
from typing import Union

import numpy as np
from numpy.typing import ArrayLike, NDArray

# --- Parameter bounds ---

MIN_THETA = -4.0
MAX_THETA = 4.0
MIN_DIFFICULTY = -4.0
MAX_DIFFICULTY = 4.0
MIN_DISCRIMINATION = 0.1
MAX_DISCRIMINATION = 4.0

# --- Numerical safety ---

# Exponent magnitude beyond which the logistic is returned as exactly 0 or 1
EXPONENT_CLAMP = 35.0

# Scores at or above this threshold count as correct for IRT
DICHOTOMIZE_THRESHOLD = 0.5


def clamp(value: float, lower: float, upper: float) -> float:
    """Clamp a value into [lower, upper]."""
    return max(lower, min(upper, value))


def probability(theta: float, a: float, b: float) -> float:
    """
    Probability of a correct response under the 2PL model.

    Returns exactly 0.5 when theta == b, and exactly 0.0/1.0 once the
    exponent passes +/-EXPONENT_CLAMP.

    Args:
        theta: Respondent ability.
        a: Item discrimination.
        b: Item difficulty.

    Returns:
        Probability in [0, 1].
    """
    exponent = -a * (theta - b)
    if exponent > EXPONENT_CLAMP:
        return 0.0
    if exponent < -EXPONENT_CLAMP:
        return 1.0
    return 1.0 / (1.0 + math.exp(exponent))


def probability_array(
    theta: Union[float, ArrayLike],
    a: Union[float, ArrayLike],
    b: Union[float, ArrayLike],
) -> NDArray[np.float64]:
    """Vectorized probability() with the same clamping rules (broadcasts inputs)."""
    exponent = -np.asarray(a, dtype=np.float64) * (
        np.asarray(theta, dtype=np.float64) - np.asarray(b, dtype=np.float64)
    )
    safe = np.clip(exponent, -EXPONENT_CLAMP, EXPONENT_CLAMP)
    p = 1.0 / (1.0 + np.exp(safe))
    p = np.where(exponent > EXPONENT_CLAMP, 0.0, p)
    p = np.where(exponent < -EXPONENT_CLAMP, 1.0, p)
    return p


def item_information(theta: float, a: float, b: float) -> float:
    """Fisher information of a 2PL item at theta: a^2 * P * (1 - P)."""
    p = probability(theta, a, b)
    return a * a * p * (1.0 - p)


def dichotomize(score: float) -> bool:
    """Convert a normalized score in [0, 1] into a correct/incorrect response."""
    return score >= DICHOTOMIZE_THRESHOLD
