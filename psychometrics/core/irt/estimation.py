"""
Newton-Raphson maximum-likelihood estimators for the 2PL model.

Three independent one-dimensional solvers, each finding the root of the
log-likelihood derivative for one unknown while the others are held fixed:

    estimate_theta - respondent ability, item parameters fixed
    estimate_b     - item difficulty, discrimination and abilities fixed
    estimate_a     - item discrimination, difficulty and abilities fixed

Log-likelihood of dichotomous responses x_j with P_j = P(theta_j, a, b):
    L = sum(x_j * log(P_j) + (1 - x_j) * log(1 - P_j))

Derivatives used:
    dL/dtheta = sum(a_i * (x_i - P_i))           d2L = -sum(a_i^2 * P_i * (1 - P_i))
    dL/db     = sum(a * (P_j - x_j))             d2L = -sum(a^2 * P_j * (1 - P_j))
    dL/da     = sum((theta_j - b) * (x_j - P_j)) d2L = -sum((theta_j - b)^2 * P_j * (1 - P_j))

The item solvers also accept per-entry weights, so a calibration loop can
feed them expected counts at fixed ability points instead of one row per
respondent. estimate_a adds a log-normal penalty around its starting value.

Every loop is capped at NR_MAX_ITERATIONS and every iterate is clamped to
its parameter bounds, so pathological inputs (all-correct vectors, zero
information) terminate at a bound instead of producing NaN or infinity.
"""

import math
from typing import Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from .model import (
    MAX_DIFFICULTY,
    MAX_DISCRIMINATION,
    MAX_THETA,
    MIN_DIFFICULTY,
    MIN_DISCRIMINATION,
    MIN_THETA,
    clamp,
    probability_array,
)

# --- Newton-Raphson settings ---

NR_MAX_ITERATIONS = 20
NR_CONVERGENCE = 1e-4

# Second derivatives smaller than this carry no curvature information
HESSIAN_EPSILON = 1e-10

# Step damping for item-parameter updates to prevent oscillation (0 < lambda <= 1)
NR_DAMPING = 0.5

# Log-scale spread of the penalty that keeps discrimination near its starting
# value when the responses carry no information about ability
DISCRIMINATION_PRIOR_SD = 0.15


def estimate_theta(
    responses: Sequence[bool],
    a: Sequence[float],
    b: Sequence[float],
) -> float:
    """
    Estimate a respondent's ability from their responses to calibrated items.

    Starts at theta = 0 and takes undamped Newton steps. All-correct and
    all-incorrect vectors have no finite maximum and end at MAX_THETA and
    MIN_THETA respectively.

    Args:
        responses: Correct/incorrect response per item.
        a: Discrimination per item (same length as responses).
        b: Difficulty per item (same length as responses).

    Returns:
        Ability estimate clamped to [MIN_THETA, MAX_THETA]; 0.0 when there
        are no responses.
    """
    if len(responses) == 0:
        return 0.0

    x = np.asarray(responses, dtype=np.float64)
    a_arr = np.asarray(a, dtype=np.float64)
    b_arr = np.asarray(b, dtype=np.float64)

    theta = 0.0
    for _ in range(NR_MAX_ITERATIONS):
        p = probability_array(theta, a_arr, b_arr)
        d1 = float(np.sum(a_arr * (x - p)))
        d2 = -float(np.sum(a_arr * a_arr * p * (1.0 - p)))

        if abs(d2) < HESSIAN_EPSILON:
            break

        new_theta = clamp(theta - d1 / d2, MIN_THETA, MAX_THETA)
        delta = abs(new_theta - theta)
        theta = new_theta
        if delta < NR_CONVERGENCE:
            break

    return theta


def _weights_for(weights: Optional[Sequence[float]], n: int) -> NDArray[np.float64]:
    if weights is None:
        return np.ones(n, dtype=np.float64)
    return np.asarray(weights, dtype=np.float64)


def estimate_b(
    responses: Sequence[float],
    a: float,
    thetas: Sequence[float],
    initial_b: float,
    weights: Optional[Sequence[float]] = None,
) -> float:
    """
    Estimate an item's difficulty given its discrimination and respondent abilities.

    Args:
        responses: Correct/incorrect response per respondent, or the
            proportion correct at each ability when ``weights`` are given.
        a: Item discrimination (held fixed).
        thetas: Ability per respondent (same length as responses).
        initial_b: Starting difficulty.
        weights: Optional number of respondents behind each entry.

    Returns:
        Difficulty clamped to [MIN_DIFFICULTY, MAX_DIFFICULTY].
    """
    if len(responses) == 0:
        return clamp(initial_b, MIN_DIFFICULTY, MAX_DIFFICULTY)

    x = np.asarray(responses, dtype=np.float64)
    theta_arr = np.asarray(thetas, dtype=np.float64)
    w = _weights_for(weights, len(x))

    b = clamp(initial_b, MIN_DIFFICULTY, MAX_DIFFICULTY)
    for _ in range(NR_MAX_ITERATIONS):
        p = probability_array(theta_arr, a, b)
        d1 = float(np.sum(w * a * (p - x)))
        d2 = -float(np.sum(w * a * a * p * (1.0 - p)))

        if abs(d2) < HESSIAN_EPSILON:
            break

        new_b = clamp(b - NR_DAMPING * d1 / d2, MIN_DIFFICULTY, MAX_DIFFICULTY)
        delta = abs(new_b - b)
        b = new_b
        if delta < NR_CONVERGENCE:
            break

    return b


def estimate_a(
    responses: Sequence[float],
    initial_a: float,
    b: float,
    thetas: Sequence[float],
    weights: Optional[Sequence[float]] = None,
) -> float:
    """
    Estimate an item's discrimination given its difficulty and respondent abilities.

    Maximizes the log-likelihood plus a log-normal penalty centered on
    ``initial_a``:

        L(a) - (log(a) - log(initial_a))^2 / (2 * DISCRIMINATION_PRIOR_SD^2)

    Responses that carry no information about ability leave the penalty in
    charge, so the estimate settles near ``initial_a`` instead of collapsing
    to MIN_DISCRIMINATION. Strongly related (or reversed) responses still
    move it a long way.

    Args:
        responses: Correct/incorrect response per respondent, or the
            proportion correct at each ability when ``weights`` are given.
        initial_a: Starting discrimination and center of the penalty.
        b: Item difficulty (held fixed).
        thetas: Ability per respondent (same length as responses).
        weights: Optional number of respondents behind each entry.

    Returns:
        Discrimination clamped to [MIN_DISCRIMINATION, MAX_DISCRIMINATION].
    """
    a0 = clamp(initial_a, MIN_DISCRIMINATION, MAX_DISCRIMINATION)
    if len(responses) == 0:
        return a0

    x = np.asarray(responses, dtype=np.float64)
    theta_arr = np.asarray(thetas, dtype=np.float64)
    w = _weights_for(weights, len(x))
    centered = theta_arr - b
    prior_precision = 1.0 / (DISCRIMINATION_PRIOR_SD * DISCRIMINATION_PRIOR_SD)

    a = a0
    for _ in range(NR_MAX_ITERATIONS):
        p = probability_array(theta_arr, a, b)
        d1 = float(np.sum(w * centered * (x - p)))
        d2 = -float(np.sum(w * centered * centered * p * (1.0 - p)))

        # Penalty gradient, and its curvature without the sign-changing log term
        d1 -= prior_precision * math.log(a / a0) / a
        d2 -= prior_precision / (a * a)

        new_a = clamp(
            a - NR_DAMPING * d1 / d2, MIN_DISCRIMINATION, MAX_DISCRIMINATION
        )
        delta = abs(new_a - a)
        a = new_a
        if delta < NR_CONVERGENCE:
            break

    return a


def standard_errors(
    a: float,
    b: float,
    thetas: Sequence[float],
    weights: Optional[Sequence[float]] = None,
) -> Tuple[float, float]:
    """
    Asymptotic standard errors of an item's (a, b) from Fisher information.

    Args:
        a: Item discrimination.
        b: Item difficulty.
        thetas: Abilities of the respondents who answered the item.
        weights: Optional number of respondents at each ability.

    Returns:
        Tuple of (se_discrimination, se_difficulty). Each is NaN when its
        information is effectively zero.
    """
    theta_arr = np.asarray(thetas, dtype=np.float64)
    w = _weights_for(weights, len(theta_arr))
    p = probability_array(theta_arr, a, b)
    pq = w * p * (1.0 - p)

    info_a = float(np.sum((theta_arr - b) ** 2 * pq))
    info_b = float(np.sum(a * a * pq))

    se_a = 1.0 / math.sqrt(info_a) if info_a > HESSIAN_EPSILON else math.nan
    se_b = 1.0 / math.sqrt(info_b) if info_b > HESSIAN_EPSILON else math.nan
    return se_a, se_b
