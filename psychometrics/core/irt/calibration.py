"""
2PL IRT calibration by marginal maximum likelihood (EM over an ability grid).

Estimates discrimination (a) and difficulty (b) for every item of one
competency from its response matrix, alternating between:

    E-step - each respondent's ability posterior with item parameters fixed
    M-step - re-estimate each item's b, then a, from the expected counts

Abilities are integrated over a fixed grid with a standard normal prior,
which pins the latent scale (2PL is only identified up to a linear
transform of theta).

Functions:
    run_em_calibration - Core estimation over a ResponseMatrix
    calibrate_competency - Build the matrix, calibrate, persist parameters
    is_calibration_due - Whether a competency needs (re)calibration
    estimate_ability - Ability estimate from stored item parameters
    validate_calibration - Agreement between IRT b and CTT difficulty
"""

import logging
import math
from datetime import datetime, timedelta
from typing import List, Mapping, Optional, Tuple, TypedDict

import numpy as np
from numpy.typing import NDArray
from sqlalchemy import func
from sqlalchemy.orm import Session

from psychometrics.core.config import settings
from psychometrics.core.data_sources import ItemCatalog, ResponseSource
from psychometrics.core.datetime_utils import interval_elapsed, utc_now
from psychometrics.core.db_error_handling import run_with_optimistic_retry
from psychometrics.core.errors import (
    CalibrationError,
    ConcurrentModificationError,
    NotFoundError,
)
from psychometrics.core.item_statistics import get_or_create_item_statistics
from psychometrics.models.models import ItemStatistics

from .estimation import estimate_a, estimate_b, estimate_theta, standard_errors
from .model import (
    MAX_DIFFICULTY,
    MAX_THETA,
    MIN_DIFFICULTY,
    MIN_THETA,
    clamp,
    dichotomize,
)
from .response_matrix import ResponseMatrix, build_response_matrix

logger = logging.getLogger(__name__)

# --- EM settings ---

MAX_ITERATIONS = 100
CONVERGENCE_THRESHOLD = 0.01  # Max |change| in any a or b between cycles

# Evenly spaced ability points over [MIN_THETA, MAX_THETA]
QUADRATURE_POINTS = 61

INITIAL_DISCRIMINATION = 1.0

# 3PL is not estimated; the stored guessing parameter is always zero
GUESSING_PARAMETER = 0.0

# --- P-value clamping for logit transform ---

P_VALUE_CLAMP_MIN = 0.01  # Prevent log(0) in logit transform
P_VALUE_CLAMP_MAX = 0.99  # Prevent log(0) in logit transform

# --- Validation fit thresholds ---

GOOD_FIT_CORRELATION = 0.80  # Pearson r indicating strong IRT-CTT agreement
GOOD_FIT_RMSE = 0.50  # RMSE in logit units for acceptable fit
MODERATE_FIT_CORRELATION = 0.60

# Minimum items needed for a meaningful correlation
MIN_ITEMS_FOR_VALIDATION = 3

FIT_GOOD = "Good fit"
FIT_MODERATE = "Moderate fit - review outlier items"
FIT_POOR = "Poor fit - review calibration data quality"
FIT_INSUFFICIENT = "Insufficient items for validation"


# --- TypedDicts for structured return types ---


class ItemCalibration(TypedDict):
    """Parameter estimates for a single calibrated item."""

    item_id: int
    discrimination: float
    difficulty: float
    se_discrimination: Optional[float]
    se_difficulty: Optional[float]


class CalibrationResult(TypedDict):
    """Outcome of calibrating one competency."""

    competency_id: Optional[int]
    insufficient_data: bool
    item_count: int
    respondent_count: int
    iterations: int
    converged: bool
    max_parameter_change: float
    excluded_item_ids: List[int]
    items: List[ItemCalibration]


class ValidationReport(TypedDict):
    """Validation report comparing IRT and CTT difficulty."""

    correlation_irt_empirical: float
    rmse: float
    n_items: int
    mean_se_difficulty: float
    mean_se_discrimination: float
    interpretation: str


def _logit(p: float) -> float:
    p_clamped = max(P_VALUE_CLAMP_MIN, min(P_VALUE_CLAMP_MAX, p))
    return math.log(p_clamped / (1 - p_clamped))


def _p_to_logit_difficulty(p: float) -> float:
    """Convert a p-value (proportion correct) to IRT difficulty via logit.

    b = -log(p / (1-p)); p is clamped to [P_VALUE_CLAMP_MIN, P_VALUE_CLAMP_MAX].
    """
    return -_logit(p)


def _finite_or_none(value: float) -> Optional[float]:
    return value if math.isfinite(value) else None


def _insufficient_result(
    competency_id: Optional[int], matrix: ResponseMatrix
) -> CalibrationResult:
    return {
        "competency_id": competency_id,
        "insufficient_data": True,
        "item_count": matrix.item_count,
        "respondent_count": matrix.respondent_count,
        "iterations": 0,
        "converged": False,
        "max_parameter_change": 0.0,
        "excluded_item_ids": list(matrix.excluded_item_ids),
        "items": [],
    }


def _quadrature() -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Ability grid over [MIN_THETA, MAX_THETA] and its standard-normal log weights."""
    nodes = np.linspace(MIN_THETA, MAX_THETA, QUADRATURE_POINTS)
    log_weights = -0.5 * nodes * nodes
    log_weights -= np.logaddexp.reduce(log_weights)
    return nodes, log_weights


def _posterior(
    responses: NDArray[np.float64],
    a_params: NDArray[np.float64],
    b_params: NDArray[np.float64],
    nodes: NDArray[np.float64],
    log_weights: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Posterior probability of each ability node per respondent (rows sum to 1)."""
    logits = a_params[None, :] * (nodes[:, None] - b_params[None, :])
    # Stable log-sigmoid: log P = -log(1 + exp(-z)), log(1 - P) = -log(1 + exp(z))
    log_p = -np.logaddexp(0.0, -logits)
    log_q = -np.logaddexp(0.0, logits)

    log_post = responses @ log_p.T + (1.0 - responses) @ log_q.T + log_weights
    log_post -= log_post.max(axis=1, keepdims=True)
    posterior = np.exp(log_post)
    return posterior / posterior.sum(axis=1, keepdims=True)


def run_em_calibration(
    matrix: ResponseMatrix, competency_id: Optional[int] = None
) -> CalibrationResult:
    """
    Calibrate every item of a response matrix by marginal EM.

    Each cycle:
        1. E-step: with item parameters fixed, compute every respondent's
           posterior over the ability grid, then the expected number of
           respondents (and of correct answers per item) at each grid point.
        2. M-step: with those expectations fixed, re-estimate each item's b
           and then a by Newton-Raphson on the expected counts.

    Abilities follow a standard normal prior, which fixes the location and
    scale of the latent metric. Respondents with all-correct or all-wrong
    rows contribute finite posteriors rather than infinite ability
    estimates, so no item is perfectly separated by its own responses.

    Args:
        matrix: Filtered, complete response matrix.
        competency_id: Optional identifier copied into the result.

    Returns:
        CalibrationResult; ``insufficient_data`` is True for an empty matrix.
    """
    if matrix.is_empty:
        return _insufficient_result(competency_id, matrix)

    responses = matrix.responses.astype(np.float64)
    n_respondents, n_items = responses.shape
    nodes, log_weights = _quadrature()

    b_params = np.array(
        [
            clamp(_p_to_logit_difficulty(float(p)), MIN_DIFFICULTY, MAX_DIFFICULTY)
            for p in matrix.item_p_values
        ],
        dtype=np.float64,
    )
    a_params = np.full(n_items, INITIAL_DISCRIMINATION, dtype=np.float64)

    iteration = 0
    converged = False
    max_change = math.inf
    expected_n = np.zeros_like(nodes)

    while iteration < MAX_ITERATIONS and not converged:
        iteration += 1

        # E-step
        posterior = _posterior(responses, a_params, b_params, nodes, log_weights)
        expected_n = posterior.sum(axis=0)
        expected_correct = posterior.T @ responses
        proportions = np.divide(
            expected_correct,
            expected_n[:, None],
            out=np.zeros_like(expected_correct),
            where=expected_n[:, None] > 0,
        )

        # M-step
        max_change = 0.0
        for i in range(n_items):
            old_b = float(b_params[i])
            old_a = float(a_params[i])

            b_params[i] = estimate_b(
                proportions[:, i], old_a, nodes, old_b, weights=expected_n
            )
            a_params[i] = estimate_a(
                proportions[:, i], old_a, float(b_params[i]), nodes, weights=expected_n
            )

            max_change = max(
                max_change,
                abs(float(b_params[i]) - old_b),
                abs(float(a_params[i]) - old_a),
            )

        converged = max_change < CONVERGENCE_THRESHOLD
        logger.debug(f"EM cycle {iteration}: max_change={max_change:.5f}")

    items: List[ItemCalibration] = []
    for i, item_id in enumerate(matrix.item_ids):
        se_a, se_b = standard_errors(
            float(a_params[i]), float(b_params[i]), nodes, weights=expected_n
        )
        items.append(
            {
                "item_id": item_id,
                "discrimination": float(a_params[i]),
                "difficulty": float(b_params[i]),
                "se_discrimination": _finite_or_none(se_a),
                "se_difficulty": _finite_or_none(se_b),
            }
        )

    if not converged:
        logger.warning(
            f"EM calibration did not converge after {iteration} cycles "
            f"(max_change={max_change:.4f})"
        )

    return {
        "competency_id": competency_id,
        "insufficient_data": False,
        "item_count": n_items,
        "respondent_count": n_respondents,
        "iterations": iteration,
        "converged": converged,
        "max_parameter_change": float(max_change),
        "excluded_item_ids": list(matrix.excluded_item_ids),
        "items": items,
    }


def calibrate_competency(
    db: Session,
    source: ResponseSource,
    catalog: ItemCatalog,
    competency_id: int,
    now: Optional[datetime] = None,
) -> CalibrationResult:
    """
    Calibrate a competency's items and persist their 2PL parameters.

    Steps:
        1. Build the filtered response matrix
        2. Check the respondent and item gates
        3. Run EM calibration
        4. Write a, b, c=0, SEs and irt_calibrated_at to each item's statistics

    Args:
        db: Database session
        source: Response data source
        catalog: Item catalog
        competency_id: Competency to calibrate
        now: Calibration timestamp (defaults to the current UTC time)

    Returns:
        CalibrationResult. Insufficient data is reported in the result,
        never raised.

    Raises:
        NotFoundError: If the competency is unknown.
        ConcurrentModificationError: If optimistic-lock retries are exhausted.
        CalibrationError: If estimation or persistence fails unexpectedly.
    """
    if not catalog.competency_exists(competency_id):
        raise NotFoundError(
            "Competency not found", context={"competency_id": competency_id}
        )

    now = now or utc_now()

    try:
        matrix = build_response_matrix(source, competency_id)

        if (
            matrix.respondent_count < settings.IRT_MIN_RESPONDENTS
            or matrix.item_count < settings.IRT_MIN_ITEMS
        ):
            logger.info(
                f"Skipping calibration for competency {competency_id}: "
                f"{matrix.respondent_count} respondents "
                f"(min {settings.IRT_MIN_RESPONDENTS}), {matrix.item_count} items "
                f"(min {settings.IRT_MIN_ITEMS})"
            )
            return _insufficient_result(competency_id, matrix)

        logger.info(
            f"Running EM calibration for competency {competency_id}: "
            f"{matrix.item_count} items, {matrix.respondent_count} respondents"
        )
        result = run_em_calibration(matrix, competency_id)

        def _write() -> int:
            for params in result["items"]:
                stats = get_or_create_item_statistics(db, params["item_id"])
                stats.irt_discrimination = params["discrimination"]
                stats.irt_difficulty = params["difficulty"]
                stats.irt_guessing = GUESSING_PARAMETER
                stats.irt_se_discrimination = params["se_discrimination"]
                stats.irt_se_difficulty = params["se_difficulty"]
                stats.irt_calibrated_at = now
            return len(result["items"])

        written = run_with_optimistic_retry(
            db,
            "persist IRT parameters",
            _write,
            context={"competency_id": competency_id},
        )

    except (ConcurrentModificationError, CalibrationError):
        raise
    except Exception as e:
        logger.exception(f"Calibration failed for competency {competency_id}")
        raise CalibrationError(
            "Calibration failed",
            original_error=e,
            context={"competency_id": competency_id},
        ) from e

    difficulties = [params["difficulty"] for params in result["items"]]
    discriminations = [params["discrimination"] for params in result["items"]]
    logger.info(
        f"Calibration complete for competency {competency_id}: {written} items, "
        f"{result['iterations']} iterations, converged={result['converged']}. "
        f"Mean b={np.mean(difficulties):.2f}, Mean a={np.mean(discriminations):.2f}"
    )

    return result


def is_calibration_due(
    db: Session,
    catalog: ItemCatalog,
    competency_id: int,
    now: Optional[datetime] = None,
) -> bool:
    """
    Whether a competency's IRT parameters should be (re)estimated.

    Due when none of its items has ever been calibrated, or when the most
    recent calibration is older than IRT_RECALIBRATION_INTERVAL_DAYS. Items
    excluded as extreme never receive parameters, so only the latest
    calibration time of the competency is considered.
    """
    item_ids = catalog.item_ids_for_competency(competency_id)
    if not item_ids:
        return False

    last_calibrated = (
        db.query(func.max(ItemStatistics.irt_calibrated_at))
        .filter(ItemStatistics.item_id.in_(item_ids))
        .scalar()
    )
    return interval_elapsed(
        last_calibrated,
        timedelta(days=settings.IRT_RECALIBRATION_INTERVAL_DAYS),
        now,
    )


def estimate_ability(db: Session, item_scores: Mapping[int, float]) -> float:
    """
    Estimate a respondent's ability from stored item parameters.

    Items without IRT parameters are ignored.

    Args:
        db: Database session
        item_scores: Normalized score per item id

    Returns:
        Ability estimate in [MIN_THETA, MAX_THETA]; 0.0 when none of the
        items is calibrated.
    """
    if not item_scores:
        return 0.0

    calibrated = (
        db.query(ItemStatistics)
        .filter(
            ItemStatistics.item_id.in_(list(item_scores.keys())),
            ItemStatistics.irt_discrimination.isnot(None),
            ItemStatistics.irt_difficulty.isnot(None),
        )
        .all()
    )
    if not calibrated:
        return 0.0

    responses = [dichotomize(item_scores[stats.item_id]) for stats in calibrated]
    a = [stats.irt_discrimination for stats in calibrated]
    b = [stats.irt_difficulty for stats in calibrated]
    return estimate_theta(responses, a, b)


def validate_calibration(
    db: Session,
    item_ids: Optional[List[int]] = None,
) -> ValidationReport:
    """
    Compare IRT difficulty with logit-transformed CTT difficulty.

    A strong correlation and small RMSE indicate the IRT scale agrees with
    the observed proportion-correct values.

    Args:
        db: Database session
        item_ids: Items to validate. If None, every item with both IRT
            difficulty and a difficulty index is included.

    Returns:
        ValidationReport with correlation, RMSE, and interpretation.
    """
    query = db.query(ItemStatistics).filter(
        ItemStatistics.irt_difficulty.isnot(None),
        ItemStatistics.difficulty_index.isnot(None),
    )
    if item_ids is not None:
        query = query.filter(ItemStatistics.item_id.in_(item_ids))
    records = query.all()

    if len(records) < MIN_ITEMS_FOR_VALIDATION:
        return {
            "correlation_irt_empirical": 0.0,
            "rmse": 0.0,
            "n_items": len(records),
            "mean_se_difficulty": 0.0,
            "mean_se_discrimination": 0.0,
            "interpretation": FIT_INSUFFICIENT,
        }

    irt_difficulties = np.array([r.irt_difficulty for r in records], dtype=np.float64)
    logit_empirical = np.array(
        [_p_to_logit_difficulty(r.difficulty_index) for r in records],
        dtype=np.float64,
    )

    if np.std(irt_difficulties) == 0 or np.std(logit_empirical) == 0:
        correlation = 0.0
        logger.warning("Zero variance in difficulties; correlation set to 0")
    else:
        correlation = float(np.corrcoef(irt_difficulties, logit_empirical)[0, 1])

    rmse = float(np.sqrt(np.mean((irt_difficulties - logit_empirical) ** 2)))

    se_diffs = [r.irt_se_difficulty for r in records if r.irt_se_difficulty]
    se_discs = [r.irt_se_discrimination for r in records if r.irt_se_discrimination]

    if correlation > GOOD_FIT_CORRELATION and rmse < GOOD_FIT_RMSE:
        interpretation = FIT_GOOD
    elif correlation > MODERATE_FIT_CORRELATION:
        interpretation = FIT_MODERATE
    else:
        interpretation = FIT_POOR

    report: ValidationReport = {
        "correlation_irt_empirical": correlation,
        "rmse": rmse,
        "n_items": len(records),
        "mean_se_difficulty": float(np.mean(se_diffs)) if se_diffs else 0.0,
        "mean_se_discrimination": float(np.mean(se_discs)) if se_discs else 0.0,
        "interpretation": interpretation,
    }

    logger.info(
        f"Calibration validation: r={correlation:.3f}, RMSE={rmse:.3f}, "
        f"n={len(records)}, interpretation='{interpretation}'"
    )
    return report

