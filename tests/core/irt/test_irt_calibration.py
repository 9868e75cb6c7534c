"""
Tests for EM calibration and its persistence.

Test Cases:
- run_em_calibration on simulated 2PL data: parameter recovery, bounds,
  ordering, convergence bookkeeping
- Insufficient data (empty matrix, respondent gate) is a result, not an error
- calibrate_competency persists a, b, c = 0, SEs and the calibration time
- is_calibration_due follows the recalibration interval
- estimate_ability uses stored parameters only
- validate_calibration compares IRT b with logit CTT difficulty
"""
import math
from datetime import timedelta
from statistics import NormalDist

import numpy as np
import pytest

from psychometrics.core.errors import NotFoundError
from psychometrics.core.irt.calibration import (
    FIT_GOOD,
    FIT_INSUFFICIENT,
    calibrate_competency,
    estimate_ability,
    is_calibration_due,
    run_em_calibration,
    validate_calibration,
)
from psychometrics.core.irt.model import (
    MAX_DIFFICULTY,
    MAX_DISCRIMINATION,
    MIN_DIFFICULTY,
    MIN_DISCRIMINATION,
    probability_array,
)
from psychometrics.core.irt.response_matrix import ResponseMatrix
from psychometrics.core.item_statistics import (
    get_item_statistics,
    get_or_create_item_statistics,
)

TRUE_DIFFICULTIES = [-1.5, -0.5, 0.5, 1.5]
TRUE_DISCRIMINATION = 1.2


def _simulate(n_respondents, difficulties=TRUE_DIFFICULTIES, seed=42):
    """Simulated dichotomous 2PL responses (respondents x items)."""
    rng = np.random.default_rng(seed)
    thetas = rng.normal(0.0, 1.0, size=n_respondents)
    p = probability_array(
        thetas[:, None], TRUE_DISCRIMINATION, np.asarray(difficulties)[None, :]
    )
    return rng.random(p.shape) < p


def _matrix(responses):
    return ResponseMatrix(
        item_ids=list(range(1, responses.shape[1] + 1)),
        session_ids=[f"session-{i}" for i in range(responses.shape[0])],
        responses=responses,
        item_p_values=responses.mean(axis=0).astype(np.float64),
    )


def _seed_simulated_pool(seed, n_respondents=120):
    competency = seed.competency()
    responses = _simulate(n_respondents)
    items = []
    for column in range(responses.shape[1]):
        item = seed.item(competency)
        seed.responses(item, [1.0 if x else 0.0 for x in responses[:, column]])
        items.append(item)
    return competency, items


@pytest.fixture(scope="module")
def simulated_result():
    """EM calibration result for 300 simulated respondents, shared across tests."""
    return run_em_calibration(_matrix(_simulate(300)), competency_id=7)


class TestRunEmCalibration:
    """Tests for run_em_calibration()."""

    def test_parameters_within_bounds(self, simulated_result):
        result = simulated_result

        assert result["competency_id"] == 7
        assert not result["insufficient_data"]
        assert result["item_count"] == 4
        assert result["respondent_count"] == 300
        for item in result["items"]:
            assert MIN_DISCRIMINATION <= item["discrimination"] <= MAX_DISCRIMINATION
            assert MIN_DIFFICULTY <= item["difficulty"] <= MAX_DIFFICULTY

    def test_difficulty_ordering_recovered(self, simulated_result):
        result = simulated_result
        difficulties = [item["difficulty"] for item in result["items"]]
        assert difficulties == sorted(difficulties)

    def test_iteration_bookkeeping(self, simulated_result):
        result = simulated_result

        assert 1 <= result["iterations"] <= 100
        if result["converged"]:
            assert result["max_parameter_change"] < 0.01
        else:
            assert result["iterations"] == 100

    def test_standard_errors_finite_or_none(self, simulated_result):
        result = simulated_result
        for item in result["items"]:
            for key in ("se_discrimination", "se_difficulty"):
                value = item[key]
                assert value is None or (math.isfinite(value) and value > 0)

    def test_empty_matrix_is_insufficient(self):
        empty = ResponseMatrix(
            item_ids=[],
            session_ids=[],
            responses=np.zeros((0, 0), dtype=bool),
            item_p_values=np.zeros(0),
            excluded_item_ids=[3],
        )
        result = run_em_calibration(empty)

        assert result["insufficient_data"]
        assert result["items"] == []
        assert result["excluded_item_ids"] == [3]

    def test_single_item_recovered_from_sixty_respondents(self):
        # Abilities at normal quantiles in +/- pairs; exactly one answer of
        # each pair is correct, drawn against the true a = 1.2, b = 0 curve
        half = 30
        uniform_draws = [((k + 1) * 0.6180339887) % 1.0 for k in range(half)]
        rows = []
        for k, draw in enumerate(uniform_draws):
            theta = NormalDist().inv_cdf((half + k + 0.5) / (2 * half))
            p = float(probability_array(theta, TRUE_DISCRIMINATION, 0.0))
            rows.append([p > draw])
            rows.append([p < draw])
        responses = np.array(rows, dtype=bool)

        result = run_em_calibration(_matrix(responses))

        item = result["items"][0]
        assert result["respondent_count"] == 60
        assert abs(item["difficulty"] - 0.0) < 0.4
        assert abs(item["discrimination"] - TRUE_DISCRIMINATION) < 0.6

    @pytest.mark.parametrize(
        "difficulties,n_respondents",
        [
            pytest.param([-1.0, -0.3, 0.3, 1.0], 300, id="4_items"),
            pytest.param(list(np.linspace(-1.0, 1.0, 10)), 500, id="10_items"),
        ],
    )
    def test_parameters_recovered(self, difficulties, n_respondents):
        responses = _simulate(n_respondents, difficulties=difficulties, seed=7)

        result = run_em_calibration(_matrix(responses))

        assert result["converged"]
        for item, true_b in zip(result["items"], difficulties):
            assert abs(item["difficulty"] - true_b) < 0.4
            assert abs(item["discrimination"] - TRUE_DISCRIMINATION) < 0.6
            assert item["discrimination"] < MAX_DISCRIMINATION


class TestCalibrateCompetency:
    """Tests for calibrate_competency()."""

    def test_persists_parameters(self, db_session, source, catalog, seed, now):
        competency, items = _seed_simulated_pool(seed)

        result = calibrate_competency(db_session, source, catalog, competency.id, now)

        assert not result["insufficient_data"]
        assert len(result["items"]) == len(items)
        for item in items:
            stats = get_item_statistics(db_session, item.id)
            assert stats is not None
            assert stats.irt_discrimination is not None
            assert stats.irt_difficulty is not None
            assert stats.irt_guessing == 0.0
            assert stats.irt_calibrated_at is not None

    def test_below_respondent_gate_is_insufficient(
        self, db_session, source, catalog, seed, now
    ):
        competency, items = _seed_simulated_pool(seed, n_respondents=30)

        result = calibrate_competency(db_session, source, catalog, competency.id, now)

        assert result["insufficient_data"]
        assert result["respondent_count"] == 30
        assert get_item_statistics(db_session, items[0].id) is None

    def test_all_correct_item_is_insufficient(self, db_session, source, catalog, seed, now):
        competency = seed.competency()
        item = seed.item(competency)
        seed.responses(item, [1.0] * 60)

        result = calibrate_competency(db_session, source, catalog, competency.id, now)

        assert result["insufficient_data"]
        assert result["excluded_item_ids"] == [item.id]

    def test_unknown_competency_raises(self, db_session, source, catalog):
        with pytest.raises(NotFoundError, match="Competency not found"):
            calibrate_competency(db_session, source, catalog, 999)


class TestIsCalibrationDue:
    """Tests for is_calibration_due()."""

    def test_never_calibrated_is_due(self, db_session, catalog, seed, now):
        competency = seed.competency()
        seed.item(competency)
        assert is_calibration_due(db_session, catalog, competency.id, now)

    def test_competency_without_items_is_not_due(self, db_session, catalog, seed, now):
        competency = seed.competency()
        assert not is_calibration_due(db_session, catalog, competency.id, now)

    @pytest.mark.parametrize(
        "age_days,expected",
        [
            pytest.param(1, False, id="recent"),
            pytest.param(7, True, id="at_interval"),
            pytest.param(30, True, id="stale"),
        ],
    )
    def test_interval(self, db_session, catalog, seed, now, age_days, expected):
        competency = seed.competency()
        item = seed.item(competency)
        stats = get_or_create_item_statistics(db_session, item.id)
        stats.irt_calibrated_at = now - timedelta(days=age_days)
        db_session.commit()

        assert is_calibration_due(db_session, catalog, competency.id, now) is expected


class TestEstimateAbility:
    """Tests for estimate_ability()."""

    def _calibrated_items(self, db_session, seed):
        competency = seed.competency()
        item_ids = []
        for b in (-1.0, 0.0, 1.0):
            item = seed.item(competency)
            stats = get_or_create_item_statistics(db_session, item.id)
            stats.irt_discrimination = 1.0
            stats.irt_difficulty = b
            item_ids.append(item.id)
        db_session.commit()
        return item_ids

    def test_more_correct_gives_higher_ability(self, db_session, seed):
        ids = self._calibrated_items(db_session, seed)
        low = estimate_ability(db_session, {ids[0]: 1.0, ids[1]: 0.0, ids[2]: 0.0})
        high = estimate_ability(db_session, {ids[0]: 1.0, ids[1]: 1.0, ids[2]: 0.0})
        assert low < high

    def test_uncalibrated_items_ignored(self, db_session, seed):
        ids = self._calibrated_items(db_session, seed)
        assert estimate_ability(db_session, {ids[0]: 1.0, 999: 0.0}) == estimate_ability(
            db_session, {ids[0]: 1.0}
        )

    def test_no_calibrated_items_returns_zero(self, db_session):
        assert estimate_ability(db_session, {}) == 0.0
        assert estimate_ability(db_session, {42: 1.0}) == 0.0


class TestValidateCalibration:
    """Tests for validate_calibration()."""

    def test_insufficient_items(self, db_session):
        report = validate_calibration(db_session)
        assert report["n_items"] == 0
        assert report["interpretation"] == FIT_INSUFFICIENT

    def test_consistent_parameters_fit_well(self, db_session, seed):
        competency = seed.competency()
        for p_value in (0.2, 0.35, 0.5, 0.65, 0.8):
            item = seed.item(competency)
            stats = get_or_create_item_statistics(db_session, item.id)
            stats.difficulty_index = p_value
            # IRT difficulty equal to the logit transform of the p-value
            stats.irt_difficulty = -math.log(p_value / (1 - p_value))
            stats.irt_se_difficulty = 0.2
        db_session.commit()

        report = validate_calibration(db_session)

        assert report["n_items"] == 5
        assert report["correlation_irt_empirical"] == pytest.approx(1.0)
        assert report["rmse"] == pytest.approx(0.0, abs=1e-9)
        assert report["mean_se_difficulty"] == pytest.approx(0.2)
        assert report["interpretation"] == FIT_GOOD
