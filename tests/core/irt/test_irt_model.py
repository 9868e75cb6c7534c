"""
Tests for the 2PL model functions.
"""
import math

import numpy as np
import pytest

from psychometrics.core.irt.model import (
    MAX_THETA,
    MIN_THETA,
    clamp,
    dichotomize,
    item_information,
    probability,
    probability_array,
)


class TestProbability:
    """Tests for probability()."""

    def test_half_at_item_difficulty(self):
        assert probability(0.7, 1.3, 0.7) == 0.5

    def test_increases_with_ability(self):
        low = probability(-1.0, 1.0, 0.0)
        high = probability(1.0, 1.0, 0.0)
        assert low < 0.5 < high

    def test_higher_discrimination_is_steeper(self):
        assert probability(1.0, 2.0, 0.0) > probability(1.0, 0.5, 0.0)

    def test_known_value(self):
        expected = 1.0 / (1.0 + math.exp(-1.2))
        assert probability(1.0, 1.2, 0.0) == pytest.approx(expected)

    @pytest.mark.parametrize(
        "theta,b,expected",
        [
            pytest.param(100.0, 0.0, 1.0, id="far_above"),
            pytest.param(-100.0, 0.0, 0.0, id="far_below"),
            pytest.param(0.0, -100.0, 1.0, id="very_easy_item"),
            pytest.param(0.0, 100.0, 0.0, id="very_hard_item"),
        ],
    )
    def test_extreme_inputs_saturate(self, theta, b, expected):
        assert probability(theta, 1.0, b) == expected

    def test_array_matches_scalar(self):
        thetas = np.array([-100.0, -1.0, 0.0, 0.5, 2.0, 100.0])
        result = probability_array(thetas, 1.4, 0.3)
        expected = [probability(t, 1.4, 0.3) for t in thetas]
        assert result == pytest.approx(expected)

    def test_array_broadcasts_item_parameters(self):
        result = probability_array(0.0, np.array([1.0, 2.0]), np.array([0.0, 0.0]))
        assert result.shape == (2,)
        assert result == pytest.approx([0.5, 0.5])


class TestItemInformation:
    """Tests for item_information()."""

    def test_peaks_at_difficulty(self):
        a = 1.5
        assert item_information(0.2, a, 0.2) == pytest.approx(a * a / 4)
        assert item_information(1.2, a, 0.2) < a * a / 4

    def test_zero_far_from_difficulty(self):
        assert item_information(100.0, 1.0, 0.0) == 0.0


class TestHelpers:
    """Tests for clamp() and dichotomize()."""

    def test_clamp(self):
        assert clamp(5.0, MIN_THETA, MAX_THETA) == MAX_THETA
        assert clamp(-5.0, MIN_THETA, MAX_THETA) == MIN_THETA
        assert clamp(1.5, MIN_THETA, MAX_THETA) == 1.5

    @pytest.mark.parametrize(
        "score,expected",
        [
            pytest.param(1.0, True, id="full_credit"),
            pytest.param(0.5, True, id="threshold"),
            pytest.param(0.49, False, id="below_threshold"),
            pytest.param(0.0, False, id="no_credit"),
        ],
    )
    def test_dichotomize(self, score, expected):
        assert dichotomize(score) is expected
