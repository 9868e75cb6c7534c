"""
Tests for build_response_matrix().

Test Cases:
- Scores are dichotomized at 0.5
- Items with extreme p-values are excluded
- Respondents missing a retained item are excluded
- p-values are recomputed over the retained respondents
- No responses or only extreme items yields an empty matrix
"""
import numpy as np
import pytest

from psychometrics.core.irt.response_matrix import build_response_matrix


def _triples(item_id, scores, first_session=0):
    return [
        (f"session-{first_session + index}", item_id, score)
        for index, score in enumerate(scores)
    ]


class TestBuildResponseMatrix:
    """Tests for build_response_matrix()."""

    def test_basic_matrix(self, memory_source):
        triples = _triples(1, [1.0, 0.0, 1.0, 0.0]) + _triples(2, [1.0, 1.0, 0.0, 0.0])
        matrix = build_response_matrix(memory_source(triples), 1)

        assert matrix.item_ids == [1, 2]
        assert matrix.session_ids == [f"session-{i}" for i in range(4)]
        assert matrix.responses.dtype == np.bool_
        assert matrix.responses.shape == (4, 2)
        assert matrix.item_p_values == pytest.approx([0.5, 0.5])
        assert matrix.excluded_item_ids == []
        assert matrix.excluded_respondent_count == 0
        assert not matrix.is_empty

    def test_partial_credit_is_dichotomized(self, memory_source):
        triples = _triples(1, [0.5, 0.49, 0.75, 0.25])
        matrix = build_response_matrix(memory_source(triples), 1)
        assert matrix.responses[:, 0].tolist() == [True, False, True, False]

    def test_extreme_items_are_excluded(self, memory_source):
        # Item 2 is answered correctly by everyone (p = 1.0)
        triples = _triples(1, [1.0, 0.0] * 10) + _triples(2, [1.0] * 20)
        matrix = build_response_matrix(memory_source(triples), 1)

        assert matrix.item_ids == [1]
        assert matrix.excluded_item_ids == [2]

    def test_p_value_boundaries_are_retained(self, memory_source):
        # p = 0.05 and p = 0.95 are inside the allowed range
        low = [1.0] + [0.0] * 19
        high = [0.0] + [1.0] * 19
        triples = _triples(1, low) + _triples(2, high)
        matrix = build_response_matrix(memory_source(triples), 1)
        assert matrix.item_ids == [1, 2]

    def test_incomplete_respondents_are_excluded(self, memory_source):
        triples = _triples(1, [1.0, 0.0, 1.0, 0.0]) + _triples(2, [1.0, 0.0, 0.0])
        matrix = build_response_matrix(memory_source(triples), 1)

        assert matrix.respondent_count == 3
        assert "session-3" not in matrix.session_ids
        assert matrix.excluded_respondent_count == 1

    def test_p_values_recomputed_on_retained_rows(self, memory_source):
        # Over all four respondents item 1 has p = 0.5; the incomplete
        # respondent answered it wrong, so the retained rows give p = 2/3.
        triples = _triples(1, [1.0, 0.0, 1.0, 0.0]) + _triples(2, [1.0, 0.0, 0.0])
        matrix = build_response_matrix(memory_source(triples), 1)
        assert matrix.item_p_values[0] == pytest.approx(2 / 3)

    def test_extremity_judged_on_answering_respondents(self, memory_source):
        # Item 2 is only answered by two of four respondents (p = 0.5 among
        # them); it is retained, and the other respondents drop out instead.
        triples = _triples(1, [1.0, 0.0, 1.0, 0.0]) + _triples(2, [1.0, 0.0])
        matrix = build_response_matrix(memory_source(triples), 1)

        assert matrix.item_ids == [1, 2]
        assert matrix.respondent_count == 2

    def test_no_responses_yields_empty_matrix(self, memory_source):
        matrix = build_response_matrix(memory_source([]), 1)
        assert matrix.is_empty
        assert matrix.item_count == 0
        assert matrix.respondent_count == 0

    def test_all_items_extreme_yields_empty_matrix(self, memory_source):
        triples = _triples(1, [1.0] * 10) + _triples(2, [0.0] * 10)
        matrix = build_response_matrix(memory_source(triples), 1)

        assert matrix.is_empty
        assert sorted(matrix.excluded_item_ids) == [1, 2]

    def test_only_competency_items_are_used(self, memory_source):
        triples = _triples(1, [1.0, 0.0]) + _triples(2, [1.0, 0.0])
        source = memory_source(triples, competency_items={1: [1], 2: [2]})
        matrix = build_response_matrix(source, 2)
        assert matrix.item_ids == [2]
