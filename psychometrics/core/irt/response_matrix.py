"""
Response matrix construction for IRT calibration.

Builds a dense respondent x item boolean matrix for one competency from the
streamed (session, item, score) triples:

1. Scores are dichotomized at 0.5 and grouped by session.
2. Each item's proportion correct is computed over the sessions that
   answered it; items with p < 0.05 or p > 0.95 cannot be calibrated
   reliably and are excluded as extreme.
3. Sessions missing any retained item are excluded, so every remaining row
   covers every remaining column.
4. Item p-values are recomputed over the retained rows.

An empty result (no respondents, or every item extreme) is insufficient
data for the caller, never an error.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np
from numpy.typing import NDArray

from psychometrics.core.data_sources import ResponseSource

from .model import dichotomize

logger = logging.getLogger(__name__)

# Items outside [MIN_P_VALUE, MAX_P_VALUE] are excluded as extreme
MIN_P_VALUE = 0.05
MAX_P_VALUE = 0.95


@dataclass
class ResponseMatrix:
    """Dense dichotomous response matrix owned by a single calibration run.

    Attributes:
        item_ids: Item id per column.
        session_ids: Respondent session id per row.
        responses: Boolean matrix of shape (n_respondents, n_items).
        item_p_values: Proportion correct per column over the retained rows.
        excluded_item_ids: Items dropped as extreme.
        excluded_respondent_count: Sessions dropped for missing a retained item.
    """

    item_ids: List[int]
    session_ids: List[str]
    responses: NDArray[np.bool_]
    item_p_values: NDArray[np.float64]
    excluded_item_ids: List[int] = field(default_factory=list)
    excluded_respondent_count: int = 0

    @property
    def item_count(self) -> int:
        """Number of items (columns) in the matrix."""
        return len(self.item_ids)

    @property
    def respondent_count(self) -> int:
        """Number of respondents (rows) in the matrix."""
        return len(self.session_ids)

    @property
    def is_empty(self) -> bool:
        """True when there is nothing to calibrate."""
        return self.item_count == 0 or self.respondent_count == 0


def _empty_matrix(
    excluded_item_ids: List[int], excluded_respondent_count: int = 0
) -> ResponseMatrix:
    return ResponseMatrix(
        item_ids=[],
        session_ids=[],
        responses=np.zeros((0, 0), dtype=bool),
        item_p_values=np.zeros(0, dtype=np.float64),
        excluded_item_ids=excluded_item_ids,
        excluded_respondent_count=excluded_respondent_count,
    )


def build_response_matrix(source: ResponseSource, competency_id: int) -> ResponseMatrix:
    """
    Build the filtered response matrix for one competency.

    Args:
        source: Response data source.
        competency_id: Competency whose items form the columns.

    Returns:
        ResponseMatrix; ``is_empty`` is True when nothing can be calibrated.
    """
    session_responses: Dict[str, Dict[int, bool]] = {}
    item_order: Dict[int, None] = {}

    for session_id, item_id, score in source.stream_competency_scores(competency_id):
        session_responses.setdefault(session_id, {})[item_id] = dichotomize(score)
        item_order.setdefault(item_id, None)

    if not session_responses:
        logger.info(f"No responses found for competency {competency_id}")
        return _empty_matrix([])

    retained_items: List[int] = []
    excluded_items: List[int] = []
    for item_id in item_order:
        answers = [
            responses[item_id]
            for responses in session_responses.values()
            if item_id in responses
        ]
        p_value = sum(answers) / len(answers)
        if MIN_P_VALUE <= p_value <= MAX_P_VALUE:
            retained_items.append(item_id)
        else:
            excluded_items.append(item_id)
            logger.debug(
                f"Excluding item {item_id} with extreme p-value {p_value:.3f}"
            )

    if not retained_items:
        logger.info(
            f"All {len(excluded_items)} items in competency {competency_id} "
            "are extreme; nothing to calibrate"
        )
        return _empty_matrix(excluded_items)

    complete_sessions = [
        session_id
        for session_id, responses in session_responses.items()
        if all(item_id in responses for item_id in retained_items)
    ]
    excluded_respondents = len(session_responses) - len(complete_sessions)

    if not complete_sessions:
        logger.info(
            f"No respondent in competency {competency_id} answered all "
            f"{len(retained_items)} retained items"
        )
        return _empty_matrix(excluded_items, excluded_respondents)

    matrix = np.array(
        [
            [session_responses[session_id][item_id] for item_id in retained_items]
            for session_id in complete_sessions
        ],
        dtype=bool,
    )

    logger.info(
        f"Built response matrix for competency {competency_id}: "
        f"{len(complete_sessions)} respondents x {len(retained_items)} items "
        f"({len(excluded_items)} extreme items, {excluded_respondents} "
        "incomplete respondents excluded)"
    )

    return ResponseMatrix(
        item_ids=retained_items,
        session_ids=complete_sessions,
        responses=matrix,
        item_p_values=matrix.mean(axis=0).astype(np.float64),
        excluded_item_ids=excluded_items,
        excluded_respondent_count=excluded_respondents,
    )
