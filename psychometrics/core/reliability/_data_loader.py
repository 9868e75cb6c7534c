"""
Score matrix loading for reliability calculations.

Reliability works on raw normalized scores (not dichotomized), keyed by
respondent session and item. A matrix is streamed once from the response
source and reused for both alpha and alpha-if-deleted.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from psychometrics.core.data_sources import ResponseSource

logger = logging.getLogger(__name__)


@dataclass
class ScoreMatrix:
    """Sparse session x item score table.

    Attributes:
        session_scores: Score per item id for each session id.
        item_ids: Every item observed, in first-seen order.
    """

    session_scores: Dict[str, Dict[int, float]] = field(default_factory=dict)
    item_ids: List[int] = field(default_factory=list)

    @property
    def session_count(self) -> int:
        return len(self.session_scores)

    @property
    def item_count(self) -> int:
        return len(self.item_ids)


def load_score_matrix(
    source: ResponseSource, competency_ids: Iterable[int]
) -> ScoreMatrix:
    """
    Stream the scores of one or more competencies into a single matrix.

    Args:
        source: Response data source
        competency_ids: Competencies whose items form the scale

    Returns:
        ScoreMatrix aggregated across the competencies.
    """
    matrix = ScoreMatrix()
    seen_items: Dict[int, None] = {}

    for competency_id in competency_ids:
        for session_id, item_id, score in source.stream_competency_scores(
            competency_id
        ):
            matrix.session_scores.setdefault(session_id, {})[item_id] = score
            seen_items.setdefault(item_id, None)

    matrix.item_ids = list(seen_items)
    logger.debug(
        f"Loaded score matrix: {matrix.session_count} sessions x "
        f"{matrix.item_count} items"
    )
    return matrix
