"""
Read-only access to raw responses and item metadata.

The engine never owns responses or the item catalog; it reads them through
two narrow interfaces so computations take explicit scope identifiers and
fetch only what they need:

- ResponseSource streams (session, item, score) data per item or per
  competency.
- ItemCatalog answers metadata lookups by id (competency membership, option
  identifiers, the Big Five trait mapping).

SqlResponseSource and SqlItemCatalog implement both over the platform's
tables. Streams use ``yield_per`` so a large competency is consumed in
batches rather than materialized as one list.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, List, NamedTuple, Optional, Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session

from psychometrics.models.models import (
    CHOICE_ITEM_TYPES,
    AssessmentItem,
    BigFiveTrait,
    Competency,
    ItemResponse,
)

logger = logging.getLogger(__name__)

# Rows fetched per round trip when streaming responses
STREAM_BATCH_SIZE = 1000


class ItemScore(NamedTuple):
    """One respondent's score on a single item."""

    session_id: str
    score: float
    selected_option: Optional[str]


class ScoreTriple(NamedTuple):
    """One (respondent, item, score) observation within a competency."""

    session_id: str
    item_id: int
    score: float


@dataclass(frozen=True)
class ItemMetadata:
    """Catalog facts needed to attribute statistics to an item."""

    item_id: int
    competency_id: int
    option_ids: List[str] = field(default_factory=list)
    correct_option: Optional[str] = None
    is_choice: bool = False
    question_text: Optional[str] = None
    competency_name: Optional[str] = None


class ResponseSource(Protocol):
    """Source of raw scored responses."""

    def stream_item_scores(self, item_id: int) -> Iterator[ItemScore]:
        """Stream every (session, score, selected option) for one item."""
        ...

    def stream_competency_scores(self, competency_id: int) -> Iterator[ScoreTriple]:
        """Stream every (session, item, score) triple for one competency."""
        ...

    def count_item_responses(
        self, item_id: int, since: Optional[datetime] = None
    ) -> int:
        """Count responses for an item, optionally only those after ``since``."""
        ...


class ItemCatalog(Protocol):
    """Lookup of item and competency metadata by identifier."""

    def get_item(self, item_id: int) -> Optional[ItemMetadata]:
        ...

    def item_ids(self) -> List[int]:
        ...

    def item_ids_for_competency(self, competency_id: int) -> List[int]:
        ...

    def competency_ids(self) -> List[int]:
        ...

    def competency_exists(self, competency_id: int) -> bool:
        ...

    def competencies_for_trait(self, trait: BigFiveTrait) -> List[int]:
        ...


class SqlResponseSource:
    """ResponseSource backed by the ``item_responses`` table."""

    def __init__(self, db: Session, batch_size: int = STREAM_BATCH_SIZE):
        self.db = db
        self.batch_size = batch_size

    def stream_item_scores(self, item_id: int) -> Iterator[ItemScore]:
        query = (
            self.db.query(
                ItemResponse.session_id,
                ItemResponse.score,
                ItemResponse.selected_option,
            )
            .filter(ItemResponse.item_id == item_id)
            .order_by(ItemResponse.id)
            .yield_per(self.batch_size)
        )
        for session_id, score, selected_option in query:
            yield ItemScore(session_id, float(score), selected_option)

    def stream_competency_scores(self, competency_id: int) -> Iterator[ScoreTriple]:
        query = (
            self.db.query(
                ItemResponse.session_id,
                ItemResponse.item_id,
                ItemResponse.score,
            )
            .join(AssessmentItem, ItemResponse.item_id == AssessmentItem.id)
            .filter(AssessmentItem.competency_id == competency_id)
            .order_by(ItemResponse.session_id, ItemResponse.id)
            .yield_per(self.batch_size)
        )
        for session_id, item_id, score in query:
            yield ScoreTriple(session_id, item_id, float(score))

    def count_item_responses(
        self, item_id: int, since: Optional[datetime] = None
    ) -> int:
        query = self.db.query(func.count(ItemResponse.id)).filter(
            ItemResponse.item_id == item_id
        )
        if since is not None:
            query = query.filter(ItemResponse.answered_at > since)
        return query.scalar() or 0


class SqlItemCatalog:
    """ItemCatalog backed by the ``assessment_items`` and ``competencies`` tables."""

    def __init__(self, db: Session):
        self.db = db

    def get_item(self, item_id: int) -> Optional[ItemMetadata]:
        row = (
            self.db.query(AssessmentItem, Competency.name)
            .join(Competency, AssessmentItem.competency_id == Competency.id)
            .filter(AssessmentItem.id == item_id)
            .first()
        )
        if row is None:
            return None
        item, competency_name = row
        return ItemMetadata(
            item_id=item.id,
            competency_id=item.competency_id,
            option_ids=[str(option) for option in (item.answer_options or [])],
            correct_option=item.correct_option,
            is_choice=item.item_type in CHOICE_ITEM_TYPES,
            question_text=item.question_text,
            competency_name=competency_name,
        )

    def item_ids(self) -> List[int]:
        rows = self.db.query(AssessmentItem.id).order_by(AssessmentItem.id).all()
        return [item_id for (item_id,) in rows]

    def item_ids_for_competency(self, competency_id: int) -> List[int]:
        rows = (
            self.db.query(AssessmentItem.id)
            .filter(AssessmentItem.competency_id == competency_id)
            .order_by(AssessmentItem.id)
            .all()
        )
        return [item_id for (item_id,) in rows]

    def competency_ids(self) -> List[int]:
        rows = self.db.query(Competency.id).order_by(Competency.id).all()
        return [competency_id for (competency_id,) in rows]

    def competency_exists(self, competency_id: int) -> bool:
        return (
            self.db.query(Competency.id).filter(Competency.id == competency_id).first()
            is not None
        )

    def competencies_for_trait(self, trait: BigFiveTrait) -> List[int]:
        rows = (
            self.db.query(Competency.id)
            .filter(Competency.big_five_trait == trait)
            .order_by(Competency.id)
            .all()
        )
        return [competency_id for (competency_id,) in rows]
