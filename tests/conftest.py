"""
Pytest configuration and shared fixtures for testing.
"""
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from psychometrics.core.data_sources import (
    ItemScore,
    ScoreTriple,
    SqlItemCatalog,
    SqlResponseSource,
)
from psychometrics.models import Base
from psychometrics.models.models import (
    AssessmentItem,
    BigFiveTrait,
    Competency,
    ItemResponse,
    ItemType,
)

# Use SQLite for tests; path is relative to this file so the .db lands inside
# tests/ regardless of the working directory.
_TEST_DB = Path(__file__).parent / "test.db"
SQLALCHEMY_DATABASE_URL = f"sqlite:///{_TEST_DB}"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Fixed "now" for tests that compare stored timestamps
FIXED_NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def db_session():
    """
    Create a fresh database session for each test.
    """
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def source(db_session):
    """ResponseSource over the test database."""
    return SqlResponseSource(db_session)


@pytest.fixture
def catalog(db_session):
    """ItemCatalog over the test database."""
    return SqlItemCatalog(db_session)


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing."""
    return MagicMock(spec=logging.Logger)


@pytest.fixture
def now():
    return FIXED_NOW


class PoolSeeder:
    """Writes competencies, items and responses into the test database.

    Session ids are ``session-{index}`` so responses to different items of
    the same competency line up by respondent.
    """

    def __init__(self, db):
        self.db = db

    def competency(
        self, name: str = "Numerical Reasoning", trait: Optional[BigFiveTrait] = None
    ) -> Competency:
        competency = Competency(name=name, big_five_trait=trait)
        self.db.add(competency)
        self.db.commit()
        self.db.refresh(competency)
        return competency

    def item(
        self,
        competency: Competency,
        item_type: ItemType = ItemType.MULTIPLE_CHOICE,
        options: Optional[List[str]] = None,
        correct_option: Optional[str] = "A",
        question_text: str = "Which option completes the sequence?",
    ) -> AssessmentItem:
        if options is None and item_type == ItemType.MULTIPLE_CHOICE:
            options = ["A", "B", "C", "D"]
        item = AssessmentItem(
            competency_id=competency.id,
            question_text=question_text,
            item_type=item_type,
            answer_options=options,
            correct_option=correct_option,
        )
        self.db.add(item)
        self.db.commit()
        self.db.refresh(item)
        return item

    def responses(
        self,
        item: AssessmentItem,
        scores: Sequence[float],
        selected: Optional[Sequence[Optional[str]]] = None,
        answered_at: Optional[datetime] = None,
        first_session: int = 0,
    ) -> None:
        for offset, score in enumerate(scores):
            response = ItemResponse(
                session_id=f"session-{first_session + offset}",
                item_id=item.id,
                score=score,
                selected_option=selected[offset] if selected is not None else None,
            )
            if answered_at is not None:
                response.answered_at = answered_at
            self.db.add(response)
        self.db.commit()


@pytest.fixture
def seed(db_session):
    """Helper for seeding the item pool."""
    return PoolSeeder(db_session)


class InMemoryResponseSource:
    """ResponseSource over a list of (session, item, score) tuples."""

    def __init__(
        self,
        triples: Iterable[Tuple[str, int, float]],
        competency_items: Optional[Dict[int, List[int]]] = None,
    ):
        self.triples = [ScoreTriple(*triple) for triple in triples]
        all_items = sorted({triple.item_id for triple in self.triples})
        self.competency_items = competency_items or {1: all_items}

    def stream_item_scores(self, item_id: int) -> Iterator[ItemScore]:
        for session_id, other_item_id, score in self.triples:
            if other_item_id == item_id:
                yield ItemScore(session_id, score, None)

    def stream_competency_scores(self, competency_id: int) -> Iterator[ScoreTriple]:
        item_ids = set(self.competency_items.get(competency_id, []))
        for triple in self.triples:
            if triple.item_id in item_ids:
                yield triple

    def count_item_responses(self, item_id: int, since=None) -> int:
        return sum(1 for triple in self.triples if triple.item_id == item_id)


@pytest.fixture
def memory_source():
    """Factory for in-memory response sources."""
    return InMemoryResponseSource
