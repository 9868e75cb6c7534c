"""
Database models for the psychometric engine.

Two groups of tables live here:

- Catalog and response tables (Competency, AssessmentItem, ItemResponse) are
  owned by the assessment platform. The engine only reads them, through
  psychometrics.core.data_sources.
- Statistics tables (ItemStatistics, ItemStatusChange, CompetencyReliability,
  BigFiveReliability, AuditRun) are written by the engine.

Metric columns are stored as Float rounded to 4 decimal places. NULL always
means "insufficient data", never zero.
"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    Text,
    Enum,
    Float,
    JSON,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import enum

from .base import Base


class BigFiveTrait(str, enum.Enum):
    """Big Five personality traits used for trait-level reliability."""

    OPENNESS = "openness"
    CONSCIENTIOUSNESS = "conscientiousness"
    EXTRAVERSION = "extraversion"
    AGREEABLENESS = "agreeableness"
    EMOTIONAL_STABILITY = "emotional_stability"


class ItemType(str, enum.Enum):
    """Assessment item type enumeration."""

    MULTIPLE_CHOICE = "multiple_choice"
    SITUATIONAL_JUDGMENT = "situational_judgment"
    LIKERT = "likert"
    OPEN_TEXT = "open_text"


# Item types whose options can be analyzed as distractors
CHOICE_ITEM_TYPES = frozenset({ItemType.MULTIPLE_CHOICE, ItemType.SITUATIONAL_JUDGMENT})


class ItemValidityStatus(str, enum.Enum):
    """Lifecycle status of an item, driven by its psychometric metrics."""

    PROBATION = "probation"
    ACTIVE = "active"
    FLAGGED_FOR_REVIEW = "flagged_for_review"
    RETIRED = "retired"


class DifficultyFlag(str, enum.Enum):
    """Classical difficulty flag derived from the p-value."""

    NONE = "none"
    TOO_HARD = "too_hard"
    TOO_EASY = "too_easy"


class DiscriminationFlag(str, enum.Enum):
    """Classical discrimination flag derived from the point-biserial."""

    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"
    NEGATIVE = "negative"


class ReliabilityStatus(str, enum.Enum):
    """Internal-consistency status derived from Cronbach's alpha."""

    RELIABLE = "reliable"
    ACCEPTABLE = "acceptable"
    UNRELIABLE = "unreliable"
    INSUFFICIENT_DATA = "insufficient_data"


class StatusChangeSource(str, enum.Enum):
    """Who caused a validity status change."""

    AUTOMATIC = "automatic"
    MANUAL = "manual"


class AuditTrigger(str, enum.Enum):
    """How an audit run was started."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"


class AuditRunStatus(str, enum.Enum):
    """Status enumeration for audit runs."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# CATALOG AND RESPONSE TABLES (read-only to the engine)
# =============================================================================


class Competency(Base):
    """Competency (scale) grouping assessment items."""

    __tablename__ = "competencies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    # Big Five mapping used only to scope trait-level reliability
    big_five_trait = Column(Enum(BigFiveTrait), nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    items = relationship("AssessmentItem", back_populates="competency")


class AssessmentItem(Base):
    """Assessment item (question) belonging to one competency."""

    __tablename__ = "assessment_items"

    id = Column(Integer, primary_key=True, index=True)
    competency_id = Column(
        Integer,
        ForeignKey("competencies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    question_text = Column(Text, nullable=False)
    item_type = Column(Enum(ItemType), nullable=False)
    answer_options = Column(JSON)  # List of option ids for choice items, null otherwise
    correct_option = Column(String(100))  # Option id of the keyed answer
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )

    competency = relationship("Competency", back_populates="items")
    responses = relationship("ItemResponse", back_populates="item")
    statistics = relationship(
        "ItemStatistics", back_populates="item", uselist=False
    )


class ItemResponse(Base):
    """One respondent session's scored answer to one item."""

    __tablename__ = "item_responses"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(64), nullable=False, index=True)
    item_id = Column(
        Integer,
        ForeignKey("assessment_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    score = Column(Float, nullable=False)  # Normalized to [0, 1]
    selected_option = Column(String(100))  # Option id for choice items
    answered_at = Column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )

    item = relationship("AssessmentItem", back_populates="responses")

    __table_args__ = (
        CheckConstraint(
            "score >= 0.0 AND score <= 1.0", name="ck_item_responses_score_range"
        ),
        Index("ix_item_responses_item_answered", "item_id", "answered_at"),
    )


# =============================================================================
# STATISTICS TABLES (written by the engine)
# =============================================================================


class ItemStatistics(Base):
    """
    Psychometric statistics and validity status for one item.

    Created in PROBATION with every metric NULL when the audit job first sees
    the item; never deleted (RETIRED records stay for history). Writes go
    through run_with_optimistic_retry: ``version_id`` is SQLAlchemy's
    optimistic-lock counter, so a concurrent update raises StaleDataError
    instead of being silently overwritten.
    """

    __tablename__ = "item_statistics"

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(
        Integer,
        ForeignKey("assessment_items.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )

    # Classical Test Theory metrics (NULL until response_count >= 50)
    difficulty_index = Column(Float, nullable=True)  # Mean normalized score, 0-1
    discrimination_index = Column(Float, nullable=True)  # Point-biserial, -1 to 1
    # Snapshot taken immediately before each recalculation, for trend detection
    previous_discrimination_index = Column(Float, nullable=True)
    # {"option_id": selection_rate} for non-correct options of choice items
    distractor_efficiency = Column(JSON, nullable=True)
    response_count = Column(Integer, default=0, nullable=False)

    validity_status = Column(
        Enum(ItemValidityStatus),
        default=ItemValidityStatus.PROBATION,
        nullable=False,
        index=True,
    )
    difficulty_flag = Column(
        Enum(DifficultyFlag), default=DifficultyFlag.NONE, nullable=False
    )
    discrimination_flag = Column(
        Enum(DiscriminationFlag), default=DiscriminationFlag.NONE, nullable=False
    )

    # 2PL IRT parameters
    irt_discrimination = Column(Float, nullable=True)  # a
    irt_difficulty = Column(Float, nullable=True)  # b
    irt_guessing = Column(Float, nullable=True)  # c, reserved; never estimated
    irt_se_discrimination = Column(Float, nullable=True)
    irt_se_difficulty = Column(Float, nullable=True)
    irt_calibrated_at = Column(DateTime(timezone=True), nullable=True)

    last_calculated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=_utc_now,
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=_utc_now,
        onupdate=_utc_now,
        nullable=False,
    )

    version_id = Column(Integer, nullable=False)

    item = relationship("AssessmentItem", back_populates="statistics")
    status_changes = relationship(
        "ItemStatusChange",
        back_populates="item_statistics",
        order_by="ItemStatusChange.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        CheckConstraint(
            "response_count >= 0", name="ck_item_statistics_response_count"
        ),
        Index(
            "ix_item_statistics_status_calculated",
            "validity_status",
            "last_calculated_at",
        ),
    )


class ItemStatusChange(Base):
    """
    Append-only audit log of validity status transitions.

    Rows are inserted in the same transaction as the status change on
    ItemStatistics and are never updated or deleted by the engine.
    """

    __tablename__ = "item_status_changes"

    id = Column(Integer, primary_key=True, index=True)
    item_statistics_id = Column(
        Integer,
        ForeignKey("item_statistics.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    item_id = Column(Integer, nullable=False, index=True)
    from_status = Column(Enum(ItemValidityStatus), nullable=False)
    to_status = Column(Enum(ItemValidityStatus), nullable=False)
    changed_at = Column(DateTime(timezone=True), nullable=False)
    reason = Column(Text, nullable=False)
    change_source = Column(Enum(StatusChangeSource), nullable=False)

    item_statistics = relationship("ItemStatistics", back_populates="status_changes")


class CompetencyReliability(Base):
    """Cronbach's alpha snapshot for one competency."""

    __tablename__ = "competency_reliability"

    id = Column(Integer, primary_key=True, index=True)
    competency_id = Column(
        Integer,
        ForeignKey("competencies.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    cronbach_alpha = Column(Float, nullable=True)
    sample_size = Column(Integer, default=0, nullable=False)
    item_count = Column(Integer, default=0, nullable=False)
    reliability_status = Column(
        Enum(ReliabilityStatus),
        default=ReliabilityStatus.INSUFFICIENT_DATA,
        nullable=False,
        index=True,
    )
    # {"item_id": alpha_without_item}; JSON object keys are strings
    alpha_if_deleted = Column(JSON, nullable=True)
    last_calculated_at = Column(DateTime(timezone=True), nullable=True)

    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}


class BigFiveReliability(Base):
    """Cronbach's alpha snapshot aggregated across a Big Five trait's competencies."""

    __tablename__ = "big_five_reliability"

    id = Column(Integer, primary_key=True, index=True)
    trait = Column(Enum(BigFiveTrait), nullable=False, unique=True)
    cronbach_alpha = Column(Float, nullable=True)
    sample_size = Column(Integer, default=0, nullable=False)
    item_count = Column(Integer, default=0, nullable=False)
    reliability_status = Column(
        Enum(ReliabilityStatus),
        default=ReliabilityStatus.INSUFFICIENT_DATA,
        nullable=False,
    )
    alpha_if_deleted = Column(JSON, nullable=True)
    contributing_competencies = Column(Integer, default=0, nullable=False)
    total_items = Column(Integer, default=0, nullable=False)
    last_calculated_at = Column(DateTime(timezone=True), nullable=True)

    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}


class AuditRun(Base):
    """
    One execution of the psychometric audit job.

    The most recent completed run is the only scheduler state the engine
    needs: it is passed back into run_psychometric_audit as ``last_run``.
    """

    __tablename__ = "audit_runs"

    id = Column(Integer, primary_key=True, index=True)
    trigger = Column(Enum(AuditTrigger), nullable=False)
    status = Column(
        Enum(AuditRunStatus), default=AuditRunStatus.RUNNING, nullable=False
    )
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Float, nullable=True)

    items_initialized = Column(Integer, default=0, nullable=False)
    items_recalculated = Column(Integer, default=0, nullable=False)
    calibrations_run = Column(Integer, default=0, nullable=False)
    competencies_recalculated = Column(Integer, default=0, nullable=False)
    traits_recalculated = Column(Integer, default=0, nullable=False)
    statuses_updated = Column(Integer, default=0, nullable=False)
    failures = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_audit_runs_status_started", "status", "started_at"),
    )
