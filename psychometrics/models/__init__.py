"""
Models package for the psychometric engine.
"""
from .base import Base, engine, SessionLocal
from .models import (
    AssessmentItem,
    AuditRun,
    AuditRunStatus,
    AuditTrigger,
    BigFiveReliability,
    BigFiveTrait,
    Competency,
    CompetencyReliability,
    DifficultyFlag,
    DiscriminationFlag,
    ItemResponse,
    ItemStatistics,
    ItemStatusChange,
    ItemType,
    ItemValidityStatus,
    ReliabilityStatus,
    StatusChangeSource,
)

__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "AssessmentItem",
    "AuditRun",
    "AuditRunStatus",
    "AuditTrigger",
    "BigFiveReliability",
    "BigFiveTrait",
    "Competency",
    "CompetencyReliability",
    "DifficultyFlag",
    "DiscriminationFlag",
    "ItemResponse",
    "ItemStatistics",
    "ItemStatusChange",
    "ItemType",
    "ItemValidityStatus",
    "ReliabilityStatus",
    "StatusChangeSource",
]
