"""
Engine configuration settings.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Self

# Development fallback when DATABASE_URL is unset or empty
DEFAULT_DATABASE_URL = "sqlite:///./psychometrics.db"


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    # Environment
    ENV: str = "development"

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # Database (engine and session factory in psychometrics.models.base)
    DATABASE_URL: str = DEFAULT_DATABASE_URL
    SQL_ECHO: bool = False
    # Connection pool settings (ignored for SQLite)
    DB_POOL_SIZE: int = Field(default=5, ge=1)
    DB_POOL_MAX_OVERFLOW: int = Field(default=10, ge=0)
    DB_POOL_TIMEOUT: int = Field(default=30, ge=1)
    DB_POOL_RECYCLE: int = Field(default=3600, ge=-1)
    DB_POOL_PRE_PING: bool = True

    # Psychometric analysis
    # Master switch: when False the audit job and milestone triggers are no-ops
    PSYCHOMETRICS_ENABLED: bool = True
    PSYCHOMETRICS_MIN_RESPONSES: int = Field(
        default=50,
        ge=2,
        description=(
            "Minimum responses before an item's difficulty/discrimination are "
            "computed and before it may leave PROBATION"
        ),
    )

    # IRT calibration
    IRT_MIN_RESPONDENTS: int = Field(
        default=50,
        ge=2,
        description="Minimum complete respondents in the response matrix for calibration",
    )
    IRT_MIN_ITEMS: int = Field(
        default=1,
        ge=1,
        description="Minimum non-extreme items in the response matrix for calibration",
    )
    IRT_RECALIBRATION_INTERVAL_DAYS: int = Field(
        default=7,
        ge=0,
        description="Days after which a competency's IRT parameters are due again",
    )

    # Reliability
    RELIABILITY_COMPLETENESS_THRESHOLD: float = Field(
        default=0.9,
        gt=0.0,
        le=1.0,
        description=(
            "Fraction of a scale's items a respondent must have answered to be "
            "included in Cronbach's alpha"
        ),
    )

    # Persistence
    OPTIMISTIC_LOCK_MAX_RETRIES: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for a read-modify-write before ConcurrentModificationError",
    )

    # Scheduler
    AUDIT_INTERVAL_HOURS: int = Field(
        default=24,
        ge=1,
        description="Hours between scheduled psychometric audits",
    )
    AUDIT_JOB_HISTORY_LIMIT: int = Field(
        default=20,
        ge=1,
        description="Finished background audit jobs kept in memory for status lookups",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",  # Ignore extra fields from .env not defined in Settings
    )

    @model_validator(mode="after")
    def validate_production_database(self) -> Self:
        """Reject the development SQLite fallback in production."""
        if not self.DATABASE_URL.strip():
            if self.ENV == "production":
                raise ValueError(
                    "DATABASE_URL is not set or is empty. The psychometric engine "
                    "refuses to fall back to a local SQLite file in production."
                )
            self.DATABASE_URL = DEFAULT_DATABASE_URL
        if self.ENV == "production" and self.DATABASE_URL.startswith("sqlite"):
            raise ValueError(
                "DATABASE_URL must point at a server database when ENV=production, "
                f"got {self.DATABASE_URL!r}"
            )
        return self


settings = Settings()
