"""
Database base configuration for SQLAlchemy models.

Uses SQLAlchemy 2.0 style with DeclarativeBase. The engine only needs a
synchronous session: the audit job, the cron script and the background audit
runner all run outside any request cycle.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from typing import Any, Dict

from psychometrics.core.config import Settings, settings


def engine_options(config: Settings) -> Dict[str, Any]:
    """Keyword arguments for ``create_engine`` derived from the settings."""
    options: Dict[str, Any] = {
        "echo": config.SQL_ECHO,
        "pool_pre_ping": config.DB_POOL_PRE_PING,
    }
    if config.DATABASE_URL.startswith("sqlite"):
        # The background audit runner uses the engine from a worker thread
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_POOL_MAX_OVERFLOW,
            pool_timeout=config.DB_POOL_TIMEOUT,
            pool_recycle=config.DB_POOL_RECYCLE,
        )
    return options


DATABASE_URL = settings.DATABASE_URL

engine = create_engine(DATABASE_URL, **engine_options(settings))

# Sync session factory used by the audit runner thread and the cron script
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """
    SQLAlchemy 2.0 declarative base class with type annotation support.
    """

    pass
