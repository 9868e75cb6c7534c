"""
Database error handling utilities.

Centralizes the write pattern used for every statistics record:
1. Run a read-modify-write callable
2. Commit
3. On an optimistic-lock conflict, roll back and retry with fresh data
4. On any other database error, roll back and raise DatabaseOperationError

Records carry a SQLAlchemy ``version_id_col`` counter. A concurrent writer
(a manual recalculation racing the scheduled audit) makes the UPDATE match
zero rows, which SQLAlchemy reports as ``StaleDataError``. Rolling back
expires every instance in the session, so the next attempt reloads the
current row instead of overwriting it blindly.

Usage:
    from psychometrics.core.db_error_handling import run_with_optimistic_retry

    def _write() -> ItemStatistics:
        stats = get_or_create_item_statistics(db, item_id)
        stats.response_count = count
        return stats

    stats = run_with_optimistic_retry(db, "update item statistics", _write)
"""

import logging
from typing import Any, Callable, Dict, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from psychometrics.core.config import settings
from psychometrics.core.errors import ConcurrentModificationError


logger = logging.getLogger(__name__)

T = TypeVar("T")


class DatabaseOperationError(Exception):
    """Exception raised when a database operation fails.

    Wraps database errors with the name of the operation that failed.

    Attributes:
        operation_name: Human-readable name of the operation that failed
        original_error: The underlying exception that caused the failure
        message: The formatted error message
    """

    def __init__(
        self,
        operation_name: str,
        original_error: Exception,
        message: Optional[str] = None,
    ):
        """Initialize the database operation error.

        Args:
            operation_name: Human-readable name of the operation that failed
            original_error: The underlying exception that caused the failure
            message: Optional custom message (defaults to a generated message)
        """
        self.operation_name = operation_name
        self.original_error = original_error
        self.message = message or f"Database error during {operation_name}"
        super().__init__(f"{self.message}: {original_error}")


def run_with_optimistic_retry(
    db: Session,
    operation_name: str,
    operation: Callable[[], T],
    *,
    max_retries: Optional[int] = None,
    context: Optional[Dict[str, Any]] = None,
) -> T:
    """Run a read-modify-write callable and commit, retrying on version conflicts.

    The callable must (re)load the records it modifies on every call; it is
    invoked once per attempt.

    Args:
        db: Database session.
        operation_name: Human-readable name of the write for logging.
        operation: Callable performing the read-modify-write. Its return
            value is returned after a successful commit.
        max_retries: Total attempts before giving up. Defaults to
            settings.OPTIMISTIC_LOCK_MAX_RETRIES.
        context: Optional identifiers added to log lines and errors.

    Returns:
        Whatever ``operation`` returned on the successful attempt.

    Raises:
        ConcurrentModificationError: If every attempt hit a version conflict.
        DatabaseOperationError: If any other database error occurred.
    """
    attempts = max_retries if max_retries is not None else settings.OPTIMISTIC_LOCK_MAX_RETRIES
    context = context or {}
    last_conflict: Optional[StaleDataError] = None

    for attempt in range(1, attempts + 1):
        try:
            result = operation()
            db.commit()
            return result
        except StaleDataError as e:
            db.rollback()
            last_conflict = e
            logger.warning(
                f"Version conflict during {operation_name} "
                f"(attempt {attempt}/{attempts}, context={context}); retrying with fresh data"
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error during {operation_name}: {e}")
            raise DatabaseOperationError(operation_name, e) from e
        except Exception:
            db.rollback()
            raise

    raise ConcurrentModificationError(
        f"Concurrent modification during {operation_name}; gave up after {attempts} attempts",
        original_error=last_conflict,
        context=context,
    )
