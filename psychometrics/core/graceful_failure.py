"""
Graceful failure utilities.

Provides a reusable context manager for non-critical work that must not
block the main execution flow, such as the competency reliability refresh
that follows a milestone-triggered item recalculation. It centralizes the
pattern of attempting an operation, logging any exception with context and
continuing.

This is distinct from `db_error_handling.py`, which rolls back, retries and
raises for writes that must succeed.

Usage:
    from psychometrics.core.graceful_failure import graceful_failure

    with graceful_failure("recalculate competency reliability", logger):
        calculate_competency_reliability(db, source, catalog, competency_id)

    with graceful_failure(
        "recalculate competency reliability",
        logger,
        context={"competency_id": competency_id},
    ):
        ...
"""

import logging
from contextlib import contextmanager
from typing import Any, Generator, Optional


@contextmanager
def graceful_failure(
    operation_name: str,
    logger: logging.Logger,
    *,
    log_level: int = logging.WARNING,
    exc_info: bool = False,
    context: Optional[dict[str, Any]] = None,
) -> Generator[None, None, None]:
    """Context manager for non-critical operations that should not block execution.

    Args:
        operation_name: Human-readable name of the operation for logging
            (e.g., "recalculate competency reliability").
        logger: The logger instance to use for logging errors.
        log_level: Logging level for error messages. Defaults to WARNING.
        exc_info: Whether to include exception traceback in log. Defaults to False.
        context: Optional dictionary of additional context to include in log message
            (e.g., {"item_id": 123, "competency_id": 4}).

    Yields:
        None - the context manager is used for its side effects only.
    """
    try:
        yield
    except Exception as e:
        if context:
            context_str = ", ".join(f"{k}={v}" for k, v in context.items())
            message = f"Failed to {operation_name} ({context_str}): {e}"
        else:
            message = f"Failed to {operation_name}: {e}"

        logger.log(log_level, message, exc_info=exc_info)
