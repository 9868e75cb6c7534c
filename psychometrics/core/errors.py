"""
Exception taxonomy for the psychometric engine.

Insufficient data is deliberately absent: it is a valid terminal state
(``None`` metrics, ``INSUFFICIENT_DATA``/``PROBATION`` status) and never an
exception. Numeric instability is likewise prevented by clamping in the IRT
estimators instead of being raised.
"""

from typing import Any, Dict, Optional


class PsychometricError(Exception):
    """Base exception carrying an optional cause and structured context."""

    def __init__(  # noqa: D107
        self,
        message: str,
        original_error: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.original_error = original_error
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        msg = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            msg = f"{msg} (context: {ctx_str})"
        if self.original_error:
            msg = f"{msg} - caused by: {str(self.original_error)}"
        return msg


class NotFoundError(PsychometricError):
    """Recalculation requested for an item or competency with no data at all."""


class InvalidTransitionError(PsychometricError):
    """A manual validity status change violates the status machine."""


class ConcurrentModificationError(PsychometricError):
    """Optimistic-lock retries were exhausted for a statistics record."""


class CalibrationError(PsychometricError):
    """Unexpected failure while calibrating IRT parameters."""
