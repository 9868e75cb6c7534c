"""
UTC time helpers for snapshot timestamps and recalculation schedules.

Every timestamp the engine writes is timezone-aware UTC. SQLite hands back
naive values for the same columns, so anything read from the database is
normalized with ensure_timezone_aware before it is compared.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time in UTC. Callers that need a pinned clock pass ``now`` instead."""
    return datetime.now(timezone.utc)


def ensure_timezone_aware(dt: Optional[datetime]) -> datetime:
    """
    Treat a naive datetime as UTC.

    Raises:
        ValueError: If dt is None
    """
    if dt is None:
        raise ValueError("datetime cannot be None")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def interval_elapsed(
    last: Optional[datetime], interval: timedelta, now: Optional[datetime] = None
) -> bool:
    """
    Whether ``interval`` has passed since ``last``.

    A missing ``last`` (never run) counts as elapsed. The boundary is
    inclusive: exactly one interval later is due.
    """
    if last is None:
        return True
    now = now or utc_now()
    return ensure_timezone_aware(last) + interval <= ensure_timezone_aware(now)
