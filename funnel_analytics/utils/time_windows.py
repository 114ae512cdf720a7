"""Closed time windows for analysis queries and materialization periods."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time as dt_time, timedelta, timezone
from typing import Any, Optional

from ..errors import InvalidInputError

DEFAULT_WINDOW_DAYS = 30

def to_naive_utc(value: Any) -> Optional[datetime]:
    """Coerce a datetime / ISO string to naive UTC (the storage representation)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime.combine(value, dt_time.min)
    else:
        s = str(value).strip()
        if not s:
            return None
        try:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError as exc:
            raise InvalidInputError(f"Invalid timestamp: {value!r}") from exc
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt

def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

@dataclass(frozen=True)
class TimeWindow:
    """Closed interval [start, end] in naive UTC."""

    start: datetime
    end: datetime

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts <= self.end


def resolve_window(
    start: Any = None,
    end: Any = None,
    *,
    default_days: int = DEFAULT_WINDOW_DAYS,
    now: Optional[datetime] = None,
) -> TimeWindow:
    """
    Build a window, filling in the defaults: end -> now, start -> end - default_days.

    Raises InvalidInputError when start is after end.
    """
    end_dt = to_naive_utc(end) or to_naive_utc(now) or utc_now()
    start_dt = to_naive_utc(start) or end_dt - timedelta(days=default_days)
    if start_dt > end_dt:
        raise InvalidInputError("Time window start must not be after its end")
    return TimeWindow(start=start_dt, end=end_dt)

def require_window(start: Any, end: Any) -> TimeWindow:
    """Window for operations with no default: both bounds must be supplied."""
    if start is None or end is None:
        raise InvalidInputError("Both period start and period end are required")
    start_dt = to_naive_utc(start)
    end_dt = to_naive_utc(end)
    if start_dt is None or end_dt is None:
        raise InvalidInputError("Both period start and period end are required")
    if start_dt > end_dt:
        raise InvalidInputError("Time window start must not be after its end")
    return TimeWindow(start=start_dt, end=end_dt)

def period_key(window: TimeWindow) -> str:
    return window.start.date().isoformat()

def day_window(day: date) -> TimeWindow:
    start = datetime.combine(day, dt_time.min)
    return TimeWindow(start=start, end=start + timedelta(days=1) - timedelta(microseconds=1))
