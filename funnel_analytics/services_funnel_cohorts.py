"""Cohort analysis: bucket sessions by entry day / ISO week / month."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Sequence

from .errors import InvalidInputError
from .services_funnel_sessions import Session, SessionMap, completion_stats
from .services_funnel_store import FunnelStep

COHORT_GRANULARITIES = ("day", "week", "month")


def validate_cohort_by(cohort_by: Any) -> str:
    token = str(cohort_by or "day").strip().lower()
    if token not in COHORT_GRANULARITIES:
        raise InvalidInputError(f"Unknown cohort granularity: {cohort_by!r}. Use one of {', '.join(COHORT_GRANULARITIES)}")
    return token


def iso_week(d: date) -> tuple:
    """
    (iso_year, iso_week) by the ISO-8601 rule: the week belongs to the year
    that contains its Thursday.
    """
    thursday = d + timedelta(days=3 - d.weekday())
    year_start = date(thursday.year, 1, 1)
    week = (thursday - year_start).days // 7 + 1
    return thursday.year, week


def cohort_key(ts: datetime, cohort_by: str) -> str:
    d = ts.date() if isinstance(ts, datetime) else ts
    if cohort_by == "week":
        year, week = iso_week(d)
        return f"{year:04d}-W{week:02d}"
    if cohort_by == "month":
        return f"{d.year:04d}-{d.month:02d}"
    return d.isoformat()


def analyze_cohorts(
    steps: Sequence[FunnelStep],
    sessions: SessionMap,
    cohort_by: str = "day",
) -> List[Dict[str, Any]]:
    """Observed cohorts only, ascending by key (lexicographic == chronological for all key formats)."""
    cohort_by = validate_cohort_by(cohort_by)
    buckets: Dict[str, List[Session]] = {}
    for session in sessions.values():
        key = cohort_key(session.first_event.timestamp, cohort_by)
        buckets.setdefault(key, []).append(session)

    last_order = steps[-1].order if steps else -1
    out: List[Dict[str, Any]] = []
    for key in sorted(buckets):
        stats = completion_stats(buckets[key], last_order)
        out.append(
            {
                "cohort_date": key,
                "total_users": stats["total"],
                "completed_users": stats["completed"],
                "completion_rate": stats["completion_rate"],
                "avg_completion_time": stats["avg_completion_time"],
            }
        )
    return out
