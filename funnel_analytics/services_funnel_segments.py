"""Segment analysis: bucket sessions by a metadata field on their entry event."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from .errors import InvalidInputError
from .services_funnel_sessions import Session, SessionMap, completion_stats, is_completed
from .services_funnel_store import FunnelStep

UNKNOWN_SEGMENT = "Unknown"
UNKNOWN_STEP = "Unknown"
NO_DROP_OFF = "None"


def validate_segment_by(segment_by: Any) -> str:
    token = str(segment_by or "").strip()
    if not token:
        raise InvalidInputError("segment_by is required")
    return token


def segment_key(session: Session, segment_by: str) -> str:
    metadata = session.first_event.metadata or {}
    value = metadata.get(segment_by)
    if value is None or value == "":
        return UNKNOWN_SEGMENT
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def top_drop_off_step(
    sessions: Sequence[Session],
    steps: Sequence[FunnelStep],
) -> str:
    """Most frequent step after each non-completed session's furthest step; first seen wins ties."""
    if not steps:
        return NO_DROP_OFF
    last_order = steps[-1].order
    names_by_order = {s.order: s.name for s in steps}
    tally: Dict[str, int] = {}
    for session in sessions:
        if is_completed(session, last_order):
            continue
        name = names_by_order.get(session.max_step + 1, UNKNOWN_STEP)
        tally[name] = tally.get(name, 0) + 1

    top: Optional[str] = None
    top_count = 0
    for name, count in tally.items():
        if count > top_count:
            top, top_count = name, count
    return top or NO_DROP_OFF


def analyze_segments(
    steps: Sequence[FunnelStep],
    sessions: SessionMap,
    segment_by: str,
) -> List[Dict[str, Any]]:
    """Per-segment completion metrics, largest segment first (ties keep first-seen order)."""
    segment_by = validate_segment_by(segment_by)
    buckets: Dict[str, List[Session]] = {}
    for session in sessions.values():
        buckets.setdefault(segment_key(session, segment_by), []).append(session)

    last_order = steps[-1].order if steps else -1
    out: List[Dict[str, Any]] = []
    for segment, members in buckets.items():
        stats = completion_stats(members, last_order)
        out.append(
            {
                "segment": segment,
                "total_users": stats["total"],
                "completion_rate": stats["completion_rate"],
                "avg_completion_time": stats["avg_completion_time"],
                "top_drop_off_step": top_drop_off_step(members, steps),
            }
        )
    out.sort(key=lambda row: row["total_users"], reverse=True)
    return out
