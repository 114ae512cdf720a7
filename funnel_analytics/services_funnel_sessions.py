"""
Session reconstruction: flat funnel events -> per-session ordered timelines.

Two phases, kept separate so grouping is testable without storage:
  1. fetch once per window (services_funnel_store.query_events)
  2. group_events_into_sessions (pure)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session as DbSession

from .services_funnel_store import EventRecord, query_events
from .utils.time_windows import TimeWindow


@dataclass
class Session:
    session_id: str
    events: List[EventRecord]

    @property
    def first_event(self) -> EventRecord:
        # Entry point: earliest timestamp, lowest step on ties.
        return min(self.events, key=lambda e: (e.timestamp, e.step_number))

    @property
    def last_event(self) -> EventRecord:
        return max(self.events, key=lambda e: (e.timestamp, e.step_number))

    @property
    def max_step(self) -> int:
        return max(e.step_number for e in self.events)

    def first_at_step(self, step_number: int) -> Optional[EventRecord]:
        for event in self.events:
            if event.step_number == step_number:
                return event
        return None

    def reached(self, step_number: int) -> bool:
        return any(e.step_number == step_number for e in self.events)

    def duration_seconds(self) -> float:
        return _seconds_between(self.first_event.timestamp, self.last_event.timestamp)


SessionMap = Dict[str, Session]


def _seconds_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds()


def group_events_into_sessions(events: Iterable[EventRecord]) -> SessionMap:
    """
    Group by session id; inside a session order by (step_number, timestamp).

    Sessions come out in session-id order so downstream iteration is deterministic.
    """
    buckets: Dict[str, List[EventRecord]] = {}
    for event in events:
        buckets.setdefault(event.session_id, []).append(event)
    out: SessionMap = {}
    for session_id in sorted(buckets):
        ordered = sorted(buckets[session_id], key=lambda e: (e.step_number, e.timestamp))
        out[session_id] = Session(session_id=session_id, events=ordered)
    return out


def reconstruct_sessions(db: DbSession, funnel_id: str, window: TimeWindow) -> SessionMap:
    return group_events_into_sessions(query_events(db, funnel_id, window))


def is_completed(session: Session, last_step_order: int) -> bool:
    return session.max_step == last_step_order


def completion_stats(sessions: Sequence[Session], last_step_order: int) -> Dict[str, Any]:
    """Completed count, completion rate and mean first-to-last-event seconds over completed sessions."""
    total = len(sessions)
    durations = [s.duration_seconds() for s in sessions if is_completed(s, last_step_order)]
    completed = len(durations)
    return {
        "total": total,
        "completed": completed,
        "completion_rate": (completed * 100.0 / total) if total > 0 else 0.0,
        "avg_completion_time": (sum(durations) / completed) if completed > 0 else 0.0,
    }
