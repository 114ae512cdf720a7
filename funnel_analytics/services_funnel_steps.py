"""Per-step conversion, drop-off and timing statistics over reconstructed sessions."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence, Set

from .services_funnel_sessions import Session, SessionMap
from .services_funnel_store import FunnelStep


@dataclass
class StepStats:
    step: str
    step_number: int
    total_users: int
    conversion_rate: float
    drop_off_rate: float
    avg_time_to_next: Optional[float]
    avg_time_from_start: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _mean(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return sum(values) / len(values)


def _sessions_at(sessions: SessionMap, step_number: int) -> Set[str]:
    return {sid for sid, s in sessions.items() if s.reached(step_number)}


def _time_to_next(session: Session, step_number: int, next_step_number: int) -> Optional[float]:
    current = session.first_at_step(step_number)
    nxt = session.first_at_step(next_step_number)
    if current is None or nxt is None:
        return None
    # Out-of-order arrivals never yield a negative duration.
    return max(0.0, (nxt.timestamp - current.timestamp).total_seconds())


def _time_from_start(session: Session, step_number: int) -> Optional[float]:
    event = session.first_at_step(step_number)
    if event is None:
        return None
    return max(0.0, (event.timestamp - session.first_event.timestamp).total_seconds())


def analyze_steps(steps: Sequence[FunnelStep], sessions: SessionMap) -> List[StepStats]:
    """
    One record per step, in step order.

    Rates are percentages. The last step always converts at 100 with no drop-off.
    Empty populations degrade to 0 (never a division error).
    """
    out: List[StepStats] = []
    for i, step in enumerate(steps):
        current = _sessions_at(sessions, step.order)
        total_users = len(current)
        avg_time_to_next: Optional[float] = None

        if i < len(steps) - 1:
            next_order = steps[i + 1].order
            converted = current & _sessions_at(sessions, next_order)
            conversion_rate = (len(converted) * 100.0 / total_users) if total_users > 0 else 0.0
            drop_off_rate = 100.0 - conversion_rate
            diffs = [
                d
                for d in (_time_to_next(sessions[sid], step.order, next_order) for sid in sorted(converted))
                if d is not None
            ]
            avg_time_to_next = _mean(diffs)
        else:
            conversion_rate = 100.0
            drop_off_rate = 0.0

        from_start = [
            d
            for d in (_time_from_start(sessions[sid], step.order) for sid in sorted(current))
            if d is not None
        ]
        out.append(
            StepStats(
                step=step.name,
                step_number=step.order,
                total_users=total_users,
                conversion_rate=conversion_rate,
                drop_off_rate=drop_off_rate,
                avg_time_to_next=avg_time_to_next,
                avg_time_from_start=_mean(from_start) or 0.0,
            )
        )
    return out
