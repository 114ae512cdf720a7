"""Whole-funnel report: totals, completion, per-step breakdown and ranked drop-off points."""

from __future__ import annotations

import math
from typing import Any, Dict, List, Sequence

from .services_funnel_sessions import SessionMap, completion_stats
from .services_funnel_steps import StepStats
from .services_funnel_store import FunnelStep


def _lost_sessions(stats: StepStats) -> int:
    # 3 users at 66.66...% drop-off lose 2, not floor(1.9999999999999998).
    return int(math.floor(round(stats.total_users * stats.drop_off_rate / 100.0, 9)))


def rank_drop_off_points(step_stats: Sequence[StepStats]) -> List[Dict[str, Any]]:
    """Steps with drop-off > 0, worst first; equal rates keep step order (stable sort)."""
    points = [
        {
            "step": s.step,
            "step_number": s.step_number,
            "drop_off_count": _lost_sessions(s),
            "drop_off_rate": s.drop_off_rate,
        }
        for s in step_stats
        if s.drop_off_rate > 0
    ]
    points.sort(key=lambda p: p["drop_off_rate"], reverse=True)
    return points


def build_funnel_analysis(
    steps: Sequence[FunnelStep],
    sessions: SessionMap,
    step_stats: Sequence[StepStats],
) -> Dict[str, Any]:
    if not steps:
        return {
            "total_sessions": len(sessions),
            "completed_sessions": 0,
            "completion_rate": 0.0,
            "average_time_to_complete": 0.0,
            "steps": [],
            "drop_off_points": [],
        }
    stats = completion_stats(list(sessions.values()), steps[-1].order)
    return {
        "total_sessions": stats["total"],
        "completed_sessions": stats["completed"],
        "completion_rate": stats["completion_rate"],
        "average_time_to_complete": stats["avg_completion_time"],
        "steps": [s.to_dict() for s in step_stats],
        "drop_off_points": rank_drop_off_points(step_stats),
    }
