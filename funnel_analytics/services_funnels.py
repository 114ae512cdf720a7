"""Owner-scoped funnel operations: definition reads, analyses and materialized metrics."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .services_funnel_analysis import build_funnel_analysis
from .services_funnel_cohorts import analyze_cohorts, validate_cohort_by
from .services_funnel_metrics import list_metrics, materialize_metrics
from .services_funnel_segments import analyze_segments, validate_segment_by
from .services_funnel_sessions import reconstruct_sessions
from .services_funnel_steps import analyze_steps
from .services_funnel_store import (
    count_rows_by_funnel,
    definition_steps,
    get_definition,
    list_definitions,
    serialize_definition,
)
from .utils.time_windows import require_window, resolve_window


def list_funnels(db: Session, *, owner_id: str) -> List[Dict[str, Any]]:
    """Owner's definitions, newest first, with event and metric row counts."""
    definitions = list_definitions(db, owner_id)
    counts = count_rows_by_funnel(db, [d.id for d in definitions])
    return [serialize_definition(d, counts[d.id]) for d in definitions]


def get_funnel(db: Session, *, owner_id: str, funnel_id: str) -> Dict[str, Any]:
    definition = get_definition(db, funnel_id, owner_id)
    return serialize_definition(definition, count_rows_by_funnel(db, [definition.id])[definition.id])


def get_step_analysis(
    db: Session,
    *,
    owner_id: str,
    funnel_id: str,
    start: Any = None,
    end: Any = None,
) -> Dict[str, Any]:
    window = resolve_window(start, end)
    definition = get_definition(db, funnel_id, owner_id)
    steps = definition_steps(definition)
    sessions = reconstruct_sessions(db, definition.id, window)
    return {
        "funnel_id": definition.id,
        "funnel_name": definition.name,
        "period_start": window.start.isoformat(),
        "period_end": window.end.isoformat(),
        "steps": [s.to_dict() for s in analyze_steps(steps, sessions)],
    }


def get_funnel_analysis(
    db: Session,
    *,
    owner_id: str,
    funnel_id: str,
    start: Any = None,
    end: Any = None,
) -> Dict[str, Any]:
    """Full report; defaults to the last 30 days ending now."""
    window = resolve_window(start, end)
    definition = get_definition(db, funnel_id, owner_id)
    steps = definition_steps(definition)
    sessions = reconstruct_sessions(db, definition.id, window)
    report = build_funnel_analysis(steps, sessions, analyze_steps(steps, sessions))
    return {
        "funnel_id": definition.id,
        "funnel_name": definition.name,
        "period_start": window.start.isoformat(),
        "period_end": window.end.isoformat(),
        **report,
    }


def get_cohort_analysis(
    db: Session,
    *,
    owner_id: str,
    funnel_id: str,
    start: Any,
    end: Any,
    cohort_by: str = "day",
) -> List[Dict[str, Any]]:
    cohort_by = validate_cohort_by(cohort_by)
    window = require_window(start, end)
    definition = get_definition(db, funnel_id, owner_id)
    sessions = reconstruct_sessions(db, definition.id, window)
    return analyze_cohorts(definition_steps(definition), sessions, cohort_by)


def get_segment_analysis(
    db: Session,
    *,
    owner_id: str,
    funnel_id: str,
    segment_by: str,
    start: Any = None,
    end: Any = None,
) -> List[Dict[str, Any]]:
    segment_by = validate_segment_by(segment_by)
    window = resolve_window(start, end)
    definition = get_definition(db, funnel_id, owner_id)
    sessions = reconstruct_sessions(db, definition.id, window)
    return analyze_segments(definition_steps(definition), sessions, segment_by)


def calculate_metrics(
    db: Session,
    *,
    owner_id: str,
    funnel_id: str,
    start: Any,
    end: Any,
) -> List[Dict[str, Any]]:
    """Materialize one period (keyed by the window's start date)."""
    window = require_window(start, end)
    definition = get_definition(db, funnel_id, owner_id)
    return materialize_metrics(db, definition, window)


def get_funnel_metrics(
    db: Session,
    *,
    owner_id: str,
    funnel_id: str,
    period: Optional[str] = None,
) -> List[Dict[str, Any]]:
    definition = get_definition(db, funnel_id, owner_id)
    return list_metrics(db, definition.id, period=period)
