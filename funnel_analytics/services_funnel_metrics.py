"""
Idempotent per-step, per-period metric materialization.

compute_metric_rows is pure (events in, rows out); upsert_metric_rows writes
them keyed by (funnel_id, step, period) using the database's own conflict
resolution, so concurrent recomputation of the same period is last-writer-wins
and a re-run over unchanged events leaves identical rows.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import StorageFailureError
from .models_funnels import FunnelDefinition, FunnelMetrics
from .services_funnel_sessions import SessionMap, reconstruct_sessions
from .services_funnel_steps import analyze_steps
from .services_funnel_store import FunnelStep, definition_steps
from .utils.time_windows import TimeWindow, period_key

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = (
    "step_number",
    "total_count",
    "conversion_rate",
    "drop_off_rate",
    "avg_time_to_next",
    "period_start",
    "period_end",
)


def compute_metric_rows(
    steps: Sequence[FunnelStep],
    sessions: SessionMap,
    window: TimeWindow,
    *,
    period: Optional[str] = None,
) -> List[Dict[str, Any]]:
    period = period or period_key(window)
    rows: List[Dict[str, Any]] = []
    for stats in analyze_steps(steps, sessions):
        avg_next = stats.avg_time_to_next
        rows.append(
            {
                "step": stats.step,
                "step_number": stats.step_number,
                "total_count": stats.total_users,
                "conversion_rate": stats.conversion_rate,
                "drop_off_rate": stats.drop_off_rate,
                "avg_time_to_next": int(math.floor(avg_next)) if avg_next is not None else None,
                "period": period,
                "period_start": window.start,
                "period_end": window.end,
            }
        )
    return rows


def _dialect_upsert(db: Session, funnel_id: str, rows: Sequence[Dict[str, Any]]) -> bool:
    dialect = db.get_bind().dialect.name
    now = datetime.utcnow()
    if dialect in ("mysql", "mariadb"):
        for row in rows:
            stmt = mysql.insert(FunnelMetrics).values(funnel_id=funnel_id, created_at=now, **row)
            stmt = stmt.on_duplicate_key_update({name: getattr(stmt.inserted, name) for name in _UPDATABLE_FIELDS})
            db.execute(stmt)
        return True
    if dialect == "postgresql":
        insert_fn = postgresql.insert
    elif dialect == "sqlite":
        insert_fn = sqlite.insert
    else:
        return False
    for row in rows:
        stmt = insert_fn(FunnelMetrics).values(funnel_id=funnel_id, created_at=now, **row)
        stmt = stmt.on_conflict_do_update(
            index_elements=["funnel_id", "step", "period"],
            set_={name: getattr(stmt.excluded, name) for name in _UPDATABLE_FIELDS},
        )
        db.execute(stmt)
    return True


def _apply_update(db: Session, funnel_id: str, row: Dict[str, Any]) -> bool:
    existing = (
        db.query(FunnelMetrics)
        .filter(
            FunnelMetrics.funnel_id == funnel_id,
            FunnelMetrics.step == row["step"],
            FunnelMetrics.period == row["period"],
        )
        .first()
    )
    if existing is None:
        return False
    for name in _UPDATABLE_FIELDS:
        setattr(existing, name, row[name])
    return True


def _orm_upsert(db: Session, funnel_id: str, rows: Sequence[Dict[str, Any]]) -> None:
    for row in rows:
        if _apply_update(db, funnel_id, row):
            continue
        try:
            with db.begin_nested():
                db.add(FunnelMetrics(funnel_id=funnel_id, **row))
        except IntegrityError:
            # A concurrent run inserted the same key first; its row is updated instead.
            logger.info("Funnel metrics insert raced, updating: funnel_id=%s step=%s", funnel_id, row["step"])
            if not _apply_update(db, funnel_id, row):
                raise
    db.flush()


def upsert_metric_rows(db: Session, funnel_id: str, rows: Sequence[Dict[str, Any]]) -> None:
    try:
        if not _dialect_upsert(db, funnel_id, rows):
            _orm_upsert(db, funnel_id, rows)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Funnel metrics upsert failed: funnel_id=%s", funnel_id, exc_info=True)
        raise StorageFailureError("Funnel metrics store unavailable") from exc


def serialize_metrics(item: FunnelMetrics) -> Dict[str, Any]:
    return {
        "id": item.id,
        "funnel_id": item.funnel_id,
        "step": item.step,
        "step_number": item.step_number,
        "total_count": item.total_count,
        "conversion_rate": float(item.conversion_rate),
        "drop_off_rate": float(item.drop_off_rate),
        "avg_time_to_next": item.avg_time_to_next,
        "period": item.period,
        "period_start": item.period_start.isoformat() if item.period_start else None,
        "period_end": item.period_end.isoformat() if item.period_end else None,
        "segment_data": item.segment_data_json,
    }


def list_metrics(db: Session, funnel_id: str, *, period: Optional[str] = None) -> List[Dict[str, Any]]:
    try:
        q = db.query(FunnelMetrics).filter(FunnelMetrics.funnel_id == funnel_id)
        if period:
            q = q.filter(FunnelMetrics.period == period)
        rows = q.order_by(FunnelMetrics.period.desc(), FunnelMetrics.step_number.asc()).all()
    except SQLAlchemyError as exc:
        logger.error("Funnel metrics read failed: funnel_id=%s", funnel_id, exc_info=True)
        raise StorageFailureError("Funnel metrics store unavailable") from exc
    return [serialize_metrics(r) for r in rows]


def materialize_metrics(db: Session, definition: FunnelDefinition, window: TimeWindow) -> List[Dict[str, Any]]:
    """Recompute one period for one funnel from stored events and upsert it."""
    steps = definition_steps(definition)
    period = period_key(window)
    sessions = reconstruct_sessions(db, definition.id, window)
    rows = compute_metric_rows(steps, sessions, window, period=period)
    upsert_metric_rows(db, definition.id, rows)
    logger.info(
        "Calculated metrics: funnel_id=%s period=%s steps=%s sessions=%s",
        definition.id,
        period,
        len(rows),
        len(sessions),
    )
    return list_metrics(db, definition.id, period=period)
