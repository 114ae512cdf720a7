"""Data access for funnel definitions and the append-only funnel event store."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import FunnelNotFoundError, InvalidInputError, StorageFailureError
from .models_funnels import FunnelDefinition, FunnelEvent, FunnelMetrics
from .utils.time_windows import TimeWindow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FunnelStep:
    name: str
    order: int
    conditions: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class EventRecord:
    """Storage-free view of one funnel event, the unit the analyzers work on."""

    session_id: str
    step: str
    step_number: int
    timestamp: Any
    metadata: Optional[Dict[str, Any]] = None
    id: Optional[str] = field(default=None, compare=False)


def parse_steps(steps_json: Any) -> List[FunnelStep]:
    """Parse stored step JSON into FunnelStep objects sorted by order."""
    if not isinstance(steps_json, list):
        raise InvalidInputError("Funnel steps must be a list")
    out: List[FunnelStep] = []
    for idx, raw in enumerate(steps_json):
        if not isinstance(raw, dict):
            raise InvalidInputError(f"Funnel step #{idx} is not an object")
        name = str(raw.get("name") or "").strip()
        order = raw.get("order")
        if not name or isinstance(order, bool) or not isinstance(order, int):
            raise InvalidInputError(f"Funnel step #{idx} needs a name and an integer order")
        conditions = raw.get("conditions")
        out.append(FunnelStep(name=name, order=order, conditions=conditions if isinstance(conditions, dict) else None))
    out.sort(key=lambda s: s.order)
    return out


def definition_steps(definition: FunnelDefinition) -> List[FunnelStep]:
    return parse_steps(definition.steps_json or [])


def to_event_record(row: FunnelEvent) -> EventRecord:
    return EventRecord(
        session_id=row.session_id,
        step=row.step,
        step_number=int(row.step_number),
        timestamp=row.timestamp,
        metadata=row.metadata_json if isinstance(row.metadata_json, dict) else None,
        id=row.id,
    )


def serialize_definition(item: FunnelDefinition, counts: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    out = {
        "id": item.id,
        "owner_id": item.owner_id,
        "name": item.name,
        "description": item.description,
        "steps": [{"name": s.name, "order": s.order, "conditions": s.conditions} for s in definition_steps(item)],
        "tracking_enabled": bool(item.tracking_enabled),
        "metadata": item.metadata_json,
        "created_at": item.created_at.isoformat() if item.created_at else None,
        "updated_at": item.updated_at.isoformat() if item.updated_at else None,
    }
    if counts is not None:
        out["counts"] = counts
    return out


def serialize_event(item: FunnelEvent) -> Dict[str, Any]:
    return {
        "id": item.id,
        "owner_id": item.owner_id,
        "funnel_id": item.funnel_id,
        "session_id": item.session_id,
        "step": item.step,
        "step_number": item.step_number,
        "timestamp": item.timestamp.isoformat() if item.timestamp else None,
        "metadata": item.metadata_json,
    }


def get_definition(
    db: Session,
    funnel_id: str,
    owner_id: str,
    *,
    require_tracking: bool = False,
) -> FunnelDefinition:
    """Owner-scoped definition lookup. Raises FunnelNotFoundError when absent."""
    try:
        q = db.query(FunnelDefinition).filter(
            FunnelDefinition.id == funnel_id,
            FunnelDefinition.owner_id == owner_id,
        )
        if require_tracking:
            q = q.filter(FunnelDefinition.tracking_enabled == True)  # noqa: E712
        item = q.first()
    except SQLAlchemyError as exc:
        logger.error("Funnel definition lookup failed: funnel_id=%s", funnel_id, exc_info=True)
        raise StorageFailureError("Funnel definition store unavailable") from exc
    if item is None:
        message = "Funnel not found or tracking disabled" if require_tracking else "Funnel not found"
        raise FunnelNotFoundError(funnel_id, message)
    return item


def list_definitions(db: Session, owner_id: str) -> List[FunnelDefinition]:
    """All definitions of one owner, newest first."""
    try:
        return (
            db.query(FunnelDefinition)
            .filter(FunnelDefinition.owner_id == owner_id)
            .order_by(FunnelDefinition.created_at.desc(), FunnelDefinition.id.asc())
            .all()
        )
    except SQLAlchemyError as exc:
        logger.error("Listing funnel definitions failed: owner_id=%s", owner_id, exc_info=True)
        raise StorageFailureError("Funnel definition store unavailable") from exc


def count_rows_by_funnel(db: Session, funnel_ids: List[str]) -> Dict[str, Dict[str, int]]:
    """Event and materialized metric row counts per funnel id (zero when absent)."""
    counts = {fid: {"events": 0, "metrics": 0} for fid in funnel_ids}
    if not funnel_ids:
        return counts
    try:
        for key, model in (("events", FunnelEvent), ("metrics", FunnelMetrics)):
            rows = (
                db.query(model.funnel_id, func.count(model.id))
                .filter(model.funnel_id.in_(funnel_ids))
                .group_by(model.funnel_id)
                .all()
            )
            for funnel_id, n in rows:
                counts[funnel_id][key] = int(n)
    except SQLAlchemyError as exc:
        logger.error("Counting funnel rows failed", exc_info=True)
        raise StorageFailureError("Funnel event store unavailable") from exc
    return counts


def list_tracking_funnels(db: Session) -> List[FunnelDefinition]:
    try:
        return (
            db.query(FunnelDefinition)
            .filter(FunnelDefinition.tracking_enabled == True)  # noqa: E712
            .order_by(FunnelDefinition.created_at.asc())
            .all()
        )
    except SQLAlchemyError as exc:
        logger.error("Listing tracking-enabled funnels failed", exc_info=True)
        raise StorageFailureError("Funnel definition store unavailable") from exc


def query_events(
    db: Session,
    funnel_id: str,
    window: TimeWindow,
) -> List[EventRecord]:
    """All events of one funnel inside the closed window, fetched in a single query."""
    try:
        q = db.query(FunnelEvent).filter(
            FunnelEvent.funnel_id == funnel_id,
            FunnelEvent.timestamp >= window.start,
            FunnelEvent.timestamp <= window.end,
        )
        rows = q.order_by(
            FunnelEvent.session_id.asc(),
            FunnelEvent.step_number.asc(),
            FunnelEvent.timestamp.asc(),
            FunnelEvent.id.asc(),
        ).all()
    except SQLAlchemyError as exc:
        logger.error("Event query failed: funnel_id=%s", funnel_id, exc_info=True)
        raise StorageFailureError("Funnel event store unavailable") from exc
    return [to_event_record(r) for r in rows]


def append_event(db: Session, event: FunnelEvent) -> FunnelEvent:
    try:
        db.add(event)
        db.commit()
        db.refresh(event)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Event append failed: funnel_id=%s session_id=%s", event.funnel_id, event.session_id, exc_info=True)
        raise StorageFailureError("Funnel event store unavailable") from exc
    return event
