"""Event ingestion: validate and append one funnel event."""

from __future__ import annotations

import logging
import math
import uuid
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from .errors import InvalidInputError
from .models_funnels import FunnelEvent
from .services_funnel_store import append_event, definition_steps, get_definition, serialize_event
from .utils.time_windows import to_naive_utc, utc_now

logger = logging.getLogger(__name__)

MAX_ID_LENGTH = 255
MAX_METADATA_DEPTH = 8


def _validate_value(value: Any, path: str, depth: int) -> Any:
    if depth > MAX_METADATA_DEPTH:
        raise InvalidInputError(f"metadata nested too deeply at {path}")
    if value is None or isinstance(value, (str, bool)):
        return value
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise InvalidInputError(f"metadata value at {path} must be a finite number")
        return value
    if isinstance(value, Mapping):
        return _validate_mapping(value, path, depth + 1)
    if isinstance(value, (list, tuple)):
        return [_validate_value(v, f"{path}[{i}]", depth + 1) for i, v in enumerate(value)]
    raise InvalidInputError(f"metadata value at {path} has unsupported type {type(value).__name__}")


def _validate_mapping(value: Mapping, path: str, depth: int) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise InvalidInputError(f"metadata keys must be strings (at {path})")
        out[key] = _validate_value(item, f"{path}.{key}", depth)
    return out


def validate_metadata(metadata: Any) -> Optional[Dict[str, Any]]:
    """
    Metadata is a string-keyed map of primitives (str, number, bool, null)
    plus nested maps/lists. Anything else is rejected here, at ingestion.
    """
    if metadata is None:
        return None
    if not isinstance(metadata, Mapping):
        raise InvalidInputError("metadata must be an object")
    return _validate_mapping(metadata, "metadata", 0)


def _require_text(value: Any, field_name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise InvalidInputError(f"{field_name} is required")
    if len(text) > MAX_ID_LENGTH:
        raise InvalidInputError(f"{field_name} must be at most {MAX_ID_LENGTH} characters")
    return text


def track_event(
    db: Session,
    *,
    owner_id: str,
    funnel_id: str,
    session_id: str,
    step: str,
    step_number: int,
    metadata: Optional[Dict[str, Any]] = None,
    timestamp: Any = None,
) -> Dict[str, Any]:
    session_id = _require_text(session_id, "session_id")
    step = _require_text(step, "step")
    if isinstance(step_number, bool) or not isinstance(step_number, int) or step_number < 0:
        raise InvalidInputError("step_number must be a non-negative integer")
    clean_metadata = validate_metadata(metadata)
    ts = to_naive_utc(timestamp) or utc_now()

    definition = get_definition(db, funnel_id, owner_id, require_tracking=True)
    if step_number not in {s.order for s in definition_steps(definition)}:
        raise InvalidInputError(f"step_number {step_number} does not match any step of funnel {funnel_id}")

    event = append_event(
        db,
        FunnelEvent(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            funnel_id=definition.id,
            session_id=session_id,
            step=step,
            step_number=step_number,
            timestamp=ts,
            metadata_json=clean_metadata,
        ),
    )
    logger.debug("Tracked funnel event: funnel_id=%s session_id=%s step_number=%s", funnel_id, session_id, step_number)
    return serialize_event(event)
