from datetime import datetime
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from funnel_analytics.db import get_db
from funnel_analytics.errors import FunnelNotFoundError, InvalidInputError, StorageFailureError
from funnel_analytics.services_funnel_cohorts import COHORT_GRANULARITIES
from funnel_analytics.services_funnel_tracking import track_event
from funnel_analytics.services_funnels import (
    calculate_metrics,
    get_cohort_analysis,
    get_funnel,
    get_funnel_analysis,
    get_funnel_metrics,
    get_segment_analysis,
    get_step_analysis,
    list_funnels,
)

app = FastAPI(title="Funnel Analytics API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== Pydantic Models ====================

class TrackEventRequest(BaseModel):
    funnel_id: str = Field(..., min_length=1, max_length=36)
    session_id: str = Field(..., min_length=1, max_length=255)
    step: str = Field(..., min_length=1, max_length=255)
    step_number: int = Field(..., ge=0)
    metadata: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None


class CalculateMetricsRequest(BaseModel):
    period_start: datetime
    period_end: datetime


def _owner(x_user_id: Optional[str]) -> str:
    return (x_user_id or "default").strip() or "default"


def _call(fn: Callable[..., Any], **kwargs: Any) -> Any:
    try:
        return fn(**kwargs)
    except FunnelNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageFailureError as e:
        raise HTTPException(status_code=503, detail=str(e))


# ==================== Routes ====================

@app.get("/api/health")
def health():
    return {"status": "ok", "cohort_granularities": list(COHORT_GRANULARITIES)}


@app.get("/api/funnels")
def get_funnels(
    db: Session = Depends(get_db),
    x_user_id: Optional[str] = Header(None),
):
    return _call(list_funnels, db=db, owner_id=_owner(x_user_id))


@app.get("/api/funnels/{funnel_id}")
def get_funnel_endpoint(
    funnel_id: str,
    db: Session = Depends(get_db),
    x_user_id: Optional[str] = Header(None),
):
    return _call(get_funnel, db=db, owner_id=_owner(x_user_id), funnel_id=funnel_id)


@app.post("/api/funnels/events", status_code=201)
def post_funnel_event(
    body: TrackEventRequest,
    db: Session = Depends(get_db),
    x_user_id: Optional[str] = Header(None),
):
    return _call(
        track_event,
        db=db,
        owner_id=_owner(x_user_id),
        funnel_id=body.funnel_id,
        session_id=body.session_id,
        step=body.step,
        step_number=body.step_number,
        metadata=body.metadata,
        timestamp=body.timestamp,
    )


@app.get("/api/funnels/{funnel_id}/steps")
def get_funnel_steps(
    funnel_id: str,
    period_start: Optional[datetime] = Query(None),
    period_end: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    x_user_id: Optional[str] = Header(None),
):
    return _call(
        get_step_analysis,
        db=db,
        owner_id=_owner(x_user_id),
        funnel_id=funnel_id,
        start=period_start,
        end=period_end,
    )


@app.get("/api/funnels/{funnel_id}/analysis")
def get_funnel_analysis_endpoint(
    funnel_id: str,
    period_start: Optional[datetime] = Query(None),
    period_end: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    x_user_id: Optional[str] = Header(None),
):
    return _call(
        get_funnel_analysis,
        db=db,
        owner_id=_owner(x_user_id),
        funnel_id=funnel_id,
        start=period_start,
        end=period_end,
    )


@app.get("/api/funnels/{funnel_id}/cohorts")
def get_funnel_cohorts(
    funnel_id: str,
    period_start: Optional[datetime] = Query(None),
    period_end: Optional[datetime] = Query(None),
    cohort_by: str = Query("day"),
    db: Session = Depends(get_db),
    x_user_id: Optional[str] = Header(None),
):
    return _call(
        get_cohort_analysis,
        db=db,
        owner_id=_owner(x_user_id),
        funnel_id=funnel_id,
        start=period_start,
        end=period_end,
        cohort_by=cohort_by,
    )


@app.get("/api/funnels/{funnel_id}/segments")
def get_funnel_segments(
    funnel_id: str,
    segment_by: Optional[str] = Query(None),
    period_start: Optional[datetime] = Query(None),
    period_end: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    x_user_id: Optional[str] = Header(None),
):
    return _call(
        get_segment_analysis,
        db=db,
        owner_id=_owner(x_user_id),
        funnel_id=funnel_id,
        segment_by=segment_by,
        start=period_start,
        end=period_end,
    )


@app.get("/api/funnels/{funnel_id}/metrics")
def get_funnel_metrics_endpoint(
    funnel_id: str,
    period: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    x_user_id: Optional[str] = Header(None),
):
    return _call(
        get_funnel_metrics,
        db=db,
        owner_id=_owner(x_user_id),
        funnel_id=funnel_id,
        period=period,
    )


@app.post("/api/funnels/{funnel_id}/metrics/calculate")
def post_calculate_metrics(
    funnel_id: str,
    body: CalculateMetricsRequest,
    db: Session = Depends(get_db),
    x_user_id: Optional[str] = Header(None),
):
    rows = _call(
        calculate_metrics,
        db=db,
        owner_id=_owner(x_user_id),
        funnel_id=funnel_id,
        start=body.period_start,
        end=body.period_end,
    )
    return {"message": "Metrics calculated successfully", "metrics": rows}
