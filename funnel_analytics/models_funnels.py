"""SQLAlchemy models for funnel definitions, raw funnel events and materialized metrics."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base


class FunnelDefinition(Base):
    """Ordered step definition per funnel. Read-only to the analytics engine."""

    __tablename__ = "funnel_definitions"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(128), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    steps_json = Column(JSON, nullable=False)  # [{"name": ..., "order": 0, "conditions": {...}}]
    tracking_enabled = Column(Boolean, nullable=False, default=True)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    events = relationship("FunnelEvent", back_populates="funnel", cascade="all, delete-orphan")
    metrics = relationship("FunnelMetrics", back_populates="funnel", cascade="all, delete-orphan")


class FunnelEvent(Base):
    """Append-only journey event. Never mutated by the engine."""

    __tablename__ = "funnel_events"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(128), nullable=False, index=True)
    funnel_id = Column(String(36), ForeignKey("funnel_definitions.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(String(255), nullable=False)
    step = Column(String(255), nullable=False)
    step_number = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)  # naive UTC
    metadata_json = Column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_funnel_events_funnel_ts", "funnel_id", "timestamp"),
        Index("ix_funnel_events_funnel_session", "funnel_id", "session_id"),
    )

    funnel = relationship("FunnelDefinition", back_populates="events")


class FunnelMetrics(Base):
    """Per-step, per-period aggregate. One row per (funnel_id, step, period); rewritten on recompute."""

    __tablename__ = "funnel_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    funnel_id = Column(String(36), ForeignKey("funnel_definitions.id", ondelete="CASCADE"), nullable=False, index=True)
    step = Column(String(255), nullable=False)
    step_number = Column(Integer, nullable=False)
    total_count = Column(Integer, nullable=False, default=0)
    conversion_rate = Column(Float, nullable=False, default=0.0)
    drop_off_rate = Column(Float, nullable=False, default=0.0)
    avg_time_to_next = Column(Integer, nullable=True)  # whole seconds
    period = Column(String(10), nullable=False, index=True)  # YYYY-MM-DD
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    segment_data_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (UniqueConstraint("funnel_id", "step", "period", name="uq_funnel_metrics_funnel_step_period"),)

    funnel = relationship("FunnelDefinition", back_populates="metrics")
