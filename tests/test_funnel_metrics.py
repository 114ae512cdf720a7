from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from funnel_analytics.db import Base
from funnel_analytics.errors import FunnelNotFoundError, InvalidInputError, StorageFailureError
from funnel_analytics.models_funnels import FunnelDefinition, FunnelEvent, FunnelMetrics
from funnel_analytics.services_funnel_metrics import compute_metric_rows
from funnel_analytics.services_funnel_sessions import group_events_into_sessions
from funnel_analytics.services_funnel_store import EventRecord, FunnelStep
from funnel_analytics.services_funnels import calculate_metrics, get_funnel_metrics
from funnel_analytics.utils.time_windows import TimeWindow


DAY = datetime(2024, 2, 8)
WINDOW_END = DAY + timedelta(days=1) - timedelta(microseconds=1)


def _unit_db_session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)()


def _seed(db, *, owner_id: str = "u1") -> None:
    db.add(
        FunnelDefinition(
            id="f-1",
            owner_id=owner_id,
            name="Checkout",
            steps_json=[{"name": "Visit", "order": 0}, {"name": "Signup", "order": 1}, {"name": "Purchase", "order": 2}],
            tracking_enabled=True,
        )
    )
    n = 0
    for i in range(4):
        for step_number, offset in ((0, 0), (1, 61), (2, 200)):
            if step_number == 1 and i >= 2:
                break
            if step_number == 2 and i >= 1:
                break
            n += 1
            db.add(
                FunnelEvent(
                    id=f"e{n}",
                    owner_id=owner_id,
                    funnel_id="f-1",
                    session_id=f"s{i}",
                    step=str(step_number),
                    step_number=step_number,
                    timestamp=DAY + timedelta(hours=i, seconds=offset + i),
                )
            )
    # Outside the period, must not leak in.
    db.add(FunnelEvent(id="late", owner_id=owner_id, funnel_id="f-1", session_id="s9", step="0", step_number=0, timestamp=DAY + timedelta(days=1, minutes=1)))
    db.commit()


def _snapshot(db):
    rows = db.query(FunnelMetrics).order_by(FunnelMetrics.step_number.asc()).all()
    return [
        (
            r.id,
            r.funnel_id,
            r.step,
            r.step_number,
            r.total_count,
            r.conversion_rate,
            r.drop_off_rate,
            r.avg_time_to_next,
            r.period,
            r.period_start,
            r.period_end,
            r.created_at,
        )
        for r in rows
    ]


def test_compute_metric_rows_is_pure_and_floors_time_to_next():
    steps = [FunnelStep("A", 0), FunnelStep("B", 1)]
    events = [
        EventRecord("s1", "A", 0, DAY),
        EventRecord("s1", "B", 1, DAY + timedelta(seconds=10)),
        EventRecord("s2", "A", 0, DAY),
        EventRecord("s2", "B", 1, DAY + timedelta(seconds=15)),
    ]
    window = TimeWindow(start=DAY, end=WINDOW_END)
    rows = compute_metric_rows(steps, group_events_into_sessions(events), window)
    assert rows[0]["period"] == "2024-02-08"
    assert rows[0]["total_count"] == 2
    assert rows[0]["conversion_rate"] == 100.0
    assert rows[0]["avg_time_to_next"] == 12  # 12.5 floored
    assert rows[1]["conversion_rate"] == 100.0
    assert rows[1]["drop_off_rate"] == 0.0
    assert rows[1]["avg_time_to_next"] is None
    assert rows == compute_metric_rows(steps, group_events_into_sessions(events), window)


def test_calculate_metrics_persists_one_row_per_step():
    db = _unit_db_session()
    try:
        _seed(db)
        rows = calculate_metrics(db, owner_id="u1", funnel_id="f-1", start=DAY, end=WINDOW_END)
        assert [(r["step"], r["total_count"], r["conversion_rate"], r["drop_off_rate"]) for r in rows] == [
            ("Visit", 4, 50.0, 50.0),
            ("Signup", 2, 50.0, 50.0),
            ("Purchase", 1, 100.0, 0.0),
        ]
        assert rows[0]["avg_time_to_next"] == 61
        assert rows[0]["period"] == "2024-02-08"
        assert rows[0]["period_start"] == DAY.isoformat()
    finally:
        db.close()


def test_recalculating_same_period_is_idempotent():
    db = _unit_db_session()
    try:
        _seed(db)
        calculate_metrics(db, owner_id="u1", funnel_id="f-1", start=DAY, end=WINDOW_END)
        first = _snapshot(db)
        calculate_metrics(db, owner_id="u1", funnel_id="f-1", start=DAY, end=WINDOW_END)
        second = _snapshot(db)
        assert len(first) == 3
        assert first == second
    finally:
        db.close()


def test_recalculation_overwrites_after_late_events():
    db = _unit_db_session()
    try:
        _seed(db)
        calculate_metrics(db, owner_id="u1", funnel_id="f-1", start=DAY, end=WINDOW_END)
        db.add(FunnelEvent(id="e-new", owner_id="u1", funnel_id="f-1", session_id="s1", step="2", step_number=2, timestamp=DAY + timedelta(hours=5)))
        db.commit()
        rows = calculate_metrics(db, owner_id="u1", funnel_id="f-1", start=DAY, end=WINDOW_END)
        assert db.query(FunnelMetrics).count() == 3
        assert rows[1]["conversion_rate"] == 100.0
        assert rows[2]["total_count"] == 2
    finally:
        db.close()


def test_get_funnel_metrics_filters_by_period_and_orders_newest_first():
    db = _unit_db_session()
    try:
        _seed(db)
        calculate_metrics(db, owner_id="u1", funnel_id="f-1", start=DAY, end=WINDOW_END)
        calculate_metrics(db, owner_id="u1", funnel_id="f-1", start=DAY + timedelta(days=1), end=WINDOW_END + timedelta(days=1))
        all_rows = get_funnel_metrics(db, owner_id="u1", funnel_id="f-1")
        assert [r["period"] for r in all_rows] == ["2024-02-09"] * 3 + ["2024-02-08"] * 3
        assert [r["step_number"] for r in all_rows[:3]] == [0, 1, 2]
        assert all_rows[0]["total_count"] == 1
        only = get_funnel_metrics(db, owner_id="u1", funnel_id="f-1", period="2024-02-08")
        assert len(only) == 3
    finally:
        db.close()


def test_calculate_metrics_requires_window_and_owner():
    db = _unit_db_session()
    try:
        _seed(db)
        with pytest.raises(InvalidInputError):
            calculate_metrics(db, owner_id="u1", funnel_id="f-1", start=None, end=WINDOW_END)
        with pytest.raises(InvalidInputError):
            calculate_metrics(db, owner_id="u1", funnel_id="f-1", start=WINDOW_END, end=DAY)
        with pytest.raises(FunnelNotFoundError):
            calculate_metrics(db, owner_id="someone-else", funnel_id="f-1", start=DAY, end=WINDOW_END)
        assert db.query(FunnelMetrics).count() == 0
    finally:
        db.close()


def test_generic_dialect_fallback_upserts_in_place(monkeypatch):
    from funnel_analytics import services_funnel_metrics

    monkeypatch.setattr(services_funnel_metrics, "_dialect_upsert", lambda db, funnel_id, rows: False)
    db = _unit_db_session()
    try:
        _seed(db)
        calculate_metrics(db, owner_id="u1", funnel_id="f-1", start=DAY, end=WINDOW_END)
        first = _snapshot(db)
        calculate_metrics(db, owner_id="u1", funnel_id="f-1", start=DAY, end=WINDOW_END)
        assert _snapshot(db) == first
        assert len(first) == 3
    finally:
        db.close()


def test_failed_upsert_leaves_no_partial_rows(monkeypatch):
    db = _unit_db_session()
    try:
        _seed(db)
        real_execute = db.execute
        inserts = {"n": 0}

        def flaky_execute(statement, *args, **kwargs):
            if getattr(statement, "is_insert", False):
                inserts["n"] += 1
            if inserts["n"] == 2:
                raise OperationalError("INSERT INTO funnel_metrics", {}, Exception("disk I/O error"))
            return real_execute(statement, *args, **kwargs)

        monkeypatch.setattr(db, "execute", flaky_execute)
        with pytest.raises(StorageFailureError):
            calculate_metrics(db, owner_id="u1", funnel_id="f-1", start=DAY, end=WINDOW_END)

        monkeypatch.undo()
        assert db.query(FunnelMetrics).count() == 0
    finally:
        db.close()


def test_generic_dialect_fallback_updates_row_inserted_by_concurrent_run(monkeypatch):
    from funnel_analytics import services_funnel_metrics

    real_apply_update = services_funnel_metrics._apply_update
    raced = set()

    def apply_update_after_race(db, funnel_id, row):
        if row["step"] not in raced:
            raced.add(row["step"])
            # another writer commits the same key between the lookup and the insert
            db.execute(insert(FunnelMetrics).values(funnel_id=funnel_id, created_at=DAY, **{**row, "total_count": -1}))
            return False
        return real_apply_update(db, funnel_id, row)

    monkeypatch.setattr(services_funnel_metrics, "_dialect_upsert", lambda db, funnel_id, rows: False)
    monkeypatch.setattr(services_funnel_metrics, "_apply_update", apply_update_after_race)
    db = _unit_db_session()
    try:
        _seed(db)
        rows = calculate_metrics(db, owner_id="u1", funnel_id="f-1", start=DAY, end=WINDOW_END)
        assert [(r["step"], r["total_count"]) for r in rows] == [("Visit", 4), ("Signup", 2), ("Purchase", 1)]
        assert db.query(FunnelMetrics).count() == 3
    finally:
        db.close()
