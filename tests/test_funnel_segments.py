from datetime import datetime, timedelta

import pytest

from funnel_analytics.errors import InvalidInputError
from funnel_analytics.services_funnel_segments import analyze_segments, segment_key, top_drop_off_step
from funnel_analytics.services_funnel_sessions import group_events_into_sessions
from funnel_analytics.services_funnel_store import EventRecord, FunnelStep


T0 = datetime(2024, 5, 1, 8, 0, 0)
STEPS = [FunnelStep("Visit", 0), FunnelStep("Cart", 1), FunnelStep("Pay", 2)]


def _session_events(session_id: str, reached: int, metadata=None, seconds_per_step: int = 30):
    out = []
    for n in range(reached + 1):
        out.append(
            EventRecord(
                session_id,
                STEPS[n].name,
                n,
                T0 + timedelta(seconds=n * seconds_per_step),
                metadata if n == 0 else {"device": "changed-later"},
            )
        )
    return out


def test_sessions_without_metadata_fall_into_unknown():
    events = _session_events("a", 2, {"device": "ios"}) + _session_events("b", 0, None) + _session_events("c", 1, {"browser": "x"})
    segments = analyze_segments(STEPS, group_events_into_sessions(events), "device")
    by_name = {s["segment"]: s for s in segments}
    assert set(by_name) == {"ios", "Unknown"}
    assert by_name["Unknown"]["total_users"] == 2
    assert by_name["ios"]["total_users"] == 1
    assert sum(s["total_users"] for s in segments) == 3


def test_segment_value_comes_from_first_event_only():
    sessions = group_events_into_sessions(_session_events("a", 2, {"device": "web"}))
    assert segment_key(sessions["a"], "device") == "web"


def test_segment_keys_stringify_scalars():
    events = [EventRecord("n", "Visit", 0, T0, {"plan": 3}), EventRecord("b", "Visit", 0, T0, {"plan": False})]
    sessions = group_events_into_sessions(events)
    assert segment_key(sessions["n"], "plan") == "3"
    assert segment_key(sessions["b"], "plan") == "false"


def test_segment_metrics_and_ordering():
    events = []
    for i in range(4):
        events += _session_events(f"web-{i}", 2 if i == 0 else 0, {"device": "web"})
    for i in range(2):
        events += _session_events(f"ios-{i}", 2, {"device": "ios"}, seconds_per_step=50)
    segments = analyze_segments(STEPS, group_events_into_sessions(events), "device")

    assert [s["segment"] for s in segments] == ["web", "ios"]
    web, ios = segments
    assert web["total_users"] == 4
    assert web["completion_rate"] == 25.0
    assert web["avg_completion_time"] == 60.0
    assert web["top_drop_off_step"] == "Cart"
    assert ios["completion_rate"] == 100.0
    assert ios["avg_completion_time"] == 100.0
    assert ios["top_drop_off_step"] == "None"


def test_top_drop_off_tie_goes_to_first_encountered():
    events = _session_events("a", 1) + _session_events("b", 0)
    sessions = group_events_into_sessions(events)
    assert top_drop_off_step(list(sessions.values()), STEPS) == "Pay"

    reversed_order = [sessions["b"], sessions["a"]]
    assert top_drop_off_step(reversed_order, STEPS) == "Cart"


def test_missing_segment_by_rejected():
    with pytest.raises(InvalidInputError):
        analyze_segments(STEPS, {}, "  ")
