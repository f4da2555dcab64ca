from datetime import date, datetime, timezone

import pytest

from eventlens.core.errors import AnalyticsError
from eventlens.core.timeutil import TimeWindow

WEEK = TimeWindow.from_dates(date(2024, 3, 1), date(2024, 3, 7))


def seed(ingest):
    ingest("view", "2024-03-01T10:00:00Z", session="s1", principal="u1")
    ingest("view", "2024-03-01T10:30:00Z", session="s1", principal="u1")
    ingest("click", "2024-03-01T11:00:00Z", session="s2", principal="u1")
    ingest("view", "2024-03-04T09:00:00Z", session="s3", principal="u2")
    ingest("view", "2024-03-08T09:00:00Z", session="s4", principal="u3")


def test_summary_from_raw_events(services, ingest):
    seed(ingest)

    summary = services.dashboard.summary(WEEK)

    assert not summary.optimized
    assert summary.total_events == 4
    assert summary.unique_sessions == 3
    assert summary.unique_principals == 2
    assert [(e.name, e.count) for e in summary.top_events] == [("view", 3), ("click", 1)]


def test_summary_from_fresh_rollups_matches_raw(services, ingest):
    seed(ingest)
    raw = services.dashboard.summary(WEEK)
    services.rollups.refresh()

    served = services.dashboard.summary(WEEK)

    assert served.optimized
    assert served.model_dump(exclude={"optimized"}) == raw.model_dump(exclude={"optimized"})


def test_events_over_time_same_with_and_without_rollups(services, ingest):
    seed(ingest)
    raw = services.dashboard.events_over_time(WEEK, "day")
    services.rollups.refresh()

    served = services.dashboard.events_over_time(WEEK, "day")

    assert not raw.optimized and served.optimized
    assert served.points == raw.points
    assert [(p.period.day, p.event_count) for p in served.points] == [(1, 3), (4, 1)]
    assert served.points[0].event_types == {"view": 2, "click": 1}


def test_events_over_time_hourly_is_sparse(services, ingest):
    seed(ingest)
    window = TimeWindow(datetime(2024, 3, 1, tzinfo=timezone.utc), datetime(2024, 3, 1, 23, 59, 59, tzinfo=timezone.utc))

    series = services.dashboard.events_over_time(window, "hour")

    assert [(p.period.hour, p.event_count) for p in series.points] == [(10, 2), (11, 1)]


def test_events_over_time_rejects_unknown_interval(services):
    with pytest.raises(AnalyticsError):
        services.dashboard.events_over_time(WEEK, "fortnight")
