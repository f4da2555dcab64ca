from datetime import date, datetime, timedelta, timezone

import pytest

from eventlens.core.errors import AnalyticsError, ErrorKind
from eventlens.core.timeutil import Granularity, TimeWindow, add_periods, parse_timestamp, truncate
from eventlens.schemas.common import bounds_from_params, window_from_params


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_parse_timestamp():
    assert parse_timestamp("2024-03-01T10:00:00Z") == utc(2024, 3, 1, 10)
    assert parse_timestamp("2024-03-01T12:00:00+02:00") == utc(2024, 3, 1, 10)
    assert parse_timestamp("2024-03-01T10:00:00") == utc(2024, 3, 1, 10)
    assert parse_timestamp("not a date") is None
    assert parse_timestamp("") is None
    assert parse_timestamp(None) is None


def test_truncate():
    moment = utc(2024, 3, 6, 15, 42, 7)  # a Wednesday

    assert truncate(moment, Granularity.HOUR) == utc(2024, 3, 6, 15)
    assert truncate(moment, Granularity.DAY) == utc(2024, 3, 6)
    assert truncate(moment, Granularity.WEEK) == utc(2024, 3, 4)
    assert truncate(moment, Granularity.MONTH) == utc(2024, 3, 1)


def test_add_months_crosses_years():
    assert add_periods(utc(2024, 11, 1), Granularity.MONTH, 3) == utc(2025, 2, 1)
    assert add_periods(utc(2024, 3, 4), Granularity.WEEK, 2) == utc(2024, 3, 18)


def test_date_bounds_cover_whole_days():
    window = TimeWindow.from_dates(date(2024, 3, 1), date(2024, 3, 2))

    assert window.start == utc(2024, 3, 1)
    assert window.end == utc(2024, 3, 2, 23, 59, 59, 999999)
    assert window.is_aligned(Granularity.DAY)
    assert window.is_aligned(Granularity.HOUR)
    assert not window.is_aligned(Granularity.WEEK)


def test_inverted_window_is_rejected():
    with pytest.raises(AnalyticsError) as exc_info:
        TimeWindow(utc(2024, 3, 2), utc(2024, 3, 1))

    assert exc_info.value.kind == ErrorKind.VALIDATION


def test_window_from_query_params():
    window = window_from_params("2024-03-01", "2024-03-01T12:00:00Z")
    assert window.start == utc(2024, 3, 1)
    assert window.end == utc(2024, 3, 1, 12)

    with pytest.raises(AnalyticsError):
        window_from_params("yesterday", "2024-03-01")


def test_open_bounds():
    start, end = bounds_from_params(None, "2024-03-01")

    assert start is None
    assert end == utc(2024, 3, 1) + timedelta(days=1) - timedelta(microseconds=1)
