import re
from datetime import date, datetime, time, timezone
from typing import Annotated, Any, Union

from pydantic import PlainValidator

from eventlens.core.errors import validation_error
from eventlens.core.timeutil import TimeWindow, ensure_utc

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_bound(value: Any) -> date | datetime:
    """
    Parse a window bound.

    ``YYYY-MM-DD`` stays a date (expanded to the whole day by TimeWindow);
    anything else must be an ISO 8601 datetime.
    """
    if isinstance(value, (date, datetime)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if _DATE_ONLY.match(text):
            return date.fromisoformat(text)
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    raise ValueError("expected an ISO 8601 date or datetime")


DateBound = Annotated[Union[datetime, date], PlainValidator(parse_bound)]


def window_from_params(start: str, end: str, start_field: str = "startDate",
                       end_field: str = "endDate") -> TimeWindow:
    """Build a TimeWindow from raw query-string bounds"""
    bounds = []
    for raw, field in ((start, start_field), (end, end_field)):
        try:
            bounds.append(parse_bound(raw))
        except ValueError:
            raise validation_error(f"{field} must be an ISO 8601 date or datetime", field=field)
    return TimeWindow.from_dates(bounds[0], bounds[1])


def bounds_from_params(start: str | None, end: str | None) -> tuple[datetime | None, datetime | None]:
    """Like window_from_params, but either bound may be left open"""
    if start is not None and end is not None:
        window = window_from_params(start, end)
        return window.start, window.end
    return _open_bound(start, "startDate", time.min), _open_bound(end, "endDate", time.max)


def _open_bound(raw: str | None, field: str, day_edge: time) -> datetime | None:
    if raw is None:
        return None
    try:
        value = parse_bound(raw)
    except ValueError:
        raise validation_error(f"{field} must be an ISO 8601 date or datetime", field=field)
    if not isinstance(value, datetime):
        value = datetime.combine(value, day_edge, tzinfo=timezone.utc)
    return ensure_utc(value)
