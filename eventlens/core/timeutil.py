"""
Time helpers shared by the store, the analyzers and the rollups.

All timestamps inside the engine are timezone-aware UTC datetimes.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum

from eventlens.core.errors import validation_error

ONE_MICROSECOND = timedelta(microseconds=1)


class Granularity(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


# Finest first; used to answer "requested or finer" questions
ROLLUP_GRANULARITIES = (Granularity.HOUR, Granularity.DAY)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value) -> datetime | None:
    """Parse a client supplied timestamp, returning None when unusable"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def to_millis(delta: timedelta) -> int:
    return int(delta / timedelta(milliseconds=1))


def truncate(value: datetime, granularity: Granularity) -> datetime:
    """Floor a timestamp to the start of its bucket (weeks start on Monday)"""
    value = ensure_utc(value)
    if granularity == Granularity.HOUR:
        return value.replace(minute=0, second=0, microsecond=0)
    day = value.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity == Granularity.DAY:
        return day
    if granularity == Granularity.WEEK:
        return day - timedelta(days=day.weekday())
    return day.replace(day=1)


def add_periods(start: datetime, granularity: Granularity, count: int) -> datetime:
    if granularity == Granularity.HOUR:
        return start + timedelta(hours=count)
    if granularity == Granularity.DAY:
        return start + timedelta(days=count)
    if granularity == Granularity.WEEK:
        return start + timedelta(weeks=count)

    month_index = start.month - 1 + count
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    return start.replace(year=year, month=month, day=1)


def is_finer_or_equal(candidate: Granularity, requested: Granularity) -> bool:
    order = [Granularity.HOUR, Granularity.DAY, Granularity.WEEK, Granularity.MONTH]
    return order.index(candidate) <= order.index(requested)


@dataclass(frozen=True)
class TimeWindow:
    """Closed time range [start, end]"""

    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))
        if self.start > self.end:
            raise validation_error("startDate must be before or equal to endDate", field="startDate")

    @classmethod
    def from_dates(cls, start: date | datetime, end: date | datetime) -> "TimeWindow":
        """Date-only bounds expand to the whole UTC day"""
        if not isinstance(start, datetime):
            start = datetime.combine(start, time.min, tzinfo=timezone.utc)
        if not isinstance(end, datetime):
            end = datetime.combine(end, time.max, tzinfo=timezone.utc)
        return cls(start, end)

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def contains(self, value: datetime) -> bool:
        return self.start <= ensure_utc(value) <= self.end

    def is_aligned(self, granularity: Granularity) -> bool:
        """True when the window is exactly a run of whole buckets"""
        exclusive_end = self.end + ONE_MICROSECOND
        return (
            truncate(self.start, granularity) == self.start
            and truncate(exclusive_end, granularity) == exclusive_end
        )
