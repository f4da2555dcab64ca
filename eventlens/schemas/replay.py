from datetime import datetime
from typing import Any

from eventlens.schemas.event import CamelModel


class ReplayEvent(CamelModel):
    id: int
    name: str
    properties: dict[str, Any]
    session_id: str | None
    principal_id: str | None
    timestamp: datetime
    relative_time_ms: int


class SessionReplay(CamelModel):
    session_id: str
    start_time: datetime
    end_time: datetime
    event_count: int
    duration_ms: int
    events: list[ReplayEvent]


class PrincipalJourney(CamelModel):
    principal_id: str
    session_count: int
    total_events: int
    sessions: list[SessionReplay]


class ReplayEventList(CamelModel):
    events: list[ReplayEvent]
    count: int


class TimelineBucket(CamelModel):
    bucket_start: datetime
    bucket_end: datetime
    event_count: int
    event_types: dict[str, int]


class Timeline(CamelModel):
    buckets: list[TimelineBucket]
    bucket_size_ms: int
    start_date: datetime
    end_date: datetime
