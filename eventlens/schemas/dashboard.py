from datetime import datetime
from typing import Literal

from eventlens.schemas.event import CamelModel


class TopEvent(CamelModel):
    name: str
    count: int


class DashboardSummary(CamelModel):
    period_start: datetime
    period_end: datetime
    total_events: int
    unique_sessions: int
    unique_principals: int
    top_events: list[TopEvent]
    optimized: bool


class SeriesPoint(CamelModel):
    period: datetime
    event_count: int
    event_types: dict[str, int]


class EventsOverTime(CamelModel):
    interval: Literal["hour", "day"]
    points: list[SeriesPoint]
    optimized: bool


class RefreshResponse(CamelModel):
    success: bool
    ran: bool
    refreshed_at: datetime | None = None
    max_event_id: int = 0
    event_count: int = 0
    hour_buckets: int = 0
    day_buckets: int = 0
    duration_ms: float = 0.0


class RollupStateResponse(CamelModel):
    granularity: str
    refreshed_at: datetime
    max_event_id: int
    event_count: int
    coverage_start: datetime | None
    fresh: bool


class RollupStatusResponse(CamelModel):
    rollups: list[RollupStateResponse]
