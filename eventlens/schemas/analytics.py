from typing import Any, Literal

from pydantic import Field

from eventlens.core.timeutil import TimeWindow
from eventlens.schemas.common import DateBound
from eventlens.schemas.event import EVENT_NAME_PATTERN, CamelModel, PropertyValue


class FunnelStep(CamelModel):
    """One position in a funnel: an event name plus property equality filters"""

    event_name: str = Field(..., min_length=1, max_length=255, pattern=EVENT_NAME_PATTERN)
    filters: dict[str, PropertyValue] = Field(default_factory=dict)


class FunnelQuery(CamelModel):
    steps: list[FunnelStep] = Field(..., min_length=2)
    start_date: DateBound
    end_date: DateBound
    group_by: str | None = Field(default=None, max_length=255)

    def window(self) -> TimeWindow:
        return TimeWindow.from_dates(self.start_date, self.end_date)


class FunnelStepResult(CamelModel):
    step: int
    event_name: str
    count: int
    conversion_rate: float
    dropoff_rate: float


class FunnelGroup(CamelModel):
    group: Any
    steps: list[FunnelStepResult]
    total_started: int
    total_completed: int
    overall_conversion_rate: float


class FunnelResult(CamelModel):
    steps: list[FunnelStepResult]
    total_started: int
    total_completed: int
    overall_conversion_rate: float
    groups: list[FunnelGroup] | None = None
    optimized: bool = False


class CohortQuery(CamelModel):
    cohort_event: str = Field(..., min_length=1, max_length=255, pattern=EVENT_NAME_PATTERN)
    return_event: str = Field(..., min_length=1, max_length=255, pattern=EVENT_NAME_PATTERN)
    start_date: DateBound
    end_date: DateBound
    granularity: Literal["day", "week", "month"] = "week"
    periods: int = Field(default=12, ge=1, le=52)

    def window(self) -> TimeWindow:
        return TimeWindow.from_dates(self.start_date, self.end_date)


class CohortPeriod(CamelModel):
    period: int
    count: int
    retention_rate: float


class CohortRow(CamelModel):
    cohort_date: str
    cohort_size: int
    periods: list[CohortPeriod]


class CohortResult(CamelModel):
    cohorts: list[CohortRow]
    total_users: int
    average_retention: list[float]
    granularity: str
