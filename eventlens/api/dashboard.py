from fastapi import APIRouter, Depends, Query

from eventlens.api.deps import get_services, query_window, require_api_key
from eventlens.core.container import Services
from eventlens.core.timeutil import TimeWindow
from eventlens.schemas.dashboard import (
    DashboardSummary,
    EventsOverTime,
    RefreshResponse,
    RollupStateResponse,
    RollupStatusResponse,
)

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"], dependencies=[Depends(require_api_key)])
rollups_router = APIRouter(prefix="/api/rollups", tags=["rollups"], dependencies=[Depends(require_api_key)])


@router.get("/summary", response_model=DashboardSummary)
def summary(window: TimeWindow = Depends(query_window), services: Services = Depends(get_services)):
    """
    Totals for a window.

    Served from rollups when they provably match the live data
    (`optimized: true`), otherwise from raw events.
    """
    return services.dashboard.summary(window)


@router.get("/events-over-time", response_model=EventsOverTime)
def events_over_time(
        window: TimeWindow = Depends(query_window),
        interval: str = Query(default="day", description="hour or day"),
        services: Services = Depends(get_services),
):
    return services.dashboard.events_over_time(window, interval)


@rollups_router.post("/refresh", response_model=RefreshResponse)
def refresh_rollups(
        wait: bool = Query(default=False, description="Wait for an in-flight refresh instead of returning at once"),
        services: Services = Depends(get_services),
):
    """
    Recompute the hour and day rollups.

    Concurrent triggers collapse into one refresh; the others report `ran: false`.
    """
    result = services.rollups.refresh(wait=wait)
    return RefreshResponse(
        success=True,
        ran=result.ran,
        refreshed_at=result.refreshed_at,
        max_event_id=result.max_event_id,
        event_count=result.event_count,
        hour_buckets=result.hour_buckets,
        day_buckets=result.day_buckets,
        duration_ms=result.duration_ms,
    )


@rollups_router.get("/status", response_model=RollupStatusResponse)
def rollup_status(services: Services = Depends(get_services)):
    """Last refresh per granularity and whether it still matches the live data"""
    return RollupStatusResponse(rollups=[
        RollupStateResponse(
            granularity=state.granularity,
            refreshed_at=state.refreshed_at,
            max_event_id=state.max_event_id,
            event_count=state.event_count,
            coverage_start=state.coverage_start,
            fresh=state.fresh,
        )
        for state in services.rollups.status()
    ])
