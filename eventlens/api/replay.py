from fastapi import APIRouter, Depends, Query

from eventlens.api.deps import get_services, query_window, require_api_key
from eventlens.core.container import Services
from eventlens.core.timeutil import TimeWindow
from eventlens.schemas.replay import PrincipalJourney, ReplayEventList, SessionReplay, Timeline

router = APIRouter(prefix="/api/replay", tags=["replay"], dependencies=[Depends(require_api_key)])


@router.get("/sessions/{session_id}", response_model=SessionReplay)
def replay_session(session_id: str, services: Services = Depends(get_services)):
    """Every event of a session in order, with time since the first one"""
    return services.replay.session_replay(session_id)


@router.get("/principals/{principal_id}", response_model=PrincipalJourney)
def replay_principal(
        principal_id: str,
        limit: int | None = Query(default=None, ge=1, le=1000, description="Maximum number of sessions"),
        services: Services = Depends(get_services),
):
    return services.replay.principal_journey(principal_id, limit=limit)


@router.get("/events", response_model=ReplayEventList)
def replay_events(
        window: TimeWindow = Depends(query_window),
        principal_id: str | None = Query(default=None, alias="principalId"),
        session_id: str | None = Query(default=None, alias="sessionId"),
        event_types: list[str] | None = Query(default=None, alias="eventTypes"),
        limit: int | None = Query(default=None, ge=1),
        services: Services = Depends(get_services),
):
    """
    Events of a window in order, annotated for replay.

    - **eventTypes**: Repeat the parameter to include several names
    - **limit**: Capped at the configured maximum
    """
    events = services.replay.events_for_replay(
        window,
        principal_id=principal_id,
        session_id=session_id,
        names=event_types,
        limit=limit or services.settings.default_scan_limit,
    )
    return ReplayEventList(events=events, count=len(events))


@router.get("/timeline", response_model=Timeline)
def timeline(
        window: TimeWindow = Depends(query_window),
        bucket_size_ms: int = Query(default=60000, alias="bucketSizeMs"),
        services: Services = Depends(get_services),
):
    """Sparse event counts per fixed-width bucket, anchored at startDate"""
    return services.replay.timeline(window, bucket_size_ms)
