from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import JSONResponse
import structlog

from eventlens.api.deps import get_services, optional_query_bounds, require_api_key
from eventlens.core.container import Services
from eventlens.core.errors import not_found, validation_error
from eventlens.schemas.event import (
    BatchIngestResponse,
    BatchItemFailure,
    BatchItemSuccess,
    EventCreate,
    EventIngestResponse,
    EventListResponse,
    EventResponse,
    SessionResponse,
)
from eventlens.services.event_store import EventFilter

logger = structlog.get_logger()
router = APIRouter(prefix="/api/events", tags=["events"], dependencies=[Depends(require_api_key)])
sessions_router = APIRouter(prefix="/api/sessions", tags=["events"], dependencies=[Depends(require_api_key)])


@router.post("", response_model=EventIngestResponse, status_code=status.HTTP_201_CREATED)
def create_event(event: EventCreate, services: Services = Depends(get_services)):
    """
    Ingest a single event.

    - **name**: Event name (letters, digits, `_`, `.`, `-`)
    - **properties**: Flat property bag (max 50 keys)
    - **sessionId** / **principalId**: Optional identifiers
    - **timestamp**: ISO 8601; falls back to ingestion time when missing or unparseable
    """
    result = services.ingestion.ingest(event)
    return EventIngestResponse(event_id=result.event_id)


@router.post(
    "/batch",
    response_model=BatchIngestResponse,
    status_code=status.HTTP_201_CREATED,
    responses={207: {"model": BatchIngestResponse, "description": "Some events failed"}},
)
def create_events_batch(payload: dict[str, Any] = Body(...), services: Services = Depends(get_services)):
    """
    Ingest a batch of events.

    The batch is validated as a unit: one invalid event rejects all of them
    with per-index errors. Items that fail at the store are reported
    individually and the response status becomes 207.
    """
    events = payload.get("events")
    if not isinstance(events, list):
        raise validation_error("events must be an array", field="events")

    validated = services.ingestion.validate_batch(events)
    result = services.ingestion.ingest_batch(validated)

    body = BatchIngestResponse(
        event_ids=result.event_ids,
        count=result.count,
        sessions_updated=result.sessions_updated,
        succeeded=[BatchItemSuccess(index=i, event_id=event_id) for i, event_id in result.succeeded],
        failed=[BatchItemFailure(index=i, reason=reason) for i, reason in result.failed],
    )
    status_code = status.HTTP_207_MULTI_STATUS if result.partial else status.HTTP_201_CREATED
    return JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True, mode="json"))


@router.get("", response_model=EventListResponse)
def list_events(
        bounds: tuple[datetime | None, datetime | None] = Depends(optional_query_bounds),
        name: str | None = Query(default=None),
        session_id: str | None = Query(default=None, alias="sessionId"),
        principal_id: str | None = Query(default=None, alias="principalId"),
        limit: int | None = Query(default=None, ge=1),
        offset: int = Query(default=0, ge=0),
        services: Services = Depends(get_services),
):
    """
    List events, newest first.

    - **limit**: Page size; capped at the configured maximum
    - **offset**: Number of events to skip
    """
    start, end = bounds
    effective = services.store.effective_limit(limit or services.settings.default_scan_limit)
    flt = EventFilter(
        start=start,
        end=end,
        name=name,
        session_id=session_id,
        principal_id=principal_id,
        limit=effective,
        offset=offset,
        descending=True,
    )
    events = [EventResponse.model_validate(record) for record in services.store.scan(flt)]
    return EventListResponse(events=events, count=len(events), offset=offset, limit=effective)


@sessions_router.get("/{session_id}", response_model=SessionResponse)
def get_session(session_id: str, services: Services = Depends(get_services)):
    """Get the aggregate of one session"""
    session = services.store.get_session(session_id)
    if session is None:
        raise not_found(f"Session {session_id} not found", session_id=session_id)
    return SessionResponse.model_validate(session)
