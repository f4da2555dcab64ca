from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response

from eventlens.api.deps import get_services, optional_query_bounds, require_api_key
from eventlens.core.container import Services
from eventlens.core.timeutil import utcnow
from eventlens.services.event_store import EventFilter

router = APIRouter(prefix="/api/export", tags=["export"], dependencies=[Depends(require_api_key)])


@router.get("")
def export_events(
        format: Literal["json", "csv"] = Query(default="json"),
        bounds: tuple[datetime | None, datetime | None] = Depends(optional_query_bounds),
        name: str | None = Query(default=None),
        principal_id: str | None = Query(default=None, alias="principalId"),
        limit: int | None = Query(default=None, ge=1),
        services: Services = Depends(get_services),
):
    """
    Download events as JSON or CSV, newest first.

    - **format**: json (default) or csv
    - **limit**: Default 10000, at most the configured export maximum
    """
    start, end = bounds
    exporter = services.exporter
    records = exporter.records(EventFilter(start=start, end=end, name=name, principal_id=principal_id), limit)

    exported_at = utcnow()
    filename = f"events-export-{exported_at.strftime('%Y%m%dT%H%M%S')}.{format}"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}

    if format == "csv":
        return Response(content=exporter.to_csv(records), media_type="text/csv", headers=headers)

    events = exporter.to_json_rows(records)
    return JSONResponse(
        content={"exportedAt": exported_at.isoformat(), "count": len(events), "events": events},
        headers=headers,
    )
