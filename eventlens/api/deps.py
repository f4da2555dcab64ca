from datetime import datetime

from fastapi import Header, HTTPException, Query, Request, status

from eventlens.core.container import Services
from eventlens.core.timeutil import TimeWindow
from eventlens.schemas.common import bounds_from_params, window_from_params


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_api_key(request: Request, x_api_key: str | None = Header(default=None)) -> str | None:
    """Resolve the caller; a no-op when no API keys are configured"""
    verifier = get_services(request).verifier
    if not verifier.enabled:
        return None

    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    principal = verifier.verify(x_api_key)
    if principal is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key")
    return principal


def query_window(
        start_date: str = Query(..., alias="startDate", description="ISO date or datetime"),
        end_date: str = Query(..., alias="endDate", description="ISO date or datetime; dates cover the whole day"),
) -> TimeWindow:
    return window_from_params(start_date, end_date)


def optional_query_bounds(
        start_date: str | None = Query(default=None, alias="startDate"),
        end_date: str | None = Query(default=None, alias="endDate"),
) -> tuple[datetime | None, datetime | None]:
    return bounds_from_params(start_date, end_date)
