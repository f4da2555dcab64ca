from datetime import datetime
from typing import Any

from eventlens.schemas.event import CamelModel


class PrincipalSummary(CamelModel):
    principal_id: str
    event_count: int
    session_count: int
    first_event: datetime
    last_event: datetime
    event_names: list[str]


class ExportedEvent(CamelModel):
    """Same shape the ingest endpoints accept"""

    name: str
    properties: dict[str, Any]
    session_id: str | None
    principal_id: str | None
    timestamp: str


class PrincipalExport(CamelModel):
    principal_id: str
    exported_at: datetime
    event_count: int
    events: list[ExportedEvent]


class ErasureResult(CamelModel):
    principal_id: str
    events_deleted: int


class CleanupResult(CamelModel):
    cutoff: datetime
    events_deleted: int
    sessions_deleted: int
