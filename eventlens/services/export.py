import csv
from dataclasses import replace
import io
import json
from itertools import islice
from typing import Any, Iterator

import structlog

from eventlens.core.errors import validation_error
from eventlens.services.event_store import EventFilter, EventRecord, EventStore

logger = structlog.get_logger()

CSV_COLUMNS = ["id", "name", "properties", "session_id", "principal_id", "timestamp"]


class EventExporter:
    """Bulk export of raw events, newest first"""

    def __init__(self, store: EventStore, max_limit: int = 100000, default_limit: int = 10000):
        self.store = store
        self.max_limit = max_limit
        self.default_limit = default_limit

    def records(self, flt: EventFilter, limit: int | None = None) -> Iterator[EventRecord]:
        limit = self.default_limit if limit is None else limit
        if limit < 1:
            raise validation_error("limit must be positive", field="limit")
        limit = min(limit, self.max_limit)

        # The export bound replaces the store's page cap
        stream = self.store.scan(replace(flt, limit=None, offset=0, descending=True))
        try:
            yield from islice(stream, limit)
        finally:
            stream.close()

    def to_json_rows(self, records) -> list[dict[str, Any]]:
        return [
            {
                "id": record.id,
                "name": record.name,
                "properties": record.properties,
                "sessionId": record.session_id,
                "principalId": record.principal_id,
                "timestamp": record.occurred_at.isoformat(),
            }
            for record in records
        ]

    def to_csv(self, records) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_COLUMNS)

        rows = 0
        for record in records:
            writer.writerow([
                record.id,
                record.name,
                json.dumps(record.properties, separators=(",", ":"), sort_keys=True),
                record.session_id or "",
                record.principal_id or "",
                record.occurred_at.isoformat(),
            ])
            rows += 1

        logger.info("events_exported", format="csv", rows=rows)
        return buffer.getvalue()
