from datetime import datetime, timedelta
from typing import Callable

import structlog

from eventlens.core.errors import not_found, validation_error
from eventlens.core.timeutil import ONE_MICROSECOND, utcnow
from eventlens.schemas.privacy import (
    CleanupResult,
    ErasureResult,
    ExportedEvent,
    PrincipalExport,
    PrincipalSummary,
)
from eventlens.services.event_store import EventFilter, EventStore
from eventlens.services.rollup import RollupMaintainer

logger = structlog.get_logger()


class PrivacyService:
    """Per-principal access and erasure, and age-based retention"""

    def __init__(self, store: EventStore, rollups: RollupMaintainer, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.rollups = rollups
        self.clock = clock

    def principal_summary(self, principal_id: str) -> PrincipalSummary:
        flt = EventFilter(principal_id=principal_id)
        event_count = self.store.count(flt)
        if not event_count:
            raise not_found(f"No data for principal {principal_id}", principal_id=principal_id)

        [first] = list(self.store.scan(EventFilter(principal_id=principal_id, limit=1)))
        [last] = list(self.store.scan(EventFilter(principal_id=principal_id, limit=1, descending=True)))

        return PrincipalSummary(
            principal_id=principal_id,
            event_count=event_count,
            session_count=self.store.distinct_sessions(principal_id),
            first_event=first.occurred_at,
            last_event=last.occurred_at,
            event_names=sorted(name for name, _ in self.store.name_counts(flt)),
        )

    def export_principal(self, principal_id: str) -> PrincipalExport:
        """All events of a principal, oldest first, ready to be re-ingested as a batch"""
        events = [
            ExportedEvent(
                name=record.name,
                properties=record.properties,
                session_id=record.session_id,
                principal_id=record.principal_id,
                timestamp=record.occurred_at.isoformat(),
            )
            for record in self.store.scan(EventFilter(principal_id=principal_id))
        ]
        if not events:
            raise not_found(f"No data for principal {principal_id}", principal_id=principal_id)

        logger.info("principal_exported", principal_id=principal_id, events=len(events))
        return PrincipalExport(
            principal_id=principal_id,
            exported_at=self.clock(),
            event_count=len(events),
            events=events,
        )

    def erase_principal(self, principal_id: str) -> ErasureResult:
        if not self.store.count(EventFilter(principal_id=principal_id)):
            raise not_found(f"No data for principal {principal_id}", principal_id=principal_id)

        deleted = self.rollups.rebuild_around(
            lambda: self.store.delete_events(EventFilter(principal_id=principal_id))
        )
        logger.info("principal_erased", principal_id=principal_id, events_deleted=deleted)
        return ErasureResult(principal_id=principal_id, events_deleted=deleted)

    def cleanup(self, retention_days: int) -> CleanupResult:
        """Delete events older than the retention period and sessions idle since then"""
        if retention_days < 1:
            raise validation_error("retention_days must be at least 1", retention_days=retention_days)

        cutoff = self.clock() - timedelta(days=retention_days)

        def purge() -> tuple[int, int]:
            events = self.store.delete_events(EventFilter(end=cutoff - ONE_MICROSECOND))
            sessions = self.store.delete_sessions_inactive_since(cutoff)
            return events, sessions

        events_deleted, sessions_deleted = self.rollups.rebuild_around(purge)
        logger.info(
            "retention_cleanup_completed",
            cutoff=cutoff.isoformat(),
            events_deleted=events_deleted,
            sessions_deleted=sessions_deleted
        )
        return CleanupResult(cutoff=cutoff, events_deleted=events_deleted, sessions_deleted=sessions_deleted)
