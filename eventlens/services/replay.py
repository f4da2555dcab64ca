from datetime import timedelta
from typing import Iterable, Sequence

import structlog

from eventlens.core.errors import not_found, validation_error
from eventlens.core.timeutil import TimeWindow, to_millis
from eventlens.schemas.replay import (
    PrincipalJourney,
    ReplayEvent,
    SessionReplay,
    Timeline,
    TimelineBucket,
)
from eventlens.services.event_store import EventFilter, EventRecord, EventStore

logger = structlog.get_logger()


class ReplayBuilder:
    """Ordered event sequences for sessions and principals, and bucketed timelines"""

    def __init__(self, store: EventStore, max_timeline_buckets: int = 10000):
        self.store = store
        self.max_timeline_buckets = max_timeline_buckets

    def session_replay(self, session_id: str) -> SessionReplay:
        replay = self._replay(session_id)
        if replay is None:
            raise not_found(f"Session {session_id} not found", session_id=session_id)
        return replay

    def principal_journey(self, principal_id: str, limit: int | None = None) -> PrincipalJourney:
        """Every session of a principal, replayed in order of first activity"""
        session_ids = self.store.session_ids_for_principal(principal_id, limit=limit)
        sessions = [replay for replay in map(self._replay, session_ids) if replay is not None]
        if not sessions:
            raise not_found(f"No sessions for principal {principal_id}", principal_id=principal_id)

        return PrincipalJourney(
            principal_id=principal_id,
            session_count=len(sessions),
            total_events=sum(s.event_count for s in sessions),
            sessions=sessions,
        )

    def events_for_replay(
            self,
            window: TimeWindow,
            *,
            principal_id: str | None = None,
            session_id: str | None = None,
            names: Sequence[str] | None = None,
            limit: int | None = None,
    ) -> list[ReplayEvent]:
        flt = EventFilter.for_window(
            window,
            principal_id=principal_id,
            session_id=session_id,
            names=tuple(names) if names else None,
            limit=limit,
        )
        return _annotate(self.store.scan(flt))

    def timeline(self, window: TimeWindow, bucket_size_ms: int = 60000) -> Timeline:
        """
        Sparse fixed-width buckets anchored at the window start.

        An event at ``t`` lands in bucket ``floor((t - start) / size)``;
        buckets without events are omitted.
        """
        if bucket_size_ms <= 0:
            raise validation_error("bucketSizeMs must be positive", field="bucketSizeMs")

        size = timedelta(milliseconds=bucket_size_ms)
        bucket_count = -(-(window.duration + timedelta(microseconds=1)) // size)
        if bucket_count > self.max_timeline_buckets:
            raise validation_error(
                f"Timeline would need {bucket_count} buckets; the maximum is {self.max_timeline_buckets}",
                field="bucketSizeMs",
                buckets=bucket_count
            )

        buckets: dict[int, TimelineBucket] = {}
        for event in self.store.scan(EventFilter.for_window(window)):
            index = (event.occurred_at - window.start) // size
            bucket = buckets.get(index)
            if bucket is None:
                bucket_start = window.start + index * size
                bucket = buckets[index] = TimelineBucket(
                    bucket_start=bucket_start,
                    bucket_end=bucket_start + size,
                    event_count=0,
                    event_types={},
                )
            bucket.event_count += 1
            bucket.event_types[event.name] = bucket.event_types.get(event.name, 0) + 1

        logger.debug("timeline_built", buckets=len(buckets), bucket_size_ms=bucket_size_ms)
        return Timeline(
            buckets=[buckets[index] for index in sorted(buckets)],
            bucket_size_ms=bucket_size_ms,
            start_date=window.start,
            end_date=window.end,
        )

    def _replay(self, session_id: str) -> SessionReplay | None:
        events = _annotate(self.store.scan(EventFilter(session_id=session_id)))
        if not events:
            return None

        start, end = events[0].timestamp, events[-1].timestamp
        return SessionReplay(
            session_id=session_id,
            start_time=start,
            end_time=end,
            event_count=len(events),
            duration_ms=to_millis(end - start),
            events=events,
        )


def _annotate(records: Iterable[EventRecord]) -> list[ReplayEvent]:
    events = []
    first = None
    for record in records:
        if first is None:
            first = record.occurred_at
        events.append(ReplayEvent(
            id=record.id,
            name=record.name,
            properties=record.properties,
            session_id=record.session_id,
            principal_id=record.principal_id,
            timestamp=record.occurred_at,
            relative_time_ms=to_millis(record.occurred_at - first),
        ))
    return events
