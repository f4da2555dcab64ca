from collections import Counter

import structlog

from eventlens.core.errors import validation_error
from eventlens.core.timeutil import Granularity, TimeWindow, truncate
from eventlens.schemas.dashboard import DashboardSummary, EventsOverTime, SeriesPoint, TopEvent
from eventlens.services.event_store import EventFilter, EventStore
from eventlens.services.rollup import RollupMaintainer

logger = structlog.get_logger()

TOP_EVENTS = 10
SERIES_INTERVALS = (Granularity.HOUR, Granularity.DAY)


class DashboardService:
    """
    Overview numbers for a window.

    Event totals come from the rollups whenever they provably match the
    live data; everything else is computed from raw events.
    """

    def __init__(self, store: EventStore, rollups: RollupMaintainer):
        self.store = store
        self.rollups = rollups

    def summary(self, window: TimeWindow) -> DashboardSummary:
        flt = EventFilter.for_window(window)

        totals = self._rollup_totals(window)
        if totals is not None:
            total_events = sum(totals.values())
            ranked = sorted(
                ((name, count) for name, count in totals.items() if count),
                key=lambda item: (-item[1], item[0])
            )[:TOP_EVENTS]
        else:
            total_events = self.store.count(flt)
            ranked = self.store.name_counts(flt, limit=TOP_EVENTS)

        # Distinct counts do not add up across buckets, so they always come from raw events
        summary = DashboardSummary(
            period_start=window.start,
            period_end=window.end,
            total_events=total_events,
            unique_sessions=self.store.count_distinct(flt, "session_id"),
            unique_principals=self.store.count_distinct(flt, "principal_id"),
            top_events=[TopEvent(name=name, count=count) for name, count in ranked],
            optimized=totals is not None,
        )
        logger.info("dashboard_summary", total_events=total_events, optimized=summary.optimized)
        return summary

    def events_over_time(self, window: TimeWindow, interval: str = "day") -> EventsOverTime:
        try:
            granularity = Granularity(interval)
        except ValueError:
            granularity = None
        if granularity not in SERIES_INTERVALS:
            raise validation_error("interval must be 'hour' or 'day'", field="interval", interval=interval)

        points: dict = {}
        buckets = self.rollups.buckets(window, granularity)
        if buckets is not None:
            for bucket in buckets:
                types = points.setdefault(bucket.bucket_start, Counter())
                types[bucket.event_name] += bucket.event_count
        else:
            for event in self.store.scan(EventFilter.for_window(window)):
                types = points.setdefault(truncate(event.occurred_at, granularity), Counter())
                types[event.name] += 1

        return EventsOverTime(
            interval=granularity.value,
            points=[
                SeriesPoint(period=period, event_count=sum(types.values()), event_types=dict(types))
                for period, types in sorted(points.items())
            ],
            optimized=buckets is not None,
        )

    def _rollup_totals(self, window: TimeWindow) -> dict[str, int] | None:
        for granularity in (Granularity.DAY, Granularity.HOUR):
            totals = self.rollups.event_totals(window, granularity)
            if totals is not None:
                return totals
        return None
