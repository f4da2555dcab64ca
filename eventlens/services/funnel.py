from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

import structlog

from eventlens.core.timeutil import Granularity, TimeWindow
from eventlens.schemas.analytics import (
    FunnelGroup,
    FunnelQuery,
    FunnelResult,
    FunnelStep,
    FunnelStepResult,
)
from eventlens.services.event_store import EventFilter, EventRecord, EventStore
from eventlens.services.rollup import RollupMaintainer

logger = structlog.get_logger()


@dataclass
class _Progress:
    """How far one session got, and when it got there"""

    reached: int = 0
    qualified_at: datetime | None = None
    group: Any = None


class FunnelAnalyzer:
    """
    Ordered conversion funnels.

    A session reaches step k when it has qualifying events for steps
    1..k at strictly increasing timestamps. Step i (i > 1) only counts an
    event later than the one that qualified step i-1.
    """

    def __init__(self, store: EventStore, rollups: RollupMaintainer | None = None):
        self.store = store
        self.rollups = rollups

    def analyze(self, query: FunnelQuery) -> FunnelResult:
        steps = list(query.steps)
        window = query.window()

        reachable, optimized = self._reachable_steps(window, steps)
        progress = self._walk(window, steps[:reachable], query.group_by) if reachable else {}

        counts = _step_counts(progress.values(), len(steps))
        result = FunnelResult(
            steps=_step_results(steps, counts),
            total_started=counts[0],
            total_completed=counts[-1],
            overall_conversion_rate=_rate(counts[-1], counts[0]),
            optimized=optimized,
        )

        if query.group_by:
            result.groups = self._groups(steps, progress)

        logger.info(
            "funnel_analyzed",
            steps=[step.event_name for step in steps],
            start=window.start.isoformat(),
            end=window.end.isoformat(),
            sessions=len(progress),
            counts=counts,
            optimized=optimized
        )
        return result

    def _reachable_steps(self, window: TimeWindow, steps: Sequence[FunnelStep]) -> tuple[int, bool]:
        """
        Number of leading steps worth walking.

        When rollups can serve the window, a step whose event never occurs
        there zeroes itself and everything after it without a scan.
        """
        if self.rollups is None:
            return len(steps), False

        names = sorted({step.event_name for step in steps})
        totals = None
        for granularity in (Granularity.DAY, Granularity.HOUR):
            totals = self.rollups.event_totals(window, granularity, names)
            if totals is not None:
                break

        if totals is None:
            return len(steps), False

        for index, step in enumerate(steps):
            if totals.get(step.event_name, 0) == 0:
                return index, True
        return len(steps), True

    def _walk(self, window: TimeWindow, steps: Sequence[FunnelStep], group_by: str | None) -> dict[str, _Progress]:
        names = tuple(sorted({step.event_name for step in steps}))
        flt = EventFilter.for_window(window, names=names, require_session=True)
        sessions: dict[str, _Progress] = {}

        for event in self.store.scan(flt):
            progress = sessions.get(event.session_id)
            if progress is None:
                if not _qualifies(steps[0], event):
                    continue
                progress = sessions[event.session_id] = _Progress()
            elif progress.reached == len(steps):
                continue

            if not _qualifies(steps[progress.reached], event):
                continue
            if progress.qualified_at is not None and event.occurred_at <= progress.qualified_at:
                continue

            if progress.reached == 0 and group_by:
                progress.group = event.properties.get(group_by)
            progress.reached += 1
            progress.qualified_at = event.occurred_at

        return sessions

    def _groups(self, steps: Sequence[FunnelStep], progress: dict[str, _Progress]) -> list[FunnelGroup]:
        buckets: dict[Any, list[_Progress]] = {}
        labels: dict[Any, Any] = {}
        for entry in progress.values():
            key = _group_key(entry.group)
            buckets.setdefault(key, []).append(entry)
            labels[key] = entry.group

        groups = []
        for key, entries in buckets.items():
            counts = _step_counts(entries, len(steps))
            groups.append(FunnelGroup(
                group=labels[key],
                steps=_step_results(steps, counts),
                total_started=counts[0],
                total_completed=counts[-1],
                overall_conversion_rate=_rate(counts[-1], counts[0]),
            ))

        groups.sort(key=lambda g: (-g.total_started, str(g.group)))
        return groups


def _qualifies(step: FunnelStep, event: EventRecord) -> bool:
    if event.name != step.event_name:
        return False
    for key, expected in step.filters.items():
        if key not in event.properties or not _same_value(event.properties[key], expected):
            return False
    return True


def _same_value(actual: Any, expected: Any) -> bool:
    # True == 1 in Python; a boolean filter only matches a boolean property
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual is expected
    return actual == expected


def _group_key(value: Any) -> Any:
    if isinstance(value, list):
        return ("list", tuple(_group_key(v) for v in value))
    return (type(value).__name__, value)


def _step_counts(entries, total_steps: int) -> list[int]:
    counts = [0] * total_steps
    for entry in entries:
        for index in range(entry.reached):
            counts[index] += 1
    return counts


def _step_results(steps: Sequence[FunnelStep], counts: list[int]) -> list[FunnelStepResult]:
    results = []
    for index, (step, count) in enumerate(zip(steps, counts)):
        if index == 0:
            conversion, dropoff = 100.0, 0.0
        else:
            conversion = _rate(count, counts[0])
            previous = counts[index - 1]
            dropoff = round(100.0 - count / previous * 100, 2) if previous else 0.0
        results.append(FunnelStepResult(
            step=index + 1,
            event_name=step.event_name,
            count=count,
            conversion_rate=conversion,
            dropoff_rate=dropoff,
        ))
    return results


def _rate(part: int, whole: int) -> float:
    if not whole:
        return 0.0
    return round(part / whole * 100, 2)
