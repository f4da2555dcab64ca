from collections import defaultdict
from datetime import datetime

import structlog

from eventlens.core.errors import validation_error
from eventlens.core.timeutil import ONE_MICROSECOND, Granularity, TimeWindow, add_periods, truncate
from eventlens.schemas.analytics import CohortPeriod, CohortQuery, CohortResult, CohortRow
from eventlens.services.event_store import EventFilter, EventStore

logger = structlog.get_logger()


class CohortAnalyzer:
    """Retention of principals grouped by when they first did something"""

    def __init__(self, store: EventStore, max_periods: int = 52):
        self.store = store
        self.max_periods = max_periods

    def analyze(self, query: CohortQuery) -> CohortResult:
        if not 1 <= query.periods <= self.max_periods:
            raise validation_error(
                f"periods must be between 1 and {self.max_periods}",
                field="periods",
                periods=query.periods
            )

        granularity = Granularity(query.granularity)
        window = query.window()

        cohort_of = self._assign_cohorts(window, query.cohort_event, granularity)
        members: dict[datetime, set[str]] = defaultdict(set)
        for principal_id, cohort_start in cohort_of.items():
            members[cohort_start].add(principal_id)

        returned = self._returns(cohort_of, query.return_event, granularity, query.periods)

        rows = []
        for cohort_start in sorted(members):
            size = len(members[cohort_start])
            periods = []
            for period in range(query.periods):
                count = len(returned.get((cohort_start, period), ()))
                periods.append(CohortPeriod(
                    period=period,
                    count=count,
                    retention_rate=round(count / size * 100, 2),
                ))
            rows.append(CohortRow(
                cohort_date=cohort_start.date().isoformat(),
                cohort_size=size,
                periods=periods,
            ))

        average = []
        for period in range(query.periods):
            rates = [row.periods[period].retention_rate for row in rows]
            average.append(round(sum(rates) / len(rates), 2) if rates else 0.0)

        logger.info(
            "cohort_analyzed",
            cohort_event=query.cohort_event,
            return_event=query.return_event,
            granularity=granularity.value,
            cohorts=len(rows),
            principals=len(cohort_of)
        )
        return CohortResult(
            cohorts=rows,
            total_users=len(cohort_of),
            average_retention=average,
            granularity=granularity.value,
        )

    def _assign_cohorts(self, window: TimeWindow, event_name: str, granularity: Granularity) -> dict[str, datetime]:
        """Cohort start of every principal, from its first defining event in the window"""
        cohort_of: dict[str, datetime] = {}
        flt = EventFilter.for_window(window, name=event_name, require_principal=True)
        for event in self.store.scan(flt):
            if event.principal_id not in cohort_of:
                cohort_of[event.principal_id] = truncate(event.occurred_at, granularity)
        return cohort_of

    def _returns(
            self,
            cohort_of: dict[str, datetime],
            event_name: str,
            granularity: Granularity,
            periods: int,
    ) -> dict[tuple[datetime, int], set[str]]:
        if not cohort_of:
            return {}

        # Return events may fall after the query window; look as far as the last period reaches
        horizon = add_periods(max(cohort_of.values()), granularity, periods) - ONE_MICROSECOND
        flt = EventFilter(
            start=min(cohort_of.values()),
            end=horizon,
            name=event_name,
            require_principal=True,
        )

        returned: dict[tuple[datetime, int], set[str]] = defaultdict(set)
        for event in self.store.scan(flt):
            cohort_start = cohort_of.get(event.principal_id)
            if cohort_start is None or event.occurred_at < cohort_start:
                continue
            period = period_index(cohort_start, event.occurred_at, granularity)
            if period < periods:
                returned[(cohort_start, period)].add(event.principal_id)
        return returned


def period_index(cohort_start: datetime, at: datetime, granularity: Granularity) -> int:
    """Which period after ``cohort_start`` the instant ``at`` falls into"""
    if granularity == Granularity.MONTH:
        return (at.year - cohort_start.year) * 12 + at.month - cohort_start.month
    step = add_periods(cohort_start, granularity, 1) - cohort_start
    return int((at - cohort_start) // step)
