import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator, TypeVar

import redis
from redis.exceptions import LockError, RedisError
from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import SQLAlchemyError
import structlog

from eventlens.core.errors import store_error, store_error_from
from eventlens.core.timeutil import (
    Granularity,
    ROLLUP_GRANULARITIES,
    TimeWindow,
    is_finer_or_equal,
    truncate,
    utcnow,
)
from eventlens.models.rollup import ROLLUP_MODELS, RollupState
from eventlens.services.event_store import EventFilter, EventRecord, EventStore, Watermark

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RollupBucket:
    bucket_start: datetime
    event_name: str
    event_count: int
    distinct_sessions: int
    distinct_principals: int


@dataclass(frozen=True)
class RefreshResult:
    ran: bool
    refreshed_at: datetime | None = None
    max_event_id: int = 0
    event_count: int = 0
    hour_buckets: int = 0
    day_buckets: int = 0
    duration_ms: float = 0.0


@dataclass(frozen=True)
class RollupStatus:
    granularity: str
    refreshed_at: datetime
    max_event_id: int
    event_count: int
    coverage_start: datetime | None
    fresh: bool


class SingleFlight:
    """
    At most one holder across threads and, with Redis, across processes.

    Falls back to the in-process lock only when no Redis client is given.
    """

    def __init__(self, redis_client: redis.Redis | None, key: str, timeout: int):
        self._local = threading.Lock()
        self._redis = redis_client
        self.key = key
        self.timeout = timeout

    @contextmanager
    def hold(self, blocking: bool = False) -> Iterator[bool]:
        if not self._local.acquire(blocking=blocking, timeout=self.timeout if blocking else -1):
            yield False
            return

        try:
            if self._redis is None:
                yield True
                return

            lock = self._redis.lock(
                self.key,
                timeout=self.timeout,
                blocking=blocking,
                blocking_timeout=self.timeout if blocking else None,
            )
            try:
                acquired = lock.acquire()
            except RedisError as e:
                raise store_error("rollup refresh lock unavailable", reason=str(e)) from e

            if not acquired:
                yield False
                return

            try:
                yield True
            finally:
                try:
                    lock.release()
                except LockError as e:
                    # lock expired while held; the next holder already owns it
                    logger.warning("rollup_lock_release_failed", error=str(e))
        finally:
            self._local.release()


class _BucketAccumulator:
    """Builds bucket rows from events arriving in time order"""

    def __init__(self, granularity: Granularity):
        self.granularity = granularity
        self.rows: list[dict] = []
        self._current: datetime | None = None
        self._names: dict[str, tuple[list, set, set]] = {}

    def add(self, event: EventRecord) -> None:
        start = truncate(event.occurred_at, self.granularity)
        if start != self._current:
            self._flush()
            self._current = start

        counter, sessions, principals = self._names.setdefault(event.name, ([0], set(), set()))
        counter[0] += 1
        if event.session_id is not None:
            sessions.add(event.session_id)
        if event.principal_id is not None:
            principals.add(event.principal_id)

    def _flush(self) -> None:
        for name, (counter, sessions, principals) in self._names.items():
            self.rows.append({
                "bucket_start": self._current,
                "event_name": name,
                "event_count": counter[0],
                "distinct_sessions": len(sessions),
                "distinct_principals": len(principals),
            })
        self._names = {}

    def finish(self) -> list[dict]:
        self._flush()
        return self.rows


class RollupMaintainer:
    """
    Owns the hour/day rollup tables.

    Rollups are recomputed wholesale and are only ever trusted when the
    store's watermark still matches the one the refresh was computed at.
    """

    def __init__(
            self,
            store: EventStore,
            *,
            redis_client: redis.Redis | None = None,
            hour_window_days: int = 7,
            lock_timeout_seconds: int = 300,
            clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.hour_window_days = hour_window_days
        self.clock = clock
        self._sessions = store.session_factory
        self._guard = SingleFlight(redis_client, "eventlens:rollup_refresh", lock_timeout_seconds)

    def refresh(self, wait: bool = False) -> RefreshResult:
        """
        Recompute all rollups, single-flight.

        A call that finds a refresh in progress does not start another one;
        with ``wait`` it returns once the in-flight refresh has finished.
        """
        with self._guard.hold(blocking=False) as acquired:
            if acquired:
                return self._recompute()

        if wait:
            with self._guard.hold(blocking=True):
                pass

        logger.info("rollup_refresh_skipped", reason="already_running", waited=wait)
        return RefreshResult(ran=False)

    def rebuild_around(self, mutation: Callable[[], T]) -> T:
        """
        Run a destructive store mutation with rollups discarded and rebuilt.

        Holds the refresh guard throughout so no refresh can publish
        buckets computed from rows the mutation removes.
        """
        with self._guard.hold(blocking=True) as acquired:
            if not acquired:
                raise store_error("could not acquire the rollup refresh lock")
            self._discard()
            outcome = mutation()
            self._recompute()
        return outcome

    def discard(self) -> None:
        with self._guard.hold(blocking=True) as acquired:
            if not acquired:
                raise store_error("could not acquire the rollup refresh lock")
            self._discard()

    def _discard(self) -> None:
        try:
            with self._sessions.begin() as db:
                for model in ROLLUP_MODELS.values():
                    db.execute(delete(model))
                db.execute(delete(RollupState))
        except SQLAlchemyError as e:
            raise store_error_from(e, "rollup_discard") from e
        logger.info("rollups_discarded")

    def _recompute(self) -> RefreshResult:
        started = time.perf_counter()
        watermark = self.store.watermark()
        refreshed_at = self.clock()
        hour_floor = truncate(refreshed_at - timedelta(days=self.hour_window_days), Granularity.HOUR)

        hours = _BucketAccumulator(Granularity.HOUR)
        days = _BucketAccumulator(Granularity.DAY)
        scanned = 0

        for event in self.store.scan(EventFilter(max_id=watermark.max_event_id)):
            scanned += 1
            days.add(event)
            if event.occurred_at >= hour_floor:
                hours.add(event)

        hour_rows = hours.finish()
        day_rows = days.finish()

        states = [
            RollupState(
                granularity=Granularity.HOUR.value,
                refreshed_at=refreshed_at,
                max_event_id=watermark.max_event_id,
                event_count=scanned,
                coverage_start=hour_floor,
            ),
            RollupState(
                granularity=Granularity.DAY.value,
                refreshed_at=refreshed_at,
                max_event_id=watermark.max_event_id,
                event_count=scanned,
                coverage_start=None,
            ),
        ]

        try:
            with self._sessions.begin() as db:
                for model, rows in ((ROLLUP_MODELS["hour"], hour_rows), (ROLLUP_MODELS["day"], day_rows)):
                    db.execute(delete(model))
                    if rows:
                        db.execute(insert(model), rows)
                db.execute(delete(RollupState))
                db.add_all(states)
        except SQLAlchemyError as e:
            raise store_error_from(e, "rollup_refresh") from e

        result = RefreshResult(
            ran=True,
            refreshed_at=refreshed_at,
            max_event_id=watermark.max_event_id,
            event_count=scanned,
            hour_buckets=len(hour_rows),
            day_buckets=len(day_rows),
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        logger.info(
            "rollup_refresh_completed",
            max_event_id=result.max_event_id,
            events=scanned,
            hour_buckets=result.hour_buckets,
            day_buckets=result.day_buckets,
            duration_ms=result.duration_ms
        )
        return result

    # -- read path; never takes the refresh guard ---------------------------

    def can_serve(self, window: TimeWindow, granularity: Granularity) -> bool:
        return self.serving_granularity(window, granularity) is not None

    def serving_granularity(
            self,
            window: TimeWindow,
            granularity: Granularity,
            exact: bool = False,
    ) -> Granularity | None:
        """
        The rollup granularity that can answer the window exactly, if any.

        Requires window alignment, coverage from the window start, and an
        unchanged store watermark since the refresh.
        """
        if not window.is_aligned(granularity):
            return None

        candidates = [
            g for g in ROLLUP_GRANULARITIES
            if (g == granularity if exact else is_finer_or_equal(g, granularity))
        ]
        if not candidates:
            return None

        states = self._load_states()
        if not states:
            return None

        watermark = self.store.watermark()
        for candidate in candidates:
            state = states.get(candidate.value)
            if state is None or not _is_fresh(state, watermark):
                continue
            if state.coverage_start is not None and window.start < state.coverage_start:
                continue
            return candidate

        return None

    def event_totals(
            self,
            window: TimeWindow,
            granularity: Granularity,
            names: list[str] | None = None,
    ) -> dict[str, int] | None:
        """Exact per-name event counts for the window, or None when rollups cannot serve it"""
        serving = self.serving_granularity(window, granularity)
        if serving is None:
            return None

        model = ROLLUP_MODELS[serving.value]
        stmt = (
            select(model.event_name, func.sum(model.event_count))
            .where(model.bucket_start >= window.start, model.bucket_start <= window.end)
            .group_by(model.event_name)
        )
        if names is not None:
            stmt = stmt.where(model.event_name.in_(names))

        try:
            with self._sessions() as db:
                totals = {name: int(total or 0) for name, total in db.execute(stmt)}
        except SQLAlchemyError as e:
            raise store_error_from(e, "rollup_totals") from e

        if names is not None:
            for name in names:
                totals.setdefault(name, 0)
        return totals

    def buckets(self, window: TimeWindow, granularity: Granularity) -> list[RollupBucket] | None:
        """Stored buckets of exactly this granularity, or None when they cannot serve the window"""
        if self.serving_granularity(window, granularity, exact=True) is None:
            return None

        model = ROLLUP_MODELS[granularity.value]
        stmt = (
            select(model)
            .where(model.bucket_start >= window.start, model.bucket_start <= window.end)
            .order_by(model.bucket_start.asc(), model.event_name.asc())
        )

        try:
            with self._sessions() as db:
                return [
                    RollupBucket(
                        bucket_start=row.bucket_start,
                        event_name=row.event_name,
                        event_count=row.event_count,
                        distinct_sessions=row.distinct_sessions,
                        distinct_principals=row.distinct_principals,
                    )
                    for row in db.execute(stmt).scalars()
                ]
        except SQLAlchemyError as e:
            raise store_error_from(e, "rollup_buckets") from e

    def status(self) -> list[RollupStatus]:
        states = self._load_states()
        if not states:
            return []

        watermark = self.store.watermark()
        return [
            RollupStatus(
                granularity=state.granularity,
                refreshed_at=state.refreshed_at,
                max_event_id=state.max_event_id,
                event_count=state.event_count,
                coverage_start=state.coverage_start,
                fresh=_is_fresh(state, watermark),
            )
            for state in sorted(states.values(), key=lambda s: s.granularity)
        ]

    def _load_states(self) -> dict[str, RollupState]:
        try:
            with self._sessions() as db:
                return {state.granularity: state for state in db.execute(select(RollupState)).scalars()}
        except SQLAlchemyError as e:
            raise store_error_from(e, "rollup_state") from e


def _is_fresh(state: RollupState, watermark: Watermark) -> bool:
    return state.max_event_id == watermark.max_event_id and state.event_count == watermark.event_count
