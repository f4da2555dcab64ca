from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator, Sequence

from sqlalchemy import case, delete, func, literal, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as DBSession
import structlog

from eventlens.core.database import create_session_factory
from eventlens.core.errors import AnalyticsError, store_error, store_error_from
from eventlens.core.timeutil import TimeWindow, ensure_utc, utcnow
from eventlens.models.base import UTCDateTime
from eventlens.models.event import Event, Session

logger = structlog.get_logger()


@dataclass(frozen=True)
class NewEvent:
    name: str
    occurred_at: datetime
    properties: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None
    principal_id: str | None = None


@dataclass(frozen=True)
class EventRecord:
    id: int
    name: str
    properties: dict[str, Any]
    session_id: str | None
    principal_id: str | None
    occurred_at: datetime
    created_at: datetime | None = None


@dataclass(frozen=True)
class SessionRecord:
    id: str
    started_at: datetime
    last_activity_at: datetime
    event_count: int


@dataclass(frozen=True)
class InsertOutcome:
    """Result of one item of insert_many, aligned with the input index"""

    index: int
    event_id: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.event_id is not None


@dataclass(frozen=True)
class Watermark:
    max_event_id: int
    event_count: int


@dataclass(frozen=True)
class EventFilter:
    """Scan filter; time bounds are inclusive"""

    start: datetime | None = None
    end: datetime | None = None
    name: str | None = None
    names: tuple[str, ...] | None = None
    session_id: str | None = None
    principal_id: str | None = None
    max_id: int | None = None
    require_session: bool = False
    require_principal: bool = False
    limit: int | None = None
    offset: int = 0
    descending: bool = False

    @classmethod
    def for_window(cls, window: TimeWindow, **kwargs) -> "EventFilter":
        return cls(start=window.start, end=window.end, **kwargs)


class QueryBuilder:
    """
    Accumulates named predicates over the events table.

    Values are always bound parameters. ``applied`` records which filters
    were actually used so scans can be logged and compared.
    """

    def __init__(self):
        self._predicates = []
        self.applied: dict[str, Any] = {}

    def where(self, name: str, clause, value) -> "QueryBuilder":
        self._predicates.append(clause)
        self.applied[name] = value
        return self

    @classmethod
    def from_filter(cls, flt: EventFilter) -> "QueryBuilder":
        builder = cls()
        if flt.start is not None:
            start = ensure_utc(flt.start)
            builder.where("start", Event.occurred_at >= start, start.isoformat())
        if flt.end is not None:
            end = ensure_utc(flt.end)
            builder.where("end", Event.occurred_at <= end, end.isoformat())
        if flt.name is not None:
            builder.where("name", Event.name == flt.name, flt.name)
        if flt.names is not None:
            builder.where("names", Event.name.in_(flt.names), list(flt.names))
        if flt.session_id is not None:
            builder.where("session_id", Event.session_id == flt.session_id, flt.session_id)
        if flt.principal_id is not None:
            builder.where("principal_id", Event.principal_id == flt.principal_id, flt.principal_id)
        if flt.max_id is not None:
            builder.where("max_id", Event.id <= flt.max_id, flt.max_id)
        if flt.require_session:
            builder.where("require_session", Event.session_id.is_not(None), True)
        if flt.require_principal:
            builder.where("require_principal", Event.principal_id.is_not(None), True)
        return builder

    def apply(self, stmt):
        if self._predicates:
            stmt = stmt.where(*self._predicates)
        return stmt


class EventStore:
    """
    Owns the events and sessions tables.

    Every write is a single transaction; readers only ever see committed
    events.
    """

    def __init__(self, engine: Engine, max_scan_limit: int = 1000, stream_batch_size: int = 500):
        self.engine = engine
        self.max_scan_limit = max_scan_limit
        self.stream_batch_size = stream_batch_size
        self._sessions = create_session_factory(engine)

    @property
    def session_factory(self):
        return self._sessions

    # -- writes -----------------------------------------------------------

    def insert(self, event: NewEvent) -> int:
        """Insert one event and return its store-assigned id"""
        try:
            with self._sessions.begin() as db:
                return self._insert_row(db, event)
        except SQLAlchemyError as e:
            raise store_error_from(e, "insert") from e

    def insert_many(self, events: Sequence[NewEvent], retries: int = 1) -> list[InsertOutcome]:
        """
        Insert a batch and report the outcome of every item.

        Items run in their own SAVEPOINT inside one transaction, so a bad
        item is retried and then reported without touching its neighbours.
        A systemic failure aborts the whole call with zero writes.
        """
        outcomes: list[InsertOutcome] = []

        try:
            with self._sessions.begin() as db:
                for index, event in enumerate(events):
                    outcomes.append(self._insert_with_retry(db, index, event, retries))
        except AnalyticsError:
            raise
        except SQLAlchemyError as e:
            error = store_error_from(e, "insert_many")
            error.systemic = True
            raise error from e

        return outcomes

    def _insert_with_retry(self, db: DBSession, index: int, event: NewEvent, retries: int) -> InsertOutcome:
        last_error = None

        for attempt in range(retries + 1):
            try:
                with db.begin_nested():
                    event_id = self._insert_row(db, event)
                return InsertOutcome(index=index, event_id=event_id)
            except SQLAlchemyError as e:
                last_error = store_error_from(e, "insert")
                if last_error.systemic:
                    raise last_error from e
                logger.warning(
                    "batch_item_insert_failed",
                    index=index,
                    attempt=attempt + 1,
                    error=last_error.message
                )

        return InsertOutcome(index=index, error=last_error.message)

    def _insert_row(self, db: DBSession, event: NewEvent) -> int:
        row = Event(
            name=event.name,
            properties=dict(event.properties or {}),
            session_id=event.session_id,
            principal_id=event.principal_id,
            occurred_at=ensure_utc(event.occurred_at),
            created_at=utcnow(),
        )
        db.add(row)
        db.flush()
        return row.id

    def upsert_session(
            self,
            session_id: str,
            *,
            at: datetime | None = None,
            increment: int = 1,
            expire_before: datetime | None = None,
    ) -> SessionRecord:
        """
        Create or bump a session in one INSERT ... ON CONFLICT statement.

        With ``expire_before`` the same statement restarts the aggregate when
        its last activity is older than the cutoff.
        """
        at = ensure_utc(at or utcnow())
        at_value = literal(at, UTCDateTime())
        latest_activity = case(
            (Session.last_activity_at > at_value, Session.last_activity_at),
            else_=at_value,
        )

        if expire_before is None:
            updates = {
                "last_activity_at": latest_activity,
                "event_count": Session.event_count + increment,
            }
        else:
            expired = Session.last_activity_at < literal(ensure_utc(expire_before), UTCDateTime())
            updates = {
                "started_at": case((expired, at_value), else_=Session.started_at),
                "event_count": case((expired, increment), else_=Session.event_count + increment),
                "last_activity_at": case((expired, at_value), else_=latest_activity),
            }

        stmt = self._dialect_insert(Session).values(
            id=session_id,
            started_at=at,
            last_activity_at=at,
            event_count=increment,
        ).on_conflict_do_update(index_elements=[Session.id], set_=updates)

        try:
            with self._sessions.begin() as db:
                db.execute(stmt)
                row = db.get(Session, session_id, populate_existing=True)
                return _session_record(row)
        except SQLAlchemyError as e:
            raise store_error_from(e, "upsert_session") from e

    def _dialect_insert(self, model):
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise store_error(f"upsert is not supported on {dialect}", dialect=dialect)
        return insert(model)

    def delete_events(self, flt: EventFilter) -> int:
        builder = QueryBuilder.from_filter(flt)
        if not builder.applied:
            raise store_error("refusing to delete events without a filter")

        try:
            with self._sessions.begin() as db:
                result = db.execute(builder.apply(delete(Event)))
                deleted = result.rowcount or 0
        except SQLAlchemyError as e:
            raise store_error_from(e, "delete_events") from e

        logger.info("events_deleted", filters=builder.applied, deleted=deleted)
        return deleted

    def delete_sessions_inactive_since(self, cutoff: datetime) -> int:
        try:
            with self._sessions.begin() as db:
                result = db.execute(delete(Session).where(Session.last_activity_at < ensure_utc(cutoff)))
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise store_error_from(e, "delete_sessions") from e

    # -- reads ------------------------------------------------------------

    def scan(self, flt: EventFilter) -> Iterator[EventRecord]:
        """
        Lazily yield events matching the filter.

        Ordered by (occurred_at, id), descending on request. A requested
        limit is capped at ``max_scan_limit``; no limit streams everything.
        """
        builder = QueryBuilder.from_filter(flt)
        stmt = builder.apply(select(Event))

        if flt.descending:
            stmt = stmt.order_by(Event.occurred_at.desc(), Event.id.desc())
        else:
            stmt = stmt.order_by(Event.occurred_at.asc(), Event.id.asc())

        limit = self.effective_limit(flt.limit)
        if limit is not None:
            stmt = stmt.limit(limit)
        if flt.offset:
            stmt = stmt.offset(flt.offset)

        logger.debug("event_scan", filters=builder.applied, limit=limit, offset=flt.offset)
        return self._stream(stmt)

    def effective_limit(self, requested: int | None) -> int | None:
        if requested is None:
            return None
        return max(0, min(requested, self.max_scan_limit))

    def _stream(self, stmt) -> Iterator[EventRecord]:
        try:
            with self._sessions() as db:
                result = db.execute(stmt.execution_options(yield_per=self.stream_batch_size))
                for row in result.scalars():
                    yield _event_record(row)
        except SQLAlchemyError as e:
            raise store_error_from(e, "scan") from e

    def count(self, flt: EventFilter) -> int:
        builder = QueryBuilder.from_filter(flt)
        return self._scalar(builder.apply(select(func.count(Event.id))), "count") or 0

    def count_distinct(self, flt: EventFilter, column: str) -> int:
        """Distinct non-null values of session_id or principal_id"""
        target = {"session_id": Event.session_id, "principal_id": Event.principal_id}[column]
        builder = QueryBuilder.from_filter(flt)
        stmt = builder.apply(select(func.count(func.distinct(target))))
        return self._scalar(stmt, "count_distinct") or 0

    def distinct_sessions(self, principal_id: str) -> int:
        return self.count_distinct(EventFilter(principal_id=principal_id), "session_id")

    def name_counts(self, flt: EventFilter, limit: int | None = None) -> list[tuple[str, int]]:
        """Event names with their counts, most frequent first"""
        builder = QueryBuilder.from_filter(flt)
        count_col = func.count(Event.id).label("count")
        stmt = builder.apply(select(Event.name, count_col)).group_by(Event.name)
        stmt = stmt.order_by(count_col.desc(), Event.name.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            with self._sessions() as db:
                return [(name, count) for name, count in db.execute(stmt)]
        except SQLAlchemyError as e:
            raise store_error_from(e, "name_counts") from e

    def session_ids_for_principal(self, principal_id: str, limit: int | None = None) -> list[str]:
        """Sessions of a principal, ordered by their first event"""
        first_seen = func.min(Event.occurred_at)
        stmt = (
            select(Event.session_id)
            .where(Event.principal_id == principal_id, Event.session_id.is_not(None))
            .group_by(Event.session_id)
            .order_by(first_seen.asc(), Event.session_id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            with self._sessions() as db:
                return list(db.execute(stmt).scalars())
        except SQLAlchemyError as e:
            raise store_error_from(e, "session_ids_for_principal") from e

    def get_session(self, session_id: str) -> SessionRecord | None:
        try:
            with self._sessions() as db:
                row = db.get(Session, session_id)
                return _session_record(row) if row is not None else None
        except SQLAlchemyError as e:
            raise store_error_from(e, "get_session") from e

    def watermark(self) -> Watermark:
        """Highest committed event id and the live event count"""
        try:
            with self._sessions() as db:
                max_id, total = db.execute(select(func.max(Event.id), func.count(Event.id))).one()
        except SQLAlchemyError as e:
            raise store_error_from(e, "watermark") from e
        return Watermark(max_event_id=max_id or 0, event_count=total or 0)

    def ping(self) -> None:
        self._scalar(text("SELECT 1"), "ping")

    def _scalar(self, stmt, operation: str):
        try:
            with self._sessions() as db:
                return db.execute(stmt).scalar()
        except SQLAlchemyError as e:
            raise store_error_from(e, operation) from e


def _event_record(row: Event) -> EventRecord:
    return EventRecord(
        id=row.id,
        name=row.name,
        properties=dict(row.properties or {}),
        session_id=row.session_id,
        principal_id=row.principal_id,
        occurred_at=row.occurred_at,
        created_at=row.created_at,
    )


def _session_record(row: Session) -> SessionRecord:
    return SessionRecord(
        id=row.id,
        started_at=row.started_at,
        last_activity_at=row.last_activity_at,
        event_count=row.event_count,
    )
