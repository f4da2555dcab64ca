from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Protocol, Sequence

from pydantic import TypeAdapter, ValidationError
import structlog

from eventlens.core.errors import AnalyticsError, validation_error
from eventlens.core.timeutil import parse_timestamp, utcnow
from eventlens.schemas.event import EventCreate
from eventlens.services.event_store import EventStore, NewEvent, SessionRecord

logger = structlog.get_logger()


class EventValidator(Protocol):
    """validate(payload) -> list of error messages, empty when valid"""

    def validate(self, payload: Mapping[str, Any]) -> list[str]:
        ...


class SchemaEventValidator:
    """Validates raw payloads against the EventCreate schema"""

    def __init__(self):
        self._adapter = TypeAdapter(EventCreate)

    def validate(self, payload: Mapping[str, Any]) -> list[str]:
        try:
            self._adapter.validate_python(payload)
        except ValidationError as e:
            return [_format_error(err) for err in e.errors()]
        return []

    def parse(self, payload: Mapping[str, Any]) -> EventCreate:
        return self._adapter.validate_python(payload)


def _format_error(err: dict) -> str:
    path = ".".join(str(part) for part in err.get("loc", ())) or "root"
    return f"{path}: {err.get('msg')}"


@dataclass(frozen=True)
class IngestResult:
    event_id: int
    occurred_at: datetime
    session: SessionRecord | None = None


@dataclass
class BatchResult:
    """Per-item outcome of a batch, aligned with the input order"""

    event_ids: list[int | None]
    succeeded: list[tuple[int, int]] = field(default_factory=list)
    failed: list[tuple[int, str]] = field(default_factory=list)
    sessions_updated: int = 0
    session_errors: dict[str, str] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.succeeded)

    @property
    def partial(self) -> bool:
        return bool(self.failed)


class IngestionPipeline:
    """Validates, normalises and writes events; keeps session aggregates current"""

    def __init__(
            self,
            store: EventStore,
            *,
            validator: SchemaEventValidator | None = None,
            session_timeout: timedelta = timedelta(minutes=30),
            max_batch_size: int = 10000,
            clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.validator = validator or SchemaEventValidator()
        self.session_timeout = session_timeout
        self.max_batch_size = max_batch_size
        self.clock = clock

    def validate_batch(self, payloads: Sequence[Mapping[str, Any]]) -> list[EventCreate]:
        """
        Validate raw payloads as a unit.

        Any invalid item rejects the whole batch before anything is written.
        """
        self._check_batch_size(len(payloads))

        errors = []
        for index, payload in enumerate(payloads):
            for message in self.validator.validate(payload):
                errors.append({"index": index, "message": message})

        if errors:
            logger.warning("batch_validation_failed", total=len(payloads), errors=len(errors))
            raise validation_error("Batch failed validation", errors=errors)

        return [self.validator.parse(payload) for payload in payloads]

    def ingest(self, event: EventCreate) -> IngestResult:
        """Store one event; store errors propagate unchanged"""
        now = self.clock()
        new_event = self._normalise(event, now)

        event_id = self.store.insert(new_event)

        session = None
        if new_event.session_id:
            session = self._touch_session(new_event.session_id, now, increment=1)

        logger.info(
            "event_ingested",
            event_id=event_id,
            name=new_event.name,
            session_id=new_event.session_id
        )
        return IngestResult(event_id=event_id, occurred_at=new_event.occurred_at, session=session)

    def ingest_batch(self, events: Sequence[EventCreate]) -> BatchResult:
        """
        Store a validated batch.

        Every input index is reported as succeeded or failed. Sessions are
        upserted once per distinct session id with the number of events that
        actually landed in them.
        """
        self._check_batch_size(len(events))

        now = self.clock()
        new_events = [self._normalise(event, now) for event in events]

        outcomes = self.store.insert_many(new_events)

        result = BatchResult(event_ids=[outcome.event_id for outcome in outcomes])
        per_session: Counter[str] = Counter()

        for outcome, new_event in zip(outcomes, new_events):
            if outcome.ok:
                result.succeeded.append((outcome.index, outcome.event_id))
                if new_event.session_id:
                    per_session[new_event.session_id] += 1
            else:
                result.failed.append((outcome.index, outcome.error or "insert failed"))

        for session_id, increment in per_session.items():
            try:
                self._touch_session(session_id, now, increment=increment)
                result.sessions_updated += 1
            except AnalyticsError as e:
                if e.systemic:
                    raise
                logger.error("session_upsert_failed", session_id=session_id, error=e.message)
                result.session_errors[session_id] = e.message

        logger.info(
            "events_ingested",
            total=len(events),
            inserted=result.count,
            failed=len(result.failed),
            sessions_updated=result.sessions_updated
        )
        return result

    def _touch_session(self, session_id: str, now: datetime, increment: int) -> SessionRecord:
        # Session ids are client controlled: the expiry decision belongs here
        session = self.store.upsert_session(
            session_id,
            at=now,
            increment=increment,
            expire_before=now - self.session_timeout,
        )
        if session.started_at == now and session.event_count == increment:
            logger.debug("session_started", session_id=session_id)
        return session

    def _normalise(self, event: EventCreate, now: datetime) -> NewEvent:
        occurred_at = parse_timestamp(event.timestamp)
        if occurred_at is None:
            if event.timestamp is not None:
                logger.warning("event_timestamp_unparseable", name=event.name, timestamp=str(event.timestamp))
            occurred_at = now

        return NewEvent(
            name=event.name,
            occurred_at=occurred_at,
            properties=dict(event.properties),
            session_id=event.session_id,
            principal_id=event.principal_id,
        )

    def _check_batch_size(self, size: int) -> None:
        if size == 0:
            raise validation_error("Batch must contain at least one event", field="events")
        if size > self.max_batch_size:
            raise validation_error(
                f"Batch size cannot exceed {self.max_batch_size} events",
                field="events",
                size=size
            )
