from datetime import datetime, timedelta, timezone
import threading

import pytest

from eventlens.core.errors import AnalyticsError, ErrorKind
from eventlens.core.timeutil import TimeWindow
from eventlens.services.event_store import EventFilter, EventStore, NewEvent, QueryBuilder

T0 = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


def new_event(name="page_view", at=T0, session=None, principal=None, **properties):
    return NewEvent(name=name, occurred_at=at, properties=properties, session_id=session, principal_id=principal)


def test_insert_returns_increasing_ids(store):
    """Ids are store-assigned and monotonic"""
    first = store.insert(new_event())
    second = store.insert(new_event())

    assert second > first
    assert store.watermark().max_event_id == second
    assert store.watermark().event_count == 2


def test_scan_orders_by_time_then_id(store):
    late = store.insert(new_event("b", T0 + timedelta(minutes=5)))
    tie_1 = store.insert(new_event("a", T0))
    tie_2 = store.insert(new_event("c", T0))

    ids = [record.id for record in store.scan(EventFilter())]
    assert ids == [tie_1, tie_2, late]

    descending = [record.id for record in store.scan(EventFilter(descending=True))]
    assert descending == [late, tie_2, tie_1]


def test_scan_returns_utc_datetimes_and_properties(store):
    store.insert(new_event(at=T0, session="s1", principal="u1", plan="pro", seats=3, tags=["a", "b"]))

    [record] = list(store.scan(EventFilter()))
    assert record.occurred_at == T0
    assert record.occurred_at.tzinfo is not None
    assert record.properties == {"plan": "pro", "seats": 3, "tags": ["a", "b"]}
    assert record.session_id == "s1"
    assert record.principal_id == "u1"


def test_scan_window_bounds_are_inclusive(store):
    store.insert(new_event(at=T0))
    store.insert(new_event(at=T0 + timedelta(hours=1)))
    store.insert(new_event(at=T0 + timedelta(hours=1, microseconds=1)))

    window = TimeWindow(T0, T0 + timedelta(hours=1))
    assert len(list(store.scan(EventFilter.for_window(window)))) == 2


def test_scan_limit_is_capped(engine_store):
    for i in range(8):
        engine_store.insert(new_event(at=T0 + timedelta(seconds=i)))

    assert len(list(engine_store.scan(EventFilter(limit=100)))) == 5
    assert len(list(engine_store.scan(EventFilter(limit=3)))) == 3
    # no limit streams everything
    assert len(list(engine_store.scan(EventFilter()))) == 8


def test_scan_offset_pages(store):
    ids = [store.insert(new_event(at=T0 + timedelta(seconds=i))) for i in range(5)]

    page = [r.id for r in store.scan(EventFilter(limit=2, offset=2))]
    assert page == ids[2:4]


def test_scan_filters(store):
    store.insert(new_event("signup", session="s1", principal="u1"))
    store.insert(new_event("login", session="s1", principal="u1"))
    store.insert(new_event("login", session=None, principal="u2"))
    store.insert(new_event("login", session="s2", principal=None))

    assert len(list(store.scan(EventFilter(name="login")))) == 3
    assert len(list(store.scan(EventFilter(names=("signup", "login"), session_id="s1")))) == 2
    assert len(list(store.scan(EventFilter(name="login", require_session=True)))) == 2
    assert len(list(store.scan(EventFilter(name="login", require_principal=True)))) == 2


def test_query_builder_records_applied_filters():
    flt = EventFilter(start=T0, name="login", principal_id="u1")

    builder = QueryBuilder.from_filter(flt)

    assert set(builder.applied) == {"start", "name", "principal_id"}
    assert builder.applied["name"] == "login"


def test_query_builder_binds_values(store):
    """Filter values never become SQL text"""
    hostile = "x' OR '1'='1"
    store.insert(new_event(principal="u1"))

    assert list(store.scan(EventFilter(principal_id=hostile))) == []
    assert store.count(EventFilter(name=hostile)) == 0


def test_count_and_distinct_counts(store):
    store.insert(new_event(session="s1", principal="u1"))
    store.insert(new_event(session="s1", principal="u1"))
    store.insert(new_event(session="s2", principal="u1"))
    store.insert(new_event(session=None, principal="u2"))

    flt = EventFilter()
    assert store.count(flt) == 4
    assert store.count_distinct(flt, "session_id") == 2
    assert store.count_distinct(flt, "principal_id") == 2
    assert store.distinct_sessions("u1") == 2
    assert store.distinct_sessions("u2") == 0


def test_name_counts_most_frequent_first(store):
    for name in ["a", "b", "b", "c", "c", "c"]:
        store.insert(new_event(name))

    assert store.name_counts(EventFilter()) == [("c", 3), ("b", 2), ("a", 1)]
    assert store.name_counts(EventFilter(), limit=1) == [("c", 3)]


def test_session_ids_for_principal_ordered_by_first_event(store):
    store.insert(new_event(at=T0 + timedelta(hours=2), session="later", principal="u1"))
    store.insert(new_event(at=T0, session="earlier", principal="u1"))
    store.insert(new_event(at=T0, session="other", principal="u2"))

    assert store.session_ids_for_principal("u1") == ["earlier", "later"]


def test_delete_events_requires_a_filter(store):
    store.insert(new_event())

    with pytest.raises(AnalyticsError) as exc_info:
        store.delete_events(EventFilter())

    assert exc_info.value.kind == ErrorKind.STORE
    assert store.count(EventFilter()) == 1


def test_delete_events_by_principal(store):
    store.insert(new_event(principal="u1"))
    store.insert(new_event(principal="u2"))

    assert store.delete_events(EventFilter(principal_id="u1")) == 1
    assert [r.principal_id for r in store.scan(EventFilter())] == ["u2"]


def test_upsert_session_creates_then_increments(store):
    created = store.upsert_session("s1", at=T0, increment=1)
    assert created.started_at == T0
    assert created.event_count == 1

    updated = store.upsert_session("s1", at=T0 + timedelta(minutes=5), increment=3)
    assert updated.started_at == T0
    assert updated.last_activity_at == T0 + timedelta(minutes=5)
    assert updated.event_count == 4


def test_upsert_session_never_moves_activity_backwards(store):
    store.upsert_session("s1", at=T0 + timedelta(minutes=10))

    session = store.upsert_session("s1", at=T0)

    assert session.last_activity_at == T0 + timedelta(minutes=10)
    assert session.event_count == 2


def test_upsert_session_restarts_expired_session(store):
    store.upsert_session("s1", at=T0, increment=4)
    later = T0 + timedelta(minutes=45)

    session = store.upsert_session("s1", at=later, increment=1, expire_before=later - timedelta(minutes=30))

    assert session.started_at == later
    assert session.last_activity_at == later
    assert session.event_count == 1


def test_upsert_session_keeps_live_session(store):
    store.upsert_session("s1", at=T0, increment=4)
    later = T0 + timedelta(minutes=20)

    session = store.upsert_session("s1", at=later, increment=1, expire_before=later - timedelta(minutes=30))

    assert session.started_at == T0
    assert session.event_count == 5


def test_concurrent_upserts_lose_no_increments(store):
    """Five writers racing on one session id"""
    errors = []

    def worker(offset):
        for i in range(20):
            try:
                store.upsert_session("s1", at=T0 + timedelta(seconds=offset * 20 + i))
            except AnalyticsError as e:
                errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    session = store.get_session("s1")
    assert errors == []
    assert session.event_count == 100
    assert T0 <= session.started_at <= session.last_activity_at
    assert session.last_activity_at == T0 + timedelta(seconds=99)


def test_delete_sessions_inactive_since(store):
    store.upsert_session("old", at=T0)
    store.upsert_session("new", at=T0 + timedelta(days=2))

    assert store.delete_sessions_inactive_since(T0 + timedelta(days=1)) == 1
    assert store.get_session("old") is None
    assert store.get_session("new") is not None


@pytest.fixture
def engine_store(services):
    return EventStore(services.engine, max_scan_limit=5)
