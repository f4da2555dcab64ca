import csv
from dataclasses import replace
from datetime import timedelta
import io

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.exc import IntegrityError

from eventlens.core.container import build_services
from eventlens.core.database import init_schema
from eventlens.core.security import hash_api_key
from eventlens.main import create_app
from eventlens.services.event_store import EventStore
from eventlens.services.ingestion import IngestionPipeline

API_KEY = "el_test_key"


class RejectingStore(EventStore):
    """Store that refuses events named ``broken``"""

    def _insert_row(self, db, event):
        if event.name == "broken":
            raise IntegrityError("INSERT INTO events", {}, Exception("constraint failed"))
        return super()._insert_row(db, event)


def make_client(app):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.fixture
def app_factory(settings):
    """create_app(**settings overrides) against a throwaway SQLite database"""
    apps = []

    def _create(services_override=None, **overrides):
        app_settings = settings.model_copy(update={"auto_create_schema": True, **overrides})
        app = create_app(app_settings, services=services_override)
        apps.append(app)
        return app

    yield _create

    for app in apps:
        app.state.services.close()


@pytest_asyncio.fixture
async def client(app_factory):
    async with make_client(app_factory()) as client:
        yield client


def event(name, timestamp, session=None, principal=None, **properties):
    return {
        "name": name,
        "timestamp": timestamp,
        "sessionId": session,
        "principalId": principal,
        "properties": properties,
    }


FUNNEL_EVENTS = [
    event("view", "2024-03-01T10:00:00Z", session="s1", principal="u1", plan="pro"),
    event("signup", "2024-03-01T10:01:00Z", session="s1", principal="u1"),
    event("purchase", "2024-03-01T10:02:00Z", session="s1", principal="u1"),
    event("view", "2024-03-01T11:00:00Z", session="s2", principal="u2", plan="free"),
    event("signup", "2024-03-01T11:05:00Z", session="s2", principal="u2"),
    event("view", "2024-03-02T09:00:00Z", session="s3", principal="u3", plan="free"),
    event("login", "2024-03-02T09:30:00Z", session="s4", principal="u1"),
]


@pytest.mark.asyncio
async def test_health_check(client):
    """Test health endpoint"""
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database"] == "ok"


@pytest.mark.asyncio
async def test_single_event_ingestion(client):
    response = await client.post("/api/events", json=event("signup", "2024-03-01T10:00:00Z", session="s1"))
    assert response.status_code == 201
    event_id = response.json()["eventId"]

    response = await client.get("/api/events", params={"sessionId": "s1"})
    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 1
    assert data["events"][0]["id"] == event_id

    response = await client.get("/api/sessions/s1")
    assert response.status_code == 200
    assert response.json()["eventCount"] == 1


@pytest.mark.asyncio
async def test_unknown_session_is_404(client):
    response = await client.get("/api/sessions/missing")
    assert response.status_code == 404
    assert response.json()["error"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_batch_ingestion_and_analytics_flow(client):
    """Test complete flow: ingest a batch → query every analytics surface"""

    # 1. Ingest events
    response = await client.post("/api/events/batch", json={"events": FUNNEL_EVENTS})
    assert response.status_code == 201
    data = response.json()
    assert data["count"] == len(FUNNEL_EVENTS)
    assert len(data["eventIds"]) == len(FUNNEL_EVENTS)
    assert data["failed"] == []
    assert data["sessionsUpdated"] == 4

    # 2. Funnel
    response = await client.post("/api/analytics/funnel", json={
        "steps": [{"eventName": "view"}, {"eventName": "signup"}, {"eventName": "purchase"}],
        "startDate": "2024-03-01",
        "endDate": "2024-03-02",
    })
    assert response.status_code == 200
    funnel = response.json()
    assert [s["count"] for s in funnel["steps"]] == [3, 2, 1]
    assert funnel["overallConversionRate"] == 33.33
    assert "groups" not in funnel

    # 3. Funnel grouped by a property of the first step
    response = await client.post("/api/analytics/funnel", json={
        "steps": [{"eventName": "view"}, {"eventName": "signup"}],
        "startDate": "2024-03-01",
        "endDate": "2024-03-02",
        "groupBy": "plan",
    })
    groups = {g["group"]: g["totalCompleted"] for g in response.json()["groups"]}
    assert groups == {"free": 1, "pro": 1}

    # 4. Cohort
    response = await client.post("/api/analytics/cohort", json={
        "cohortEvent": "signup",
        "returnEvent": "login",
        "startDate": "2024-03-01",
        "endDate": "2024-03-02",
        "granularity": "day",
        "periods": 2,
    })
    assert response.status_code == 200
    cohort = response.json()
    assert cohort["totalUsers"] == 2
    assert cohort["cohorts"][0]["periods"][1]["retentionRate"] == 50.0

    # 5. Replay
    response = await client.get("/api/replay/sessions/s1")
    assert response.status_code == 200
    replay = response.json()
    assert [e["name"] for e in replay["events"]] == ["view", "signup", "purchase"]
    assert replay["durationMs"] == 120000

    response = await client.get("/api/replay/principals/u1")
    assert response.json()["sessionCount"] == 2

    response = await client.get("/api/replay/events", params={
        "startDate": "2024-03-01", "endDate": "2024-03-02", "eventTypes": ["signup", "login"],
    })
    assert response.json()["count"] == 3

    # 6. Timeline
    response = await client.get("/api/replay/timeline", params={
        "startDate": "2024-03-01", "endDate": "2024-03-01", "bucketSizeMs": 3600000,
    })
    assert response.status_code == 200
    assert [b["eventCount"] for b in response.json()["buckets"]] == [3, 2]


@pytest.mark.asyncio
async def test_dashboard_uses_rollups_after_refresh(client):
    await client.post("/api/events/batch", json={"events": FUNNEL_EVENTS})
    params = {"startDate": "2024-03-01", "endDate": "2024-03-02"}

    response = await client.get("/api/dashboard/summary", params=params)
    raw = response.json()
    assert raw["optimized"] is False
    assert raw["totalEvents"] == 7
    assert raw["uniqueSessions"] == 4
    assert raw["uniquePrincipals"] == 3

    response = await client.post("/api/rollups/refresh", params={"wait": "true"})
    assert response.status_code == 200
    assert response.json()["ran"] is True

    response = await client.get("/api/dashboard/summary", params=params)
    served = response.json()
    assert served["optimized"] is True
    assert served["topEvents"] == raw["topEvents"]
    assert served["totalEvents"] == raw["totalEvents"]

    response = await client.get("/api/dashboard/events-over-time", params={**params, "interval": "day"})
    assert [p["eventCount"] for p in response.json()["points"]] == [5, 2]

    response = await client.get("/api/rollups/status")
    assert {r["granularity"]: r["fresh"] for r in response.json()["rollups"]} == {"day": True, "hour": True}

    # new data makes the rollups stale; the dashboard falls back to raw events
    await client.post("/api/events", json=event("view", "2024-03-01T12:00:00Z"))
    response = await client.get("/api/dashboard/summary", params=params)
    assert response.json()["optimized"] is False
    assert response.json()["totalEvents"] == 8


@pytest.mark.asyncio
async def test_validation_errors(client):
    """Test input validation"""

    # One invalid item rejects the whole batch, reported by index
    response = await client.post("/api/events/batch", json={"events": [
        event("ok", "2024-03-01T10:00:00Z"),
        event("bad name!", "2024-03-01T10:00:00Z"),
    ]})
    assert response.status_code == 422
    data = response.json()
    assert data["error"] == "VALIDATION_ERROR"
    assert {e["index"] for e in data["errors"]} == {1}

    response = await client.get("/api/events")
    assert response.json()["count"] == 0

    # Missing events array
    response = await client.post("/api/events/batch", json={"items": []})
    assert response.status_code == 422

    # Funnel needs at least two steps
    response = await client.post("/api/analytics/funnel", json={
        "steps": [{"eventName": "view"}], "startDate": "2024-03-01", "endDate": "2024-03-02",
    })
    assert response.status_code == 422
    assert response.json()["details"]

    # Invalid date format
    response = await client.get("/api/dashboard/summary", params={"startDate": "invalid", "endDate": "2024-03-01"})
    assert response.status_code == 422
    assert response.json()["field"] == "startDate"

    # Inverted window
    response = await client.get("/api/dashboard/summary", params={"startDate": "2024-03-02", "endDate": "2024-03-01"})
    assert response.status_code == 422

    response = await client.get("/api/dashboard/events-over-time", params={
        "startDate": "2024-03-01", "endDate": "2024-03-02", "interval": "week",
    })
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_batch_size_limit(app_factory):
    """Test that batch size is limited"""
    async with make_client(app_factory(max_batch_size=10)) as client:
        events = [event("test", "2024-02-10T10:00:00Z", principal=f"user_{i}") for i in range(11)]

        response = await client.post("/api/events/batch", json={"events": events})
        assert response.status_code == 422


@pytest.mark.asyncio
async def test_partial_batch_failure_is_207(app_factory, settings):
    services = build_services(settings)
    init_schema(services.engine)
    store = RejectingStore(services.engine)
    services = replace(services, store=store, ingestion=IngestionPipeline(store))

    async with make_client(app_factory(services_override=services)) as client:
        response = await client.post("/api/events/batch", json={"events": [
            event("view", "2024-03-01T10:00:00Z"),
            event("broken", "2024-03-01T10:00:01Z"),
            event("view", "2024-03-01T10:00:02Z"),
        ]})

    assert response.status_code == 207
    data = response.json()
    assert data["count"] == 2
    assert [item["index"] for item in data["succeeded"]] == [0, 2]
    assert [item["index"] for item in data["failed"]] == [1]


@pytest.mark.asyncio
async def test_csv_export(client):
    await client.post("/api/events/batch", json={"events": FUNNEL_EVENTS})

    response = await client.get("/api/export", params={"format": "csv", "principalId": "u1"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "attachment" in response.headers["content-disposition"]

    rows = list(csv.DictReader(io.StringIO(response.text)))
    assert [row["name"] for row in rows] == ["login", "purchase", "signup", "view"]
    assert rows[-1]["properties"] == '{"plan":"pro"}'

    response = await client.get("/api/export", params={"limit": 2})
    assert response.json()["count"] == 2


@pytest.mark.asyncio
async def test_privacy_export_reingest_and_erase(client):
    await client.post("/api/events/batch", json={"events": FUNNEL_EVENTS})

    response = await client.get("/api/privacy/principals/u1/summary")
    assert response.json()["eventCount"] == 4

    response = await client.get("/api/privacy/principals/u1/export")
    exported = response.json()["events"]
    assert len(exported) == 4

    response = await client.delete("/api/privacy/principals/u1/data")
    assert response.status_code == 200
    assert response.json()["eventsDeleted"] == 4

    response = await client.get("/api/privacy/principals/u1/summary")
    assert response.status_code == 404

    # the export is accepted back by the batch endpoint as-is
    response = await client.post("/api/events/batch", json={"events": exported})
    assert response.status_code == 201
    response = await client.get("/api/privacy/principals/u1/summary")
    assert response.json()["eventCount"] == 4


@pytest.mark.asyncio
async def test_api_key_required_when_configured(app_factory):
    app = app_factory(api_key_hashes=hash_api_key(API_KEY))
    async with make_client(app) as client:
        response = await client.get("/api/events")
        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHORIZED"

        response = await client.get("/api/events", headers={"X-API-Key": "el_wrong"})
        assert response.status_code == 403
        assert response.json()["error"] == "FORBIDDEN"

        response = await client.get("/api/events", headers={"X-API-Key": API_KEY})
        assert response.status_code == 200

        # health stays open
        response = await client.get("/health")
        assert response.status_code == 200


@pytest.mark.asyncio
async def test_rate_limit_headers(app_factory):
    """Test that rate limit headers are present"""
    app = app_factory(rate_limit_enabled=True, rate_limit_requests=2, rate_limit_period=60)
    async with make_client(app) as client:
        response = await client.get("/api/events")
        assert response.status_code == 200

        # Check rate limit headers exist
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "1"
        assert "X-RateLimit-Reset" in response.headers

        await client.get("/api/events")
        response = await client.get("/api/events")
        assert response.status_code == 429
        assert response.json()["error"] == "RATE_LIMITED"

        # health is never limited
        response = await client.get("/health")
        assert response.status_code == 200


@pytest.mark.asyncio
async def test_timestamp_fallback_uses_ingestion_time(client):
    response = await client.post("/api/events", json=event("view", "not a timestamp"))
    assert response.status_code == 201

    response = await client.get("/api/events")
    [stored] = response.json()["events"]
    assert stored["occurredAt"] is not None
    assert stored["name"] == "view"


def test_hour_rollup_window_is_configurable(settings):
    services = build_services(settings.model_copy(update={"rollup_hour_window_days": 3}))
    try:
        assert services.rollups.hour_window_days == 3
        assert services.ingestion.session_timeout == timedelta(minutes=settings.session_timeout_minutes)
    finally:
        services.close()
