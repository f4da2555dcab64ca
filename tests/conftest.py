from datetime import datetime, timedelta, timezone

import pytest

from eventlens.core.config import Settings
from eventlens.core.container import build_services
from eventlens.core.database import init_schema
from eventlens.schemas.event import EventCreate


class FakeClock:
    """Injectable clock that only moves when told to"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'events.db'}",
        redis_url=None,
        rate_limit_enabled=False,
        api_key_hashes="",
        log_format="console",
        log_level="WARNING",
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def services(settings, clock):
    services = build_services(settings, clock=clock)
    init_schema(services.engine)
    yield services
    services.close()


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
def pipeline(services):
    return services.ingestion


@pytest.fixture
def rollups(services):
    return services.rollups


@pytest.fixture
def ingest(pipeline):
    """ingest(name, timestamp, session=None, principal=None, **properties) -> event id"""

    def _ingest(name, timestamp, session=None, principal=None, **properties):
        event = EventCreate(
            name=name,
            timestamp=timestamp,
            session_id=session,
            principal_id=principal,
            properties=properties,
        )
        return pipeline.ingest(event).event_id

    return _ingest
