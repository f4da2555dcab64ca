"""
Explicit wiring of the engine components.

Everything is built from one Settings instance and handed around; nothing
is looked up from module globals.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

import redis
from sqlalchemy.engine import Engine

from eventlens.core.config import Settings
from eventlens.core.database import create_store_engine
from eventlens.core.redis_client import connect_redis
from eventlens.core.security import ApiKeyVerifier, CredentialVerifier
from eventlens.core.timeutil import utcnow
from eventlens.services.cohort import CohortAnalyzer
from eventlens.services.dashboard import DashboardService
from eventlens.services.event_store import EventStore
from eventlens.services.export import EventExporter
from eventlens.services.funnel import FunnelAnalyzer
from eventlens.services.ingestion import IngestionPipeline
from eventlens.services.privacy import PrivacyService
from eventlens.services.replay import ReplayBuilder
from eventlens.services.rollup import RollupMaintainer


@dataclass
class Services:
    settings: Settings
    engine: Engine
    redis: redis.Redis | None
    store: EventStore
    ingestion: IngestionPipeline
    rollups: RollupMaintainer
    funnels: FunnelAnalyzer
    cohorts: CohortAnalyzer
    replay: ReplayBuilder
    dashboard: DashboardService
    privacy: PrivacyService
    exporter: EventExporter
    verifier: CredentialVerifier

    def close(self) -> None:
        self.engine.dispose()
        if self.redis is not None:
            self.redis.close()


def build_services(
        settings: Settings,
        *,
        engine: Engine | None = None,
        redis_client: redis.Redis | None = None,
        clock: Callable[[], datetime] = utcnow,
) -> Services:
    engine = engine or create_store_engine(settings)
    if redis_client is None:
        redis_client = connect_redis(settings.redis_url)

    store = EventStore(engine, max_scan_limit=settings.max_scan_limit)
    rollups = RollupMaintainer(
        store,
        redis_client=redis_client,
        hour_window_days=settings.rollup_hour_window_days,
        lock_timeout_seconds=settings.rollup_lock_timeout_seconds,
        clock=clock,
    )

    return Services(
        settings=settings,
        engine=engine,
        redis=redis_client,
        store=store,
        ingestion=IngestionPipeline(
            store,
            session_timeout=timedelta(minutes=settings.session_timeout_minutes),
            max_batch_size=settings.max_batch_size,
            clock=clock,
        ),
        rollups=rollups,
        funnels=FunnelAnalyzer(store, rollups),
        cohorts=CohortAnalyzer(store, max_periods=settings.max_cohort_periods),
        replay=ReplayBuilder(store, max_timeline_buckets=settings.max_timeline_buckets),
        dashboard=DashboardService(store, rollups),
        privacy=PrivacyService(store, rollups, clock=clock),
        exporter=EventExporter(store, max_limit=settings.max_export_limit),
        verifier=ApiKeyVerifier(settings.api_key_hash_set),
    )
