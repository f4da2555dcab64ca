# DB connections

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from eventlens.core.config import Settings
from eventlens.models.base import Base


def create_store_engine(settings: Settings) -> Engine:
    """
    Build the engine for the event store.

    PostgreSQL gets a sized pool and a statement timeout. SQLite (tests and
    local runs) gets explicit BEGIN handling so SAVEPOINTs behave.
    """
    url = settings.database_url

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=settings.debug,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            # let SQLAlchemy emit BEGIN itself
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin(conn):
            conn.exec_driver_sql("BEGIN")

        return engine

    connect_args = {}
    if url.startswith("postgresql"):
        connect_args["options"] = f"-c statement_timeout={settings.statement_timeout_ms}"

    return create_engine(
        url,
        echo=settings.debug,
        pool_size=settings.database_pool_size,
        max_overflow=0,
        pool_pre_ping=True,
        connect_args=connect_args,
    )


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_schema(engine: Engine) -> None:
    """Create all tables (tests and auto_create_schema); production uses alembic"""
    import eventlens.models.event  # noqa: F401
    import eventlens.models.rollup  # noqa: F401

    Base.metadata.create_all(engine)
