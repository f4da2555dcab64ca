# SQLAlchemy models

from sqlalchemy import Column, String, JSON, Index, Integer, func

from eventlens.models.base import Base, BigIntegerPK, UTCDateTime


class Event(Base):
    __tablename__ = "events"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, index=True)
    properties = Column(JSON, nullable=False, default=dict)
    session_id = Column(String(255), nullable=True, index=True)
    principal_id = Column(String(255), nullable=True, index=True)
    occurred_at = Column(UTCDateTime, nullable=False, index=True)
    created_at = Column(UTCDateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        # Composite index for windowed per-name scans
        Index('idx_events_occurred_name', 'occurred_at', 'name'),
        Index('idx_events_principal_occurred', 'principal_id', 'occurred_at'),
    )


class Session(Base):
    __tablename__ = "sessions"

    id = Column(String(255), primary_key=True)
    started_at = Column(UTCDateTime, nullable=False)
    last_activity_at = Column(UTCDateTime, nullable=False, index=True)
    event_count = Column(Integer, nullable=False, default=1)
