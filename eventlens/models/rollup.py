from sqlalchemy import BigInteger, Column, Integer, String

from eventlens.models.base import Base, UTCDateTime


class RollupHour(Base):
    __tablename__ = "rollup_hour"

    bucket_start = Column(UTCDateTime, primary_key=True)
    event_name = Column(String(255), primary_key=True)
    event_count = Column(Integer, nullable=False)
    distinct_sessions = Column(Integer, nullable=False)
    distinct_principals = Column(Integer, nullable=False)


class RollupDay(Base):
    __tablename__ = "rollup_day"

    bucket_start = Column(UTCDateTime, primary_key=True)
    event_name = Column(String(255), primary_key=True)
    event_count = Column(Integer, nullable=False)
    distinct_sessions = Column(Integer, nullable=False)
    distinct_principals = Column(Integer, nullable=False)


class RollupState(Base):
    """Watermark of the last completed refresh, one row per granularity"""

    __tablename__ = "rollup_state"

    granularity = Column(String(16), primary_key=True)
    refreshed_at = Column(UTCDateTime, nullable=False)
    max_event_id = Column(BigInteger, nullable=False)
    event_count = Column(BigInteger, nullable=False)
    # None means the table covers the full event history
    coverage_start = Column(UTCDateTime, nullable=True)


ROLLUP_MODELS = {
    "hour": RollupHour,
    "day": RollupDay,
}
