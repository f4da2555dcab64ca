"""Create event store, sessions and rollup tables

Revision ID: 5c1f0e7a2b94
Revises:
Create Date: 2026-10-18 09:12:41.507213

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from eventlens.models.base import BigIntegerPK, UTCDateTime


# revision identifiers, used by Alembic.
revision: str = '5c1f0e7a2b94'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade():
    op.create_table(
        'events',
        sa.Column('id', BigIntegerPK, primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('properties', sa.JSON(), nullable=False),
        sa.Column('session_id', sa.String(255), nullable=True),
        sa.Column('principal_id', sa.String(255), nullable=True),
        sa.Column('occurred_at', UTCDateTime(), nullable=False),
        sa.Column('created_at', UTCDateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_events_name', 'events', ['name'])
    op.create_index('ix_events_session_id', 'events', ['session_id'])
    op.create_index('ix_events_principal_id', 'events', ['principal_id'])
    op.create_index('ix_events_occurred_at', 'events', ['occurred_at'])
    # Composite indexes for windowed per-name and per-principal scans
    op.create_index('idx_events_occurred_name', 'events', ['occurred_at', 'name'])
    op.create_index('idx_events_principal_occurred', 'events', ['principal_id', 'occurred_at'])

    op.create_table(
        'sessions',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('started_at', UTCDateTime(), nullable=False),
        sa.Column('last_activity_at', UTCDateTime(), nullable=False),
        sa.Column('event_count', sa.Integer(), nullable=False),
    )
    op.create_index('ix_sessions_last_activity_at', 'sessions', ['last_activity_at'])

    for table in ('rollup_hour', 'rollup_day'):
        op.create_table(
            table,
            sa.Column('bucket_start', UTCDateTime(), primary_key=True),
            sa.Column('event_name', sa.String(255), primary_key=True),
            sa.Column('event_count', sa.Integer(), nullable=False),
            sa.Column('distinct_sessions', sa.Integer(), nullable=False),
            sa.Column('distinct_principals', sa.Integer(), nullable=False),
        )

    op.create_table(
        'rollup_state',
        sa.Column('granularity', sa.String(16), primary_key=True),
        sa.Column('refreshed_at', UTCDateTime(), nullable=False),
        sa.Column('max_event_id', sa.BigInteger(), nullable=False),
        sa.Column('event_count', sa.BigInteger(), nullable=False),
        sa.Column('coverage_start', UTCDateTime(), nullable=True),
    )


def downgrade():
    op.drop_table('rollup_state')
    op.drop_table('rollup_day')
    op.drop_table('rollup_hour')
    op.drop_index('ix_sessions_last_activity_at', 'sessions')
    op.drop_table('sessions')
    op.drop_index('idx_events_principal_occurred', 'events')
    op.drop_index('idx_events_occurred_name', 'events')
    op.drop_index('ix_events_occurred_at', 'events')
    op.drop_index('ix_events_principal_id', 'events')
    op.drop_index('ix_events_session_id', 'events')
    op.drop_index('ix_events_name', 'events')
    op.drop_table('events')
