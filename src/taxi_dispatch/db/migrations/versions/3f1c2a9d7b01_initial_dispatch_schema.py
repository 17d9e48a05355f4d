"""Initial dispatch schema: drivers, ride_requests, events

Learn: Three tables. ride_requests.status is a plain string column (not
a database enum) so adding a status never needs an ALTER TYPE; the
allowed values and transitions are enforced in services/lifecycle.py.

Revision ID: 3f1c2a9d7b01
Revises:
Create Date: 2026-10-18 09:12:44.518203
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f1c2a9d7b01'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

json_type = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # ─── Drivers ─────────────────────────────────────────
    op.create_table(
        'drivers',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('phone', sa.String(length=20), nullable=False),
        sa.Column('name', sa.String(length=50), nullable=False),
        sa.Column('plate', sa.String(length=10), nullable=False),
        sa.Column('location', sa.String(length=200), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('phone'),
    )

    # ─── Ride requests ───────────────────────────────────
    op.create_table(
        'ride_requests',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('client_phone', sa.String(length=20), nullable=False),
        sa.Column('client_name', sa.String(length=50), nullable=False),
        sa.Column('location', sa.String(length=200), nullable=False),
        sa.Column('sector', sa.String(length=200), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('assigned_driver_id', sa.Uuid(), nullable=True),
        sa.Column('cancel_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['assigned_driver_id'], ['drivers.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_ride_requests_status_created', 'ride_requests', ['status', 'created_at'])
    op.create_index('idx_ride_requests_client_status', 'ride_requests', ['client_phone', 'status'])

    # ─── Audit log ───────────────────────────────────────
    op.create_table(
        'events',
        sa.Column(
            'id',
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            autoincrement=True,
            nullable=False,
        ),
        sa.Column('stream_id', sa.String(length=200), nullable=False),
        sa.Column('type', sa.String(length=100), nullable=False),
        sa.Column('data', json_type, nullable=False),
        sa.Column('metadata', json_type, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_events_stream', 'events', ['stream_id', 'id'])
    op.create_index('idx_events_type', 'events', ['type'])
    op.create_index('idx_events_created', 'events', ['created_at'])


def downgrade() -> None:
    op.drop_index('idx_events_created', table_name='events')
    op.drop_index('idx_events_type', table_name='events')
    op.drop_index('idx_events_stream', table_name='events')
    op.drop_table('events')
    op.drop_index('idx_ride_requests_client_status', table_name='ride_requests')
    op.drop_index('idx_ride_requests_status_created', table_name='ride_requests')
    op.drop_table('ride_requests')
    op.drop_table('drivers')
