"""create events and anomalies tables

Revision ID: 7c2e9a41d0b3
Revises:
Create Date: 2026-10-19 09:12:41.207315

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '7c2e9a41d0b3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # events table (processed_at NULL = pending in the processing outbox)
    op.create_table(
        'events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('project_id', sa.String(length=64), nullable=False),
        sa.Column('event_name', sa.String(length=255), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('referrer', sa.Text(), nullable=True),
        sa.Column('session_id', sa.String(length=128), nullable=False),
        sa.Column('country', sa.String(length=64), nullable=False),
        sa.Column('browser', sa.String(length=32), nullable=False),
        sa.Column('os', sa.String(length=32), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_events_id'), 'events', ['id'], unique=False)
    op.create_index(op.f('ix_events_session_id'), 'events', ['session_id'], unique=False)
    op.create_index(
        'ix_events_project_timestamp', 'events', ['project_id', 'timestamp', 'id'], unique=False
    )
    op.create_index('ix_events_unprocessed', 'events', ['processed_at', 'timestamp'], unique=False)

    # anomalies table
    op.create_table(
        'anomalies',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('project_id', sa.String(length=64), nullable=False),
        sa.Column('metric_type', sa.String(length=64), nullable=False),
        sa.Column('expected_value', sa.Float(), nullable=False),
        sa.Column('actual_value', sa.Float(), nullable=False),
        sa.Column('severity', sa.String(length=16), nullable=False),
        sa.Column('detected_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_resolved', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_anomalies_id'), 'anomalies', ['id'], unique=False)
    op.create_index(op.f('ix_anomalies_project_id'), 'anomalies', ['project_id'], unique=False)
    op.create_index(
        'uq_anomalies_open_metric',
        'anomalies',
        ['project_id', 'metric_type'],
        unique=True,
        postgresql_where=sa.text('is_resolved = false'),
        sqlite_where=sa.text('is_resolved = 0'),
    )


def downgrade() -> None:
    op.drop_index('uq_anomalies_open_metric', table_name='anomalies')
    op.drop_index(op.f('ix_anomalies_project_id'), table_name='anomalies')
    op.drop_index(op.f('ix_anomalies_id'), table_name='anomalies')
    op.drop_table('anomalies')

    op.drop_index('ix_events_unprocessed', table_name='events')
    op.drop_index('ix_events_project_timestamp', table_name='events')
    op.drop_index(op.f('ix_events_session_id'), table_name='events')
    op.drop_index(op.f('ix_events_id'), table_name='events')
    op.drop_table('events')
