"""Initial schedule schema

Revision ID: 3f9a1c2b7d4e
Revises: 
Create Date: 2026-10-19 09:12:41.204117

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9a1c2b7d4e'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create schedules and their run history."""
    op.create_table(
        'schedules',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('resource_id', sa.String(length=255), nullable=False),
        sa.Column('cron_expression', sa.String(length=100), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('next_due_at', sa.DateTime(timezone=True), nullable=True,
                  comment='Next qualifying instant; NULL while disabled'),
        sa.Column('active_operation_id', sa.String(length=36), nullable=True),
        sa.Column('claim_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_run_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_run_finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_run_outcome', sa.String(length=20), nullable=True),
        sa.Column('last_run_message', sa.Text(), nullable=True),
        sa.Column('last_run_duration_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_schedules_due', 'schedules', ['enabled', 'next_due_at'])
    op.create_index(op.f('ix_schedules_resource_id'), 'schedules', ['resource_id'])

    op.create_table(
        'schedule_runs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('operation_id', sa.String(length=36), nullable=False),
        sa.Column('schedule_id', sa.String(length=36), nullable=False),
        sa.Column('resource_id', sa.String(length=255), nullable=False),
        sa.Column('trigger', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(length=100), nullable=True),
        sa.ForeignKeyConstraint(['schedule_id'], ['schedules.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('operation_id')
    )
    op.create_index('ix_schedule_runs_schedule_started', 'schedule_runs', ['schedule_id', 'started_at'])


def downgrade() -> None:
    """Drop schedule tables."""
    op.drop_table('schedule_runs')
    op.drop_table('schedules')
