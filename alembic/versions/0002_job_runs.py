"""add job_runs table for backfill / repair checkpoints

Revision ID: 0002_job_runs
Revises: 0001_canonical_events
Create Date: 2026-02-24
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = '0002_job_runs'
down_revision = '0001_canonical_events'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'job_runs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('job_type', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='running'),
        sa.Column('dry_run', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('window_start', sa.Date(), nullable=False),
        sa.Column('window_end', sa.Date(), nullable=False),
        sa.Column('checkpoint_day', sa.Date(), nullable=True),
        sa.Column('params', sa.JSON(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error', sa.String(length=512), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_job_runs_job_type', 'job_runs', ['job_type'])
    op.create_index('ix_job_runs_status', 'job_runs', ['status'])
    op.create_index('ix_job_runs_dry_run', 'job_runs', ['dry_run'])
    op.create_index('ix_job_runs_started_at', 'job_runs', ['started_at'])
    op.create_index('ix_job_runs_type_status', 'job_runs', ['job_type', 'status'])


def downgrade():
    for name in ('ix_job_runs_type_status', 'ix_job_runs_started_at', 'ix_job_runs_dry_run', 'ix_job_runs_status', 'ix_job_runs_job_type'):
        op.drop_index(name, table_name='job_runs')
    op.drop_table('job_runs')
