"""canonical events and identity links

Revision ID: 0001_canonical_events
Revises:
Create Date: 2026-02-20
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = '0001_canonical_events'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'canonical_events',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('kind', sa.String(length=64), nullable=False),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=True),
        sa.Column('anonymous_id', sa.String(length=128), nullable=True),
        sa.Column('user_email', sa.String(length=256), nullable=True),
        sa.Column('page_path', sa.String(length=512), nullable=True),
        sa.Column('source_channel', sa.String(length=32), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint('user_id IS NOT NULL OR anonymous_id IS NOT NULL', name='ck_canonical_events_identity'),
    )
    op.create_index('ix_canonical_events_kind', 'canonical_events', ['kind'])
    op.create_index('ix_canonical_events_occurred_at', 'canonical_events', ['occurred_at'])
    op.create_index('ix_canonical_events_user_id', 'canonical_events', ['user_id'])
    op.create_index('ix_canonical_events_anonymous_id', 'canonical_events', ['anonymous_id'])
    op.create_index('ix_canonical_events_source_channel', 'canonical_events', ['source_channel'])
    op.create_index('ix_canonical_kind_user_ts', 'canonical_events', ['kind', 'user_id', 'occurred_at'])
    op.create_index('ix_canonical_kind_anon_ts', 'canonical_events', ['kind', 'anonymous_id', 'occurred_at'])

    op.create_table(
        'identity_links',
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('anonymous_id', sa.String(length=128), nullable=False),
        sa.Column('first_seen_at', sa.DateTime(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('user_id', 'anonymous_id', name='pk_identity_links'),
        sa.CheckConstraint('first_seen_at <= last_seen_at', name='ck_identity_links_window'),
    )
    op.create_index('ix_identity_links_anonymous_id', 'identity_links', ['anonymous_id'])
    op.create_index('ix_identity_links_last_seen_at', 'identity_links', ['last_seen_at'])


def downgrade():
    op.drop_index('ix_identity_links_last_seen_at', table_name='identity_links')
    op.drop_index('ix_identity_links_anonymous_id', table_name='identity_links')
    op.drop_table('identity_links')
    for name in (
        'ix_canonical_kind_anon_ts',
        'ix_canonical_kind_user_ts',
        'ix_canonical_events_source_channel',
        'ix_canonical_events_anonymous_id',
        'ix_canonical_events_user_id',
        'ix_canonical_events_occurred_at',
        'ix_canonical_events_kind',
    ):
        op.drop_index(name, table_name='canonical_events')
    op.drop_table('canonical_events')
