"""create calendar sync tables

Revision ID: m3n4o5p6q7r8
Revises:
Create Date: 2026-10-18

Creates the tables used by the Google Calendar sync engine:
- oauth_accounts: Google identities with OAuth tokens and scopes
- user_calendar_sources: Calendars subscribed by users
- calendar_events: Local copy of provider and locally authored events
- calendar_sync_states: Incremental sync token per source
- calendar_watch_channels: Push-notification channel per source
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'm3n4o5p6q7r8'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade() -> None:
    # Create oauth_accounts table
    op.create_table(
        'oauth_accounts',
        sa.Column('id', sa.UUID(), nullable=False,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False, server_default='google'),
        sa.Column('account_email', sa.String(320), nullable=False),
        sa.Column('scopes', sa.ARRAY(sa.String()), nullable=False,
                  server_default=sa.text("'{}'::varchar[]")),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=False),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('token_metadata', postgresql.JSONB(), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'provider', 'account_email',
                            name='uq_oauth_accounts_user_email'),
    )
    op.create_index('ix_oauth_accounts_user_id', 'oauth_accounts', ['user_id'])

    # Create user_calendar_sources table
    op.create_table(
        'user_calendar_sources',
        sa.Column('id', sa.UUID(), nullable=False,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('calendar_id', sa.String(255), nullable=False),
        sa.Column('account_id', sa.UUID(), nullable=False),
        sa.Column('summary', sa.String(255), nullable=False),
        sa.Column('timezone', sa.String(64), nullable=True),
        sa.Column('primary_calendar', sa.Boolean(), nullable=False,
                  server_default=sa.text('false')),
        sa.Column('access_role', sa.String(32), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column('last_synced_at', sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['account_id'], ['oauth_accounts.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('user_id', 'calendar_id',
                            name='uq_user_calendar_sources_user_calendar'),
    )
    op.create_index('ix_user_calendar_sources_user_id', 'user_calendar_sources', ['user_id'])
    op.create_index('ix_user_calendar_sources_account_id', 'user_calendar_sources', ['account_id'])

    # Create calendar_events table
    op.create_table(
        'calendar_events',
        sa.Column('id', sa.UUID(), nullable=False,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_source_id', sa.UUID(), nullable=False),
        sa.Column('calendar_id', sa.String(255), nullable=False),
        sa.Column('event_id', sa.String(1024), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('location', sa.Text(), nullable=True),
        sa.Column('status', sa.String(32), nullable=True),
        sa.Column('start_at', sa.String(64), nullable=True),
        sa.Column('end_at', sa.String(64), nullable=True),
        sa.Column('is_all_day', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('timezone', sa.String(64), nullable=True),
        sa.Column('organizer', postgresql.JSONB(), nullable=True),
        sa.Column('attendees', postgresql.JSONB(), nullable=True),
        sa.Column('hangout_link', sa.Text(), nullable=True),
        sa.Column('raw', postgresql.JSONB(), nullable=True),
        sa.Column('sync_status', sa.String(32), nullable=False, server_default='pending'),
        sa.Column('sync_error', sa.Text(), nullable=True),
        sa.Column('origin', sa.String(16), nullable=False, server_default='google'),
        sa.Column('pending_action', sa.String(16), nullable=True),
        sa.Column('last_synced_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_google_updated_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_kazador_updated_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('google_etag', sa.String(255), nullable=True),
        sa.Column('ignore', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_source_id'], ['user_calendar_sources.id'],
                                ondelete='CASCADE'),
        sa.UniqueConstraint('user_source_id', 'event_id', name='uq_calendar_events_user_event'),
        sa.CheckConstraint(
            "sync_status IN ('pending', 'synced', 'failed', 'deleted', "
            "'needs_update', 'delete_pending')",
            name='ck_calendar_events_sync_status',
        ),
        sa.CheckConstraint("origin IN ('google', 'kazador')", name='ck_calendar_events_origin'),
        sa.CheckConstraint(
            "pending_action IS NULL OR pending_action IN ('create', 'update', 'delete')",
            name='ck_calendar_events_pending_action',
        ),
    )
    op.create_index('ix_calendar_events_user_source_id', 'calendar_events', ['user_source_id'])
    op.create_index('idx_calendar_events_sync_status', 'calendar_events', ['sync_status'])
    op.create_index('idx_calendar_events_origin', 'calendar_events', ['origin'])

    # Partial index for the push engine's pending-work scan
    op.create_index(
        'idx_calendar_events_pending',
        'calendar_events',
        ['user_source_id'],
        postgresql_where=sa.text(
            "pending_action IS NOT NULL "
            "OR sync_status IN ('pending', 'needs_update', 'delete_pending')"
        ),
    )

    # Create calendar_sync_states table
    op.create_table(
        'calendar_sync_states',
        sa.Column('id', sa.UUID(), nullable=False,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_source_id', sa.UUID(), nullable=False),
        sa.Column('sync_token', sa.Text(), nullable=True),
        sa.Column('last_polled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_source_id'], ['user_calendar_sources.id'],
                                ondelete='CASCADE'),
    )
    op.create_index('ix_calendar_sync_states_user_source_id', 'calendar_sync_states',
                    ['user_source_id'], unique=True)

    # Create calendar_watch_channels table
    op.create_table(
        'calendar_watch_channels',
        sa.Column('id', sa.UUID(), nullable=False,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_source_id', sa.UUID(), nullable=False),
        sa.Column('resource_id', sa.String(255), nullable=False),
        sa.Column('channel_id', sa.String(255), nullable=False),
        sa.Column('expiration_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('last_renewed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_source_id'], ['user_calendar_sources.id'],
                                ondelete='CASCADE'),
        sa.UniqueConstraint('channel_id', name='uq_calendar_watch_channels_channel_id'),
    )
    op.create_index('ix_calendar_watch_channels_user_source_id', 'calendar_watch_channels',
                    ['user_source_id'], unique=True)


def downgrade() -> None:
    op.drop_index('ix_calendar_watch_channels_user_source_id', table_name='calendar_watch_channels')
    op.drop_table('calendar_watch_channels')

    op.drop_index('ix_calendar_sync_states_user_source_id', table_name='calendar_sync_states')
    op.drop_table('calendar_sync_states')

    op.drop_index('idx_calendar_events_pending', table_name='calendar_events')
    op.drop_index('idx_calendar_events_origin', table_name='calendar_events')
    op.drop_index('idx_calendar_events_sync_status', table_name='calendar_events')
    op.drop_index('ix_calendar_events_user_source_id', table_name='calendar_events')
    op.drop_table('calendar_events')

    op.drop_index('ix_user_calendar_sources_account_id', table_name='user_calendar_sources')
    op.drop_index('ix_user_calendar_sources_user_id', table_name='user_calendar_sources')
    op.drop_table('user_calendar_sources')

    op.drop_index('ix_oauth_accounts_user_id', table_name='oauth_accounts')
    op.drop_table('oauth_accounts')
