"""
Data access for the calendar sync engine.

All reads and writes the push/pull/watch services perform go through
CalendarSyncRepository, so the services never build SQL themselves and the
unit tests can swap in an in-memory double. Writes are flushed by the caller
through commit(); upserts on the one-row-per-source tables use PostgreSQL
INSERT ... ON CONFLICT keyed by user_source_id.
"""

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.models import (
    CalendarEvent,
    CalendarSyncState,
    CalendarSyncStatus,
    CalendarWatchChannel,
    OAuthAccount,
    UserCalendarSource,
)

logger = logging.getLogger(__name__)

# Statuses that mean a local mutation still has to reach Google
PUSHABLE_STATUSES = (
    CalendarSyncStatus.PENDING,
    CalendarSyncStatus.NEEDS_UPDATE,
    CalendarSyncStatus.DELETE_PENDING,
)


class CalendarSyncRepository:
    """Query/persist helpers for one sync run, bound to a single session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------ #
    # Sources and accounts                                                #
    # ------------------------------------------------------------------ #

    async def list_sources(self, source_id: Optional[UUID] = None) -> list[UserCalendarSource]:
        """
        Load calendar sources joined with their OAuth account.

        populate_existing refreshes instances a previous rollback expired.
        """
        query = (
            select(UserCalendarSource)
            .options(selectinload(UserCalendarSource.account))
            .order_by(UserCalendarSource.created_at, UserCalendarSource.id)
            .execution_options(populate_existing=True)
        )
        if source_id is not None:
            query = query.where(UserCalendarSource.id == source_id)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def save_account_token(
        self,
        account: OAuthAccount,
        access_token: str,
        expires_at: datetime,
        token_metadata: dict[str, Any],
    ) -> None:
        """Persist a refreshed access token onto the account row and commit."""
        account.access_token = access_token
        account.expires_at = expires_at
        # Reassign (not mutate) so the JSONB change is tracked
        account.token_metadata = dict(token_metadata)
        await self.session.commit()

    async def touch_source(self, source: UserCalendarSource, synced_at: datetime) -> None:
        source.last_synced_at = synced_at

    # ------------------------------------------------------------------ #
    # Events                                                              #
    # ------------------------------------------------------------------ #

    async def list_pending_events(self, source_id: UUID) -> list[CalendarEvent]:
        """Rows with an explicit pending_action or a pushable sync_status, in row order."""
        result = await self.session.execute(
            select(CalendarEvent)
            .where(
                CalendarEvent.user_source_id == source_id,
                or_(
                    CalendarEvent.pending_action.is_not(None),
                    CalendarEvent.sync_status.in_(PUSHABLE_STATUSES),
                ),
            )
            .order_by(CalendarEvent.created_at, CalendarEvent.id)
        )
        return list(result.scalars().all())

    async def load_events_by_event_id(self, source_id: UUID) -> dict[str, CalendarEvent]:
        """All rows of a source that already carry a Google event ID."""
        result = await self.session.execute(
            select(CalendarEvent).where(
                CalendarEvent.user_source_id == source_id,
                CalendarEvent.event_id.is_not(None),
            )
        )
        return {row.event_id: row for row in result.scalars().all()}

    def add_event(self, event: CalendarEvent) -> None:
        self.session.add(event)

    # ------------------------------------------------------------------ #
    # Sync cursor                                                         #
    # ------------------------------------------------------------------ #

    async def get_sync_state(self, source_id: UUID) -> Optional[CalendarSyncState]:
        """
        Load the cursor row of a source.

        The upserts below bypass the identity map, so populate_existing is
        needed for an already loaded row to show the stored cursor.
        """
        result = await self.session.execute(
            select(CalendarSyncState)
            .where(CalendarSyncState.user_source_id == source_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def upsert_sync_state(
        self,
        source_id: UUID,
        sync_token: Optional[str],
        polled_at: datetime,
        last_error: Optional[str],
    ) -> None:
        """Write the cursor row for a source (at most one row per source)."""
        values = {
            "sync_token": sync_token,
            "last_polled_at": polled_at,
            "last_error": last_error,
            "updated_at": polled_at,
        }
        stmt = pg_insert(CalendarSyncState).values(user_source_id=source_id, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[CalendarSyncState.user_source_id],
            set_=values,
        )
        await self.session.execute(stmt)

    async def reset_sync_token(self, source_id: UUID, polled_at: datetime) -> None:
        """Drop the stored cursor so the next listing is a full window reload."""
        await self.upsert_sync_state(source_id, None, polled_at, None)
        await self.session.commit()

    async def count_sources_with_errors(self) -> int:
        """Sources whose last pull recorded an error on the cursor row."""
        result = await self.session.execute(
            select(func.count())
            .select_from(CalendarSyncState)
            .where(CalendarSyncState.last_error.is_not(None))
        )
        return result.scalar_one()

    # ------------------------------------------------------------------ #
    # Watch channels                                                    #
    # ------------------------------------------------------------------ #

    async def get_watch_channel(self, source_id: UUID) -> Optional[CalendarWatchChannel]:
        result = await self.session.execute(
            select(CalendarWatchChannel)
            .where(CalendarWatchChannel.user_source_id == source_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_watch_channel_by_channel_id(
        self, channel_id: str
    ) -> Optional[CalendarWatchChannel]:
        result = await self.session.execute(
            select(CalendarWatchChannel).where(CalendarWatchChannel.channel_id == channel_id)
        )
        return result.scalar_one_or_none()

    async def delete_watch_channel(self, channel: CalendarWatchChannel) -> None:
        await self.session.delete(channel)
        await self.session.flush()

    async def upsert_watch_channel(
        self,
        source_id: UUID,
        resource_id: str,
        channel_id: str,
        expiration_at: datetime,
        renewed_at: datetime,
        metadata: dict[str, Any],
    ) -> None:
        """Write the channel row for a source (at most one row per source)."""
        values = {
            "resource_id": resource_id,
            "channel_id": channel_id,
            "expiration_at": expiration_at,
            "last_renewed_at": renewed_at,
            "metadata": metadata,
            "updated_at": renewed_at,
        }
        stmt = pg_insert(CalendarWatchChannel).values(user_source_id=source_id, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[CalendarWatchChannel.user_source_id],
            set_=values,
        )
        await self.session.execute(stmt)

    # ------------------------------------------------------------------ #
    # Transactions                                                        #
    # ------------------------------------------------------------------ #

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()
