"""
SQLAlchemy ORM models for the calendar synchronization tables.

This module defines the tables the sync engine reads and writes:
- oauth_accounts: Google identities connected by users (tokens + scopes)
- user_calendar_sources: Calendars a user subscribed to, linked to an account
- calendar_events: Local copy of provider events and locally authored events
- calendar_sync_states: Incremental sync cursor per calendar source
- calendar_watch_channels: Push-notification channel per calendar source

All models use:
- UUID primary keys (auto-generated)
- TIMESTAMP WITH TIME ZONE for datetime fields
- JSONB for flexible metadata storage
- Proper indexes and constraints
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    ARRAY,
    TIMESTAMP,
    Boolean,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Enums
# ============================================================================


class CalendarSyncStatus(str, PyEnum):
    """Sync lifecycle of a calendar_events row."""

    PENDING = "pending"                # Created locally, not pushed yet
    SYNCED = "synced"
    FAILED = "failed"                  # Last push attempt failed (see sync_error)
    DELETED = "deleted"                # Logically deleted (locally or cancelled remotely)
    NEEDS_UPDATE = "needs_update"      # Edited locally, patch not pushed yet
    DELETE_PENDING = "delete_pending"  # Deleted locally, delete not pushed yet


class CalendarEventOrigin(str, PyEnum):
    """Which side authored the event."""

    GOOGLE = "google"
    KAZADOR = "kazador"


class CalendarPendingAction(str, PyEnum):
    """Outstanding local mutation not yet applied to Google Calendar."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def _enum_values(enum_cls: type[PyEnum]) -> list[str]:
    return [member.value for member in enum_cls]


# ============================================================================
# Account / Source Models
# ============================================================================


class OAuthAccount(Base):
    """
    OAuthAccount model - One Google identity per user.

    Holds the OAuth tokens used by the sync engine. The access token and its
    expiry are rewritten by the token service on refresh; rows are created and
    deleted by the OAuth connect flow.
    """

    __tablename__ = "oauth_accounts"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    user_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(50), default="google", nullable=False)
    account_email: Mapped[str] = mapped_column(String(320), nullable=False)

    # Granted OAuth scopes
    scopes: Mapped[list[str]] = mapped_column(
        ARRAY(String), default=list, nullable=False
    )

    # Tokens
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # Provider-specific metadata (e.g. lastCalendarTokenRefreshAt)
    token_metadata: Mapped[dict[str, Any]] = mapped_column(
        JSONB, default=dict, nullable=False
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=datetime.utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("user_id", "provider", "account_email", name="uq_oauth_accounts_user_email"),
    )

    def __repr__(self) -> str:
        return f"<OAuthAccount(id={self.id}, email='{self.account_email}')>"


class UserCalendarSource(Base):
    """
    UserCalendarSource model - One subscribed Google calendar for one user.

    Created by the "connect calendar" flow. The sync engine only writes
    last_synced_at.
    """

    __tablename__ = "user_calendar_sources"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    user_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), nullable=False, index=True)

    # Google calendar ID (e.g. "primary" or "abc@group.calendar.google.com")
    calendar_id: Mapped[str] = mapped_column(String(255), nullable=False)

    account_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("oauth_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    summary: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    primary_calendar: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    access_role: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Metadata
    metadata_: Mapped[dict] = mapped_column(
        "metadata", JSONB, default=dict, nullable=False
    )

    last_synced_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    account: Mapped[Optional["OAuthAccount"]] = relationship("OAuthAccount")

    __table_args__ = (
        UniqueConstraint("user_id", "calendar_id", name="uq_user_calendar_sources_user_calendar"),
    )

    def __repr__(self) -> str:
        return f"<UserCalendarSource(id={self.id}, calendar_id='{self.calendar_id}')>"


# ============================================================================
# Calendar Event Model
# ============================================================================


class CalendarEvent(Base):
    """
    CalendarEvent model - Local representation of one Google Calendar event.

    Rows are either observed on Google (origin=google, inserted by the pull
    engine) or authored locally (origin=kazador, pending_action=create) and
    pushed later. start_at/end_at keep the ISO-8601 value as sent by Google
    ("2025-03-01" for all-day, "2025-03-01T20:00:00Z" for timed events).

    A row with pending_action=None and sync_status=synced is reconciled; any
    other combination means work is outstanding in one direction. Rows are
    never hard-deleted by the sync engine (sync_status=deleted instead).
    """

    __tablename__ = "calendar_events"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )

    user_source_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("user_calendar_sources.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    calendar_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Google event ID (NULL until the first successful push)
    event_id: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    # Event details
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Time range (date or date-time, see class docstring)
    start_at: Mapped[str | None] = mapped_column(String(64), nullable=True)
    end_at: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_all_day: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    organizer: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    attendees: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONB, nullable=True)
    hangout_link: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Last provider payload snapshot
    raw: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    # Sync bookkeeping
    sync_status: Mapped[CalendarSyncStatus] = mapped_column(
        SQLEnum(
            CalendarSyncStatus,
            name="calendar_sync_status",
            native_enum=False,
            length=32,
            values_callable=_enum_values,
            validate_strings=True,
        ),
        default=CalendarSyncStatus.PENDING,
        nullable=False,
    )
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    origin: Mapped[CalendarEventOrigin] = mapped_column(
        SQLEnum(
            CalendarEventOrigin,
            name="calendar_event_origin",
            native_enum=False,
            length=16,
            values_callable=_enum_values,
            validate_strings=True,
        ),
        default=CalendarEventOrigin.GOOGLE,
        nullable=False,
    )
    pending_action: Mapped[CalendarPendingAction | None] = mapped_column(
        SQLEnum(
            CalendarPendingAction,
            name="calendar_pending_action",
            native_enum=False,
            length=16,
            values_callable=_enum_values,
            validate_strings=True,
        ),
        nullable=True,
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    last_google_updated_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    last_kazador_updated_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    google_etag: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Cancelled on Google: kept for bookkeeping, hidden from consumers
    ignore: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=datetime.utcnow,
        nullable=False,
    )

    # Relationship
    source: Mapped["UserCalendarSource"] = relationship("UserCalendarSource")

    __table_args__ = (
        UniqueConstraint("user_source_id", "event_id", name="uq_calendar_events_user_event"),
        Index("idx_calendar_events_sync_status", "sync_status"),
        Index("idx_calendar_events_origin", "origin"),
        # Partial index for the push engine's pending-work scan
        Index(
            "idx_calendar_events_pending",
            "user_source_id",
            postgresql_where=text(
                "pending_action IS NOT NULL "
                "OR sync_status IN ('pending', 'needs_update', 'delete_pending')"
            ),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<CalendarEvent(id={self.id}, event_id={self.event_id}, "
            f"sync_status='{self.sync_status}', pending_action={self.pending_action})>"
        )


# ============================================================================
# Sync Bookkeeping Models
# ============================================================================


class CalendarSyncState(Base):
    """
    Google Calendar sync state per calendar source.

    Stores the sync token for incremental sync with Google Calendar API.
    A NULL sync_token forces a full window reload on the next pull.
    """

    __tablename__ = "calendar_sync_states"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )

    # One sync state per source
    user_source_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("user_calendar_sources.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )

    sync_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_polled_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<CalendarSyncState(user_source_id={self.user_source_id}, last_polled={self.last_polled_at})>"


class CalendarWatchChannel(Base):
    """
    Push-notification channel registered with Google for one calendar source.

    Must be renewed before expiration_at or replaced.
    """

    __tablename__ = "calendar_watch_channels"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )

    user_source_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("user_calendar_sources.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )

    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    expiration_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False
    )
    last_renewed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # Webhook metadata (address the channel delivers to)
    metadata_: Mapped[dict] = mapped_column(
        "metadata", JSONB, default=dict, nullable=False
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<CalendarWatchChannel(user_source_id={self.user_source_id}, expires={self.expiration_at})>"
