"""
Translation between Google Calendar v3 event payloads and calendar_events rows.

Provider payloads are validated at the boundary into pydantic models selected
by their `kind` tag. Malformed entries (no id, unknown kind, failed
validation) are dropped by parse_provider_event() so the pull engine can skip
them without aborting the batch.
"""

import logging
from datetime import UTC, datetime
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agent.fsm.sync_state import advance
from database.models import (
    CalendarEvent,
    CalendarEventOrigin,
    CalendarSyncStatus,
    UserCalendarSource,
)

logger = logging.getLogger(__name__)

CANCELLED_STATUS = "cancelled"


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ============================================================================
# Provider schema
# ============================================================================


class GoogleEventDateTime(BaseModel):
    """EventDateTime: exactly one of date (all-day) or dateTime is set."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    date_value: Optional[str] = Field(default=None, alias="date")
    date_time: Optional[str] = Field(default=None, alias="dateTime")
    time_zone: Optional[str] = Field(default=None, alias="timeZone")

    @property
    def value(self) -> Optional[str]:
        return self.date_time or self.date_value


class GoogleEventV3(BaseModel):
    """Google Calendar v3 event resource (fields the sync engine reads)."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    kind: Literal["calendar#event"] = "calendar#event"
    id: str
    etag: Optional[str] = None
    status: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start: Optional[GoogleEventDateTime] = None
    end: Optional[GoogleEventDateTime] = None
    original_start_time: Optional[GoogleEventDateTime] = Field(
        default=None, alias="originalStartTime"
    )
    organizer: Optional[dict[str, Any]] = None
    attendees: Optional[list[dict[str, Any]]] = None
    hangout_link: Optional[str] = Field(default=None, alias="hangoutLink")
    recurring_event_id: Optional[str] = Field(default=None, alias="recurringEventId")
    created: Optional[datetime] = None
    updated: Optional[datetime] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == CANCELLED_STATUS


# kind tag -> schema
PROVIDER_EVENT_SCHEMAS: dict[str, type[GoogleEventV3]] = {
    "calendar#event": GoogleEventV3,
}


def parse_provider_event(payload: Any) -> Optional[GoogleEventV3]:
    """
    Validate one events.list item / insert / patch response.

    Args:
        payload: Raw dict from googleapiclient

    Returns:
        Parsed event, or None when the payload is not a usable event
    """
    if not isinstance(payload, dict) or not payload.get("id"):
        logger.warning("Skipping provider event without id")
        return None

    kind = payload.get("kind", "calendar#event")
    schema = PROVIDER_EVENT_SCHEMAS.get(kind)
    if schema is None:
        logger.warning(f"Skipping provider item {payload.get('id')} of unknown kind {kind!r}")
        return None

    try:
        return schema.model_validate(payload)
    except ValidationError as e:
        logger.warning(
            f"Skipping malformed provider event {payload.get('id')}: "
            f"{e.error_count()} validation error(s)"
        )
        return None


# ============================================================================
# Local row -> provider payload
# ============================================================================


def _event_time(value: Optional[str], is_all_day: bool, time_zone: Optional[str]) -> Optional[dict]:
    if not value:
        return None

    if is_all_day or "T" not in value:
        time_value = {"date": value[:10]}
    else:
        time_value = {"dateTime": value}

    if time_zone:
        time_value["timeZone"] = time_zone
    return time_value


def build_google_event_payload(row: CalendarEvent) -> dict[str, Any]:
    """
    Build the events.insert / events.patch body for a local row.

    A start/end without a time component (or is_all_day=True) is sent as an
    all-day {"date": "YYYY-MM-DD"}; anything else as {"dateTime": value}.
    Fields that are None on the row are omitted.

    Args:
        row: calendar_events row with a pending create/update

    Returns:
        Event body dict
    """
    payload = {
        "summary": row.summary,
        "description": row.description,
        "location": row.location,
        "status": row.status,
        "start": _event_time(row.start_at, row.is_all_day, row.timezone),
        "end": _event_time(row.end_at, row.is_all_day, row.timezone),
        "attendees": row.attendees,
    }
    if row.organizer:
        payload["organizer"] = row.organizer

    return {key: value for key, value in payload.items() if value is not None}


# ============================================================================
# Provider event -> local row
# ============================================================================


def google_event_to_row_values(
    event: GoogleEventV3, source: UserCalendarSource, now: datetime
) -> dict[str, Any]:
    """
    Map a provider event to calendar_events column values.

    Cancelled events map to sync_status=deleted with ignore=True. The result
    always carries origin=google and last_kazador_updated_at=None; callers
    updating an existing row restore those from the row.

    Args:
        event: Parsed provider event
        source: Calendar source the event belongs to
        now: Timestamp of the current run

    Returns:
        Column name -> value
    """
    start = event.start or GoogleEventDateTime()
    end = event.end or GoogleEventDateTime()
    original_start = event.original_start_time or GoogleEventDateTime()

    timezone = start.time_zone or end.time_zone or original_start.time_zone or source.timezone

    return {
        "user_source_id": source.id,
        "calendar_id": source.calendar_id,
        "event_id": event.id,
        "summary": event.summary,
        "description": event.description,
        "location": event.location,
        "status": event.status,
        "start_at": start.value,
        "end_at": end.value,
        "is_all_day": bool(start.date_value and not start.date_time),
        "timezone": timezone,
        "organizer": event.organizer,
        "attendees": event.attendees,
        "hangout_link": event.hangout_link,
        "raw": event.model_dump(by_alias=True, exclude_none=True, mode="json"),
        "sync_status": CalendarSyncStatus.DELETED if event.is_cancelled else CalendarSyncStatus.SYNCED,
        "sync_error": None,
        "last_synced_at": now,
        "last_google_updated_at": event.updated or event.created or now,
        "google_etag": event.etag,
        "pending_action": None,
        "origin": CalendarEventOrigin.GOOGLE,
        "last_kazador_updated_at": None,
        "ignore": event.is_cancelled,
    }


def apply_row_values(row: CalendarEvent, values: dict[str, Any]) -> None:
    """Copy mapped values onto an existing row; sync_status goes through advance()."""
    for key, value in values.items():
        if key == "sync_status":
            advance(row, value)
        else:
            setattr(row, key, value)


def new_event_row(values: dict[str, Any], now: datetime) -> CalendarEvent:
    """Create a calendar_events row from mapped values (not yet added to a session)."""
    row = CalendarEvent(id=uuid4(), **values)
    row.created_at = now
    row.updated_at = now
    return row
