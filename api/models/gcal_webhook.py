"""Pydantic models for Google Calendar push notifications."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class CalendarSyncRequest(BaseModel):
    """Sync request published to the calendar_sync_requests Redis channel."""

    source_id: UUID
    channel_id: str
    resource_state: str
    message_number: Optional[str] = None
