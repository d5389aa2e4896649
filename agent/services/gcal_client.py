"""
Google Calendar v3 client wrapper.

googleapiclient is blocking, so every request is executed in the default
thread-pool executor and bounded by GCAL_REQUEST_TIMEOUT_SECONDS. Provider
HTTP errors are left as googleapiclient.errors.HttpError; use http_status()
to read the status code.

Usage:
    client = GoogleCalendarClient.from_credentials(credentials)
    page = await client.list_events("primary", syncToken=token, showDeleted=True)
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from agent.fsm.sync_state import CalendarSyncError
from shared.config import get_settings

logger = logging.getLogger(__name__)

# Notify attendees of every change made on behalf of the user
SEND_UPDATES = "all"


class CalendarRequestTimeoutError(CalendarSyncError):
    """A Google Calendar API call exceeded the configured timeout."""


def http_status(error: BaseException) -> Optional[int]:
    """Return the HTTP status of a googleapiclient HttpError (None for other errors)."""
    if not isinstance(error, HttpError):
        return None
    status = getattr(error.resp, "status", None)
    return int(status) if status is not None else None


class GoogleCalendarClient:
    """
    Thin async facade over the Calendar v3 discovery service.

    Attributes:
        service: googleapiclient Resource for calendar v3
        timeout_seconds: Upper bound for a single API call
    """

    def __init__(self, service: Any, timeout_seconds: Optional[float] = None):
        self.service = service
        if timeout_seconds is None:
            timeout_seconds = get_settings().GCAL_REQUEST_TIMEOUT_SECONDS
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_credentials(
        cls, credentials: Credentials, timeout_seconds: Optional[float] = None
    ) -> "GoogleCalendarClient":
        """Build a client from authorized user credentials."""
        service = build("calendar", "v3", credentials=credentials, cache_discovery=False)
        return cls(service, timeout_seconds=timeout_seconds)

    async def _execute(self, call: Callable[[], Any], operation: str) -> Any:
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, call),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Google Calendar {operation} timed out after {self.timeout_seconds}s")
            raise CalendarRequestTimeoutError(
                f"Google Calendar {operation} timed out after {self.timeout_seconds}s"
            ) from e

    # ------------------------------------------------------------------ #
    # Events                                                              #
    # ------------------------------------------------------------------ #

    async def list_events(
        self, calendar_id: str, page_token: Optional[str] = None, **params: Any
    ) -> dict[str, Any]:
        """
        Fetch one page of events.list.

        Args:
            calendar_id: Google calendar ID
            page_token: nextPageToken of the previous page
            **params: events.list query parameters (syncToken, timeMin, ...)

        Returns:
            Raw response dict (items, nextPageToken, nextSyncToken)
        """
        if page_token:
            params["pageToken"] = page_token

        def list_page():
            return self.service.events().list(calendarId=calendar_id, **params).execute()

        return await self._execute(list_page, f"events.list({calendar_id})")

    async def insert_event(self, calendar_id: str, body: dict[str, Any]) -> dict[str, Any]:
        def insert():
            return self.service.events().insert(
                calendarId=calendar_id,
                body=body,
                sendUpdates=SEND_UPDATES,
            ).execute()

        return await self._execute(insert, f"events.insert({calendar_id})")

    async def patch_event(
        self, calendar_id: str, event_id: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        def patch():
            return self.service.events().patch(
                calendarId=calendar_id,
                eventId=event_id,
                body=body,
                sendUpdates=SEND_UPDATES,
            ).execute()

        return await self._execute(patch, f"events.patch({calendar_id}, {event_id})")

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        def delete():
            return self.service.events().delete(
                calendarId=calendar_id,
                eventId=event_id,
                sendUpdates=SEND_UPDATES,
            ).execute()

        await self._execute(delete, f"events.delete({calendar_id}, {event_id})")

    # ------------------------------------------------------------------ #
    # Push notification channels                                          #
    # ------------------------------------------------------------------ #

    async def watch_events(self, calendar_id: str, body: dict[str, Any]) -> dict[str, Any]:
        def watch():
            return self.service.events().watch(calendarId=calendar_id, body=body).execute()

        return await self._execute(watch, f"events.watch({calendar_id})")

    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        def stop():
            return self.service.channels().stop(
                body={"id": channel_id, "resourceId": resource_id}
            ).execute()

        await self._execute(stop, f"channels.stop({channel_id})")
