"""
Google Calendar Pull Service - Google Calendar changes -> local events.

Reads the changes of one calendar source since the stored sync token (or the
full window around now when there is none) and reconciles them into
calendar_events.

Conflict policy (checked in this order):
- A row with a pending_action is never overwritten
- A locally authored row edited after Google's last update is kept

Sync token handling:
- HTTP 410 Gone on an incremental listing = token expired: the stored token
  is cleared and the listing is repeated once as a full reload
- Any other listing error is recorded on the sync state and re-raised
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from googleapiclient.errors import HttpError

from agent.services.gcal_client import GoogleCalendarClient, http_status
from agent.services.gcal_mapper import (
    GoogleEventV3,
    apply_row_values,
    as_utc,
    google_event_to_row_values,
    new_event_row,
    parse_provider_event,
)
from database.calendar_repository import CalendarSyncRepository
from database.models import (
    CalendarEvent,
    CalendarEventOrigin,
    CalendarSyncStatus,
    UserCalendarSource,
)

logger = logging.getLogger(__name__)

# Full reload window around now (no sync token)
INITIAL_PAST_WINDOW = timedelta(days=45)
INITIAL_FUTURE_WINDOW = timedelta(days=90)

PAGE_SIZE = 250

DEFAULT_PULL_ERROR = "Google Calendar sync failed"


@dataclass
class PullResult:
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    skipped_conflicts: int = 0


def _rfc3339(value: datetime) -> str:
    return as_utc(value).isoformat().replace("+00:00", "Z")


def build_list_params(sync_token: Optional[str], now: datetime) -> dict[str, Any]:
    """events.list parameters for an incremental (sync token) or full-window listing."""
    params: dict[str, Any] = {"maxResults": PAGE_SIZE, "showDeleted": True}

    if sync_token:
        params["syncToken"] = sync_token
    else:
        params["timeMin"] = _rfc3339(now - INITIAL_PAST_WINDOW)
        params["timeMax"] = _rfc3339(now + INITIAL_FUTURE_WINDOW)
        params["singleEvents"] = True
        params["orderBy"] = "updated"

    return params


async def fetch_calendar_events(
    client: GoogleCalendarClient,
    calendar_id: str,
    sync_token: Optional[str],
    now: datetime,
) -> tuple[list[dict[str, Any]], Optional[str]]:
    """
    Fetch every page of events.list.

    Returns:
        Tuple of (raw items, nextSyncToken from the last page or None)

    Raises:
        HttpError: Provider error (410 = sync token expired)
    """
    params = build_list_params(sync_token, now)
    items: list[dict[str, Any]] = []
    next_sync_token = None
    page_token = None

    while True:
        response = await client.list_events(calendar_id, page_token=page_token, **params)
        items.extend(response.get("items") or [])

        if response.get("nextSyncToken"):
            next_sync_token = response["nextSyncToken"]

        page_token = response.get("nextPageToken")
        if not page_token:
            break

    return items, next_sync_token


def _is_conflict(
    existing: CalendarEvent, event: GoogleEventV3, now: datetime
) -> Optional[str]:
    """Return the reason a remote change must not overwrite the row, or None."""
    if existing.pending_action is not None:
        return "local change pending"

    if existing.origin == CalendarEventOrigin.KAZADOR and existing.last_kazador_updated_at:
        remote_updated = event.updated or event.created or now
        if as_utc(existing.last_kazador_updated_at) > as_utc(remote_updated):
            return "local edit is newer"

    return None


async def _record_pull_error(
    repository: CalendarSyncRepository,
    source: UserCalendarSource,
    sync_token: Optional[str],
    now: datetime,
    error: Exception,
) -> None:
    await repository.upsert_sync_state(source.id, sync_token, now, str(error) or DEFAULT_PULL_ERROR)
    await repository.commit()


async def pull_remote_changes(
    repository: CalendarSyncRepository,
    client: GoogleCalendarClient,
    source: UserCalendarSource,
    now: datetime,
) -> PullResult:
    """
    Reconcile Google Calendar changes of one source into calendar_events.

    Args:
        repository: Repository bound to the run's session
        client: Authorized Google Calendar client
        source: Calendar source being synchronized
        now: Timestamp of the current run

    Returns:
        PullResult with inserted/updated/deleted/skipped_conflicts counts

    Raises:
        HttpError: Listing failed (recorded on the sync state first)
        CalendarRequestTimeoutError: Listing timed out (recorded first)
    """
    state = await repository.get_sync_state(source.id)
    return await _pull_changes(
        repository, client, source, now, state.sync_token if state else None
    )


async def _pull_changes(
    repository: CalendarSyncRepository,
    client: GoogleCalendarClient,
    source: UserCalendarSource,
    now: datetime,
    sync_token: Optional[str],
    allow_token_reset: bool = True,
) -> PullResult:
    log_extra = {"source_id": str(source.id), "calendar_id": source.calendar_id}

    existing_events = await repository.load_events_by_event_id(source.id)

    try:
        items, next_sync_token = await fetch_calendar_events(
            client, source.calendar_id, sync_token, now
        )
    except HttpError as e:
        if http_status(e) == 410 and sync_token and allow_token_reset:
            logger.info(
                f"Sync token expired for source {source.id}, performing full reload",
                extra=log_extra,
            )
            await repository.reset_sync_token(source.id, now)
            # Reload from the window; the cleared cursor is not read back
            return await _pull_changes(
                repository, client, source, now, None, allow_token_reset=False
            )
        logger.error(f"Listing events failed for source {source.id}: {e}", extra=log_extra)
        await _record_pull_error(repository, source, sync_token, now, e)
        raise
    except Exception as e:
        logger.error(f"Listing events failed for source {source.id}: {e}", extra=log_extra)
        await _record_pull_error(repository, source, sync_token, now, e)
        raise

    result = PullResult()

    for item in items:
        event = parse_provider_event(item)
        if event is None:
            continue

        existing = existing_events.get(event.id)
        if existing is not None:
            reason = _is_conflict(existing, event, now)
            if reason:
                result.skipped_conflicts += 1
                logger.info(
                    f"Skipping remote change for event {event.id}: {reason}",
                    extra={**log_extra, "event_id": event.id},
                )
                continue

        values = google_event_to_row_values(event, source, now)
        is_deleted = values["sync_status"] == CalendarSyncStatus.DELETED

        if existing is not None:
            values["origin"] = existing.origin or CalendarEventOrigin.GOOGLE
            values["last_kazador_updated_at"] = existing.last_kazador_updated_at
            apply_row_values(existing, values)
            if is_deleted:
                result.deleted += 1
            else:
                result.updated += 1
        else:
            row = new_event_row(values, now)
            repository.add_event(row)
            # Later items of the same batch update this row
            existing_events[event.id] = row
            if is_deleted:
                result.deleted += 1
            else:
                result.inserted += 1

    await repository.upsert_sync_state(source.id, next_sync_token or sync_token, now, None)
    await repository.touch_source(source, now)
    await repository.commit()

    logger.info(
        f"Pulled {len(items)} change(s) for source {source.id}: "
        f"inserted={result.inserted}, updated={result.updated}, "
        f"deleted={result.deleted}, conflicts={result.skipped_conflicts}",
        extra=log_extra,
    )
    return result
