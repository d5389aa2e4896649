"""
Google Calendar Push Service - local changes -> Google Calendar.

Applies every outstanding local mutation of one calendar source to Google
Calendar before the pull phase runs.

Architecture:
- The local calendar_events row is the record of intent (pending_action or a
  pending sync_status)
- Each row is pushed and committed on its own; a failing row is marked
  failed and keeps its action so the next run retries it
- Deletes are idempotent: an event already gone on Google (404/410) counts
  as deleted

Usage:
    from agent.services.gcal_push_service import push_pending_local_changes

    result = await push_pending_local_changes(repository, client, source, now)
    print(result.created, result.failed)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from googleapiclient.errors import HttpError

from agent.fsm.sync_state import (
    ACTION_OUTCOMES,
    CalendarSyncError,
    InvalidSyncStateError,
    advance,
    resolve_push_action,
)
from agent.services.gcal_client import GoogleCalendarClient, http_status
from agent.services.gcal_mapper import (
    apply_row_values,
    build_google_event_payload,
    google_event_to_row_values,
    parse_provider_event,
)
from database.calendar_repository import CalendarSyncRepository
from database.models import (
    CalendarEvent,
    CalendarEventOrigin,
    CalendarPendingAction,
    CalendarSyncStatus,
    UserCalendarSource,
)

logger = logging.getLogger(__name__)

# Delete responses meaning the event no longer exists on Google
ALREADY_GONE_STATUSES = (404, 410)

DEFAULT_PUSH_ERROR = "Failed to sync with Google Calendar"


@dataclass
class PushResult:
    created: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0


async def _push_delete(client: GoogleCalendarClient, row: CalendarEvent, now: datetime) -> None:
    if row.event_id:
        try:
            await client.delete_event(row.calendar_id, row.event_id)
        except HttpError as e:
            if http_status(e) not in ALREADY_GONE_STATUSES:
                raise
            logger.info(
                f"Event {row.event_id} already gone on Google Calendar "
                f"(HTTP {http_status(e)}), marking deleted",
                extra={"event_id": row.event_id},
            )

    advance(row, ACTION_OUTCOMES[CalendarPendingAction.DELETE])
    row.pending_action = None
    row.sync_error = None
    row.last_synced_at = now
    row.last_google_updated_at = now


def _apply_push_response(
    row: CalendarEvent,
    response: Optional[dict[str, Any]],
    source: UserCalendarSource,
    now: datetime,
) -> None:
    """Persist Google's copy of a pushed event (authoritative event_id, etag, timestamps)."""
    event = parse_provider_event(response) if response else None
    if event is None:
        raise CalendarSyncError("Google Calendar did not return an event payload")

    values = google_event_to_row_values(event, source, now)
    values["origin"] = row.origin or CalendarEventOrigin.KAZADOR
    values["last_kazador_updated_at"] = row.last_kazador_updated_at or now
    apply_row_values(row, values)


async def _mark_failed(
    repository: CalendarSyncRepository,
    row: CalendarEvent,
    action: CalendarPendingAction,
    error: Exception,
    now: datetime,
) -> None:
    advance(row, CalendarSyncStatus.FAILED)
    row.sync_error = str(error) or DEFAULT_PUSH_ERROR
    row.last_synced_at = now
    # Keep the action so the next run retries it
    row.pending_action = action
    await repository.commit()


async def push_pending_local_changes(
    repository: CalendarSyncRepository,
    client: GoogleCalendarClient,
    source: UserCalendarSource,
    now: datetime,
) -> PushResult:
    """
    Push all outstanding local mutations of a calendar source to Google.

    Rows are processed in (created_at, id) order. The action of each row is
    its explicit pending_action, else the one implied by sync_status. Rows
    whose action cannot be resolved are skipped.

    - delete: events.delete by event_id (404/410 = success), row -> deleted
    - create, or update of a row without event_id: events.insert
    - update: events.patch by event_id

    A failing row does not abort the batch: it is marked failed with the
    error message and keeps its action for the next run.

    Args:
        repository: Repository bound to the run's session
        client: Authorized Google Calendar client
        source: Calendar source being synchronized
        now: Timestamp of the current run

    Returns:
        PushResult with created/updated/deleted/failed counts
    """
    result = PushResult()

    rows = await repository.list_pending_events(source.id)
    if not rows:
        return result

    logger.info(
        f"Pushing {len(rows)} pending local change(s) for source {source.id}",
        extra={"source_id": str(source.id), "calendar_id": source.calendar_id},
    )

    for row in rows:
        try:
            action = resolve_push_action(row)
        except InvalidSyncStateError as e:
            logger.error(f"Skipping event row {row.id}: {e}")
            row.sync_error = str(e)
            await repository.commit()
            result.failed += 1
            continue

        if action is None:
            continue

        try:
            if action == CalendarPendingAction.DELETE:
                await _push_delete(client, row, now)
                await repository.commit()
                result.deleted += 1

            elif action == CalendarPendingAction.CREATE or not row.event_id:
                response = await client.insert_event(
                    row.calendar_id, build_google_event_payload(row)
                )
                try:
                    _apply_push_response(row, response, source, now)
                except Exception:
                    # The event exists on Google now: retry as a patch, never a second insert
                    if response and response.get("id"):
                        row.event_id = response["id"]
                        action = CalendarPendingAction.UPDATE
                    raise
                await repository.commit()
                result.created += 1
                logger.info(
                    f"Created Google Calendar event {row.event_id} for row {row.id}",
                    extra={"event_id": row.event_id, "source_id": str(source.id)},
                )

            else:
                response = await client.patch_event(
                    row.calendar_id, row.event_id, build_google_event_payload(row)
                )
                _apply_push_response(row, response, source, now)
                await repository.commit()
                result.updated += 1

        except Exception as e:
            logger.error(
                f"Failed to push {action.value} for event row {row.id} "
                f"(source {source.id}): {e}",
                exc_info=True,
                extra={"event_id": row.event_id, "source_id": str(source.id)},
            )
            await _mark_failed(repository, row, action, e, now)
            result.failed += 1

    logger.info(
        f"Push finished for source {source.id}: created={result.created}, "
        f"updated={result.updated}, deleted={result.deleted}, failed={result.failed}",
        extra={"source_id": str(source.id)},
    )
    return result
