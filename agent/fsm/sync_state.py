"""
Sync status state machine for calendar_events rows.

A row's sync_status and pending_action together say which side owes work:

- pending / needs_update / delete_pending: a local mutation not pushed yet
  (the push action can be inferred from the status alone)
- failed: the last push attempt failed; pending_action keeps the retry
- synced / deleted: reconciled with Google Calendar

The push and pull engines move rows between statuses only through advance(),
which rejects values outside the enumerations and transitions the table does
not allow.
"""

import logging
from typing import Any, Optional

from database.models import CalendarEvent, CalendarPendingAction, CalendarSyncStatus

logger = logging.getLogger(__name__)


class CalendarSyncError(Exception):
    """Base class for calendar synchronization errors."""


class InvalidSyncStateError(CalendarSyncError):
    """Stored sync_status/pending_action is unknown or a transition is illegal."""


# Push action implied by a status when pending_action is not set
INFERRED_ACTIONS: dict[CalendarSyncStatus, CalendarPendingAction] = {
    CalendarSyncStatus.PENDING: CalendarPendingAction.CREATE,
    CalendarSyncStatus.NEEDS_UPDATE: CalendarPendingAction.UPDATE,
    CalendarSyncStatus.DELETE_PENDING: CalendarPendingAction.DELETE,
}

# Status a row lands in after a successful push of each action
ACTION_OUTCOMES: dict[CalendarPendingAction, CalendarSyncStatus] = {
    CalendarPendingAction.CREATE: CalendarSyncStatus.SYNCED,
    CalendarPendingAction.UPDATE: CalendarSyncStatus.SYNCED,
    CalendarPendingAction.DELETE: CalendarSyncStatus.DELETED,
}

# from_status -> statuses the engines may write
ALLOWED_TRANSITIONS: dict[CalendarSyncStatus, frozenset[CalendarSyncStatus]] = {
    CalendarSyncStatus.PENDING: frozenset(
        {CalendarSyncStatus.SYNCED, CalendarSyncStatus.DELETED, CalendarSyncStatus.FAILED}
    ),
    CalendarSyncStatus.NEEDS_UPDATE: frozenset(
        {CalendarSyncStatus.SYNCED, CalendarSyncStatus.DELETED, CalendarSyncStatus.FAILED}
    ),
    # An explicit create/update on a delete_pending row overrides the delete
    CalendarSyncStatus.DELETE_PENDING: frozenset(
        {CalendarSyncStatus.SYNCED, CalendarSyncStatus.DELETED, CalendarSyncStatus.FAILED}
    ),
    CalendarSyncStatus.FAILED: frozenset(
        {CalendarSyncStatus.SYNCED, CalendarSyncStatus.DELETED, CalendarSyncStatus.FAILED}
    ),
    CalendarSyncStatus.SYNCED: frozenset(
        {CalendarSyncStatus.SYNCED, CalendarSyncStatus.DELETED, CalendarSyncStatus.FAILED}
    ),
    # Deleted rows can come back when Google restores the event
    CalendarSyncStatus.DELETED: frozenset(
        {CalendarSyncStatus.SYNCED, CalendarSyncStatus.DELETED, CalendarSyncStatus.FAILED}
    ),
}


def coerce_sync_status(value: Any) -> CalendarSyncStatus:
    """Convert a stored value to CalendarSyncStatus or raise InvalidSyncStateError."""
    if isinstance(value, CalendarSyncStatus):
        return value
    try:
        return CalendarSyncStatus(value)
    except ValueError as e:
        raise InvalidSyncStateError(f"Unknown sync_status: {value!r}") from e


def coerce_pending_action(value: Any) -> Optional[CalendarPendingAction]:
    """Convert a stored value to CalendarPendingAction (None stays None)."""
    if value is None or isinstance(value, CalendarPendingAction):
        return value
    try:
        return CalendarPendingAction(value)
    except ValueError as e:
        raise InvalidSyncStateError(f"Unknown pending_action: {value!r}") from e


def resolve_push_action(row: CalendarEvent) -> Optional[CalendarPendingAction]:
    """
    Resolve the outstanding push action of a row.

    An explicit pending_action wins; otherwise the action is inferred from
    sync_status (pending -> create, needs_update -> update,
    delete_pending -> delete).

    Args:
        row: calendar_events row

    Returns:
        Action to push, or None when the row has no outstanding local change

    Raises:
        InvalidSyncStateError: Stored values are outside the enumerations
    """
    explicit = coerce_pending_action(row.pending_action)
    if explicit is not None:
        return explicit
    return INFERRED_ACTIONS.get(coerce_sync_status(row.sync_status))


def advance(row: CalendarEvent, target: CalendarSyncStatus) -> CalendarSyncStatus:
    """
    Move a row to a new sync_status, enforcing ALLOWED_TRANSITIONS.

    Returns:
        The new status

    Raises:
        InvalidSyncStateError: Unknown current/target value or illegal transition
    """
    current = coerce_sync_status(row.sync_status)
    target = coerce_sync_status(target)

    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidSyncStateError(
            f"Illegal sync_status transition {current.value} -> {target.value} "
            f"for event row {row.id}"
        )

    if current != target:
        logger.debug(f"Event row {row.id}: sync_status {current.value} -> {target.value}")
    row.sync_status = target
    return target
