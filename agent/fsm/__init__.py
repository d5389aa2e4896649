"""
FSM module for calendar event sync status control.

Public exports:
    - ALLOWED_TRANSITIONS: sync_status transition table
    - INFERRED_ACTIONS: push action implied by a pending sync_status
    - ACTION_OUTCOMES: sync_status after a successful push
    - advance: Validated sync_status transition
    - resolve_push_action: Outstanding push action of a row
    - CalendarSyncError / InvalidSyncStateError: Error hierarchy roots
"""

from agent.fsm.sync_state import (
    ACTION_OUTCOMES,
    ALLOWED_TRANSITIONS,
    INFERRED_ACTIONS,
    CalendarSyncError,
    InvalidSyncStateError,
    advance,
    coerce_pending_action,
    coerce_sync_status,
    resolve_push_action,
)

__all__ = [
    "ACTION_OUTCOMES",
    "ALLOWED_TRANSITIONS",
    "INFERRED_ACTIONS",
    "CalendarSyncError",
    "InvalidSyncStateError",
    "advance",
    "coerce_pending_action",
    "coerce_sync_status",
    "resolve_push_action",
]
