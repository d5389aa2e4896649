"""
Agent services module.

Provides the Google Calendar sync services used by the sync worker.

Services:
- gcal_client: Async wrapper over the Calendar v3 API (timeouts, executor)
- gcal_mapper: Provider event schema and row <-> payload translation
- gcal_token_service: OAuth scope checks and access token refresh
- gcal_push_service: Local pending changes -> Google Calendar
- gcal_pull_service: Google Calendar changes -> local events (sync tokens)
- gcal_watch_service: Push-notification channel lifecycle
"""

from agent.services.gcal_client import (
    CalendarRequestTimeoutError,
    GoogleCalendarClient,
    http_status,
)
from agent.services.gcal_mapper import (
    GoogleEventV3,
    build_google_event_payload,
    google_event_to_row_values,
    parse_provider_event,
)
from agent.services.gcal_pull_service import PullResult, pull_remote_changes
from agent.services.gcal_push_service import PushResult, push_pending_local_changes
from agent.services.gcal_token_service import (
    CalendarAuthError,
    MissingCalendarScopesError,
    TokenRefreshError,
    ensure_authorized_credentials,
)
from agent.services.gcal_watch_service import (
    WatchChannelError,
    WatchOutcome,
    decode_channel_token,
    encode_channel_token,
    ensure_watch_channel,
)

__all__ = [
    # Client
    "CalendarRequestTimeoutError",
    "GoogleCalendarClient",
    "http_status",
    # Mapper
    "GoogleEventV3",
    "build_google_event_payload",
    "google_event_to_row_values",
    "parse_provider_event",
    # Token service
    "CalendarAuthError",
    "MissingCalendarScopesError",
    "TokenRefreshError",
    "ensure_authorized_credentials",
    # Push / pull
    "PullResult",
    "PushResult",
    "pull_remote_changes",
    "push_pending_local_changes",
    # Watch channels
    "WatchChannelError",
    "WatchOutcome",
    "decode_channel_token",
    "encode_channel_token",
    "ensure_watch_channel",
]
