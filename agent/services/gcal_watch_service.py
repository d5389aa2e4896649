"""
Google Calendar push-notification (watch) channel management.

Keeps one events.watch channel per calendar source so Google notifies the
webhook receiver of changes between scheduled runs. Channels expire; one that
is within the renewal buffer of its expiration is stopped and replaced.

The channel token is an opaque JSON string Google echoes back on every
notification (X-Goog-Channel-Token). It identifies the source to sync.
"""

import json
import logging
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from agent.fsm.sync_state import CalendarSyncError
from agent.services.gcal_client import GoogleCalendarClient
from agent.services.gcal_mapper import as_utc
from database.calendar_repository import CalendarSyncRepository
from database.models import UserCalendarSource
from shared.config import get_settings

logger = logging.getLogger(__name__)

# Replace channels that expire within this window
WATCH_RENEWAL_BUFFER = timedelta(hours=6)
# Used when Google omits the expiration in the watch response
WATCH_DEFAULT_TTL = timedelta(hours=24)

CHANNEL_TYPE = "web_hook"


class WatchChannelError(CalendarSyncError):
    """Watch channel creation failed or a channel token is malformed."""


class WatchOutcome(str, Enum):
    DISABLED = "disabled"  # No webhook URL configured
    ACTIVE = "active"      # Existing channel still valid
    CREATED = "created"
    RENEWED = "renewed"    # Expiring channel replaced


def encode_channel_token(source: UserCalendarSource) -> str:
    return json.dumps({"userSourceId": str(source.id), "userId": str(source.user_id)})


def decode_channel_token(token: Optional[str]) -> dict[str, str]:
    """
    Decode an X-Goog-Channel-Token value.

    Returns:
        Dict with userSourceId and userId

    Raises:
        WatchChannelError: Token missing, not JSON, or without userSourceId
    """
    if not token:
        raise WatchChannelError("Missing channel token")

    try:
        payload = json.loads(token)
    except (TypeError, ValueError) as e:
        raise WatchChannelError("Channel token is not valid JSON") from e

    if not isinstance(payload, dict) or not payload.get("userSourceId"):
        raise WatchChannelError("Channel token has no userSourceId")

    return {
        "userSourceId": str(payload["userSourceId"]),
        "userId": str(payload.get("userId") or ""),
    }


def _expiration_from_response(response: dict[str, Any], now: datetime) -> datetime:
    """Channel expiration (epoch milliseconds string) or now + default TTL."""
    expiration = response.get("expiration")
    if expiration:
        try:
            return datetime.fromtimestamp(int(expiration) / 1000, tz=UTC)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring unparseable watch expiration {expiration!r}")
    return as_utc(now) + WATCH_DEFAULT_TTL


async def ensure_watch_channel(
    repository: CalendarSyncRepository,
    client: GoogleCalendarClient,
    source: UserCalendarSource,
    now: datetime,
    webhook_url: Optional[str] = None,
) -> WatchOutcome:
    """
    Make sure the source has a live watch channel.

    Args:
        repository: Repository bound to the run's session
        client: Authorized Google Calendar client
        source: Calendar source being synchronized
        now: Timestamp of the current run
        webhook_url: Notification address (default: GOOGLE_CALENDAR_WEBHOOK_URL)

    Returns:
        WatchOutcome describing what was done

    Raises:
        WatchChannelError: Google returned no resourceId for the new channel
        HttpError: events.watch failed
    """
    if webhook_url is None:
        webhook_url = get_settings().GOOGLE_CALENDAR_WEBHOOK_URL
    if not webhook_url:
        return WatchOutcome.DISABLED

    log_extra = {"source_id": str(source.id), "calendar_id": source.calendar_id}

    existing = await repository.get_watch_channel(source.id)
    replacing = False

    if existing is not None:
        if as_utc(existing.expiration_at) - as_utc(now) > WATCH_RENEWAL_BUFFER:
            return WatchOutcome.ACTIVE

        try:
            await client.stop_channel(existing.channel_id, existing.resource_id)
        except Exception as e:
            # Channel may already have expired on Google's side
            logger.warning(
                f"Failed to stop watch channel {existing.channel_id}: {e}",
                extra={**log_extra, "channel_id": existing.channel_id},
            )

        await repository.delete_watch_channel(existing)
        replacing = True

    channel_id = str(uuid4())
    response = await client.watch_events(
        source.calendar_id,
        body={
            "id": channel_id,
            "type": CHANNEL_TYPE,
            "address": webhook_url,
            "token": encode_channel_token(source),
        },
    )

    resource_id = (response or {}).get("resourceId")
    if not resource_id:
        raise WatchChannelError("Google Calendar did not return a watch channel resource id")

    expiration_at = _expiration_from_response(response, now)

    await repository.upsert_watch_channel(
        source.id,
        resource_id=resource_id,
        channel_id=channel_id,
        expiration_at=expiration_at,
        renewed_at=now,
        metadata={"webhookUrl": webhook_url},
    )
    await repository.commit()

    outcome = WatchOutcome.RENEWED if replacing else WatchOutcome.CREATED
    logger.info(
        f"Watch channel {channel_id} {outcome.value} for source {source.id}, "
        f"expires {expiration_at.isoformat()}",
        extra={**log_extra, "channel_id": channel_id},
    )
    return outcome
