"""Google Calendar push notification route handler."""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Header, HTTPException
from fastapi.responses import JSONResponse

from agent.services.gcal_watch_service import WatchChannelError, decode_channel_token
from api.models.gcal_webhook import CalendarSyncRequest
from database.calendar_repository import CalendarSyncRepository
from database.connection import get_async_session
from database.models import CalendarWatchChannel
from shared.redis_client import CALENDAR_SYNC_CHANNEL, publish_to_channel

logger = logging.getLogger(__name__)

router = APIRouter()

# First notification Google sends after a channel is created
SYNC_HANDSHAKE_STATE = "sync"


async def _find_watch_channel(channel_id: str) -> Optional[CalendarWatchChannel]:
    async with get_async_session() as session:
        return await CalendarSyncRepository(session).get_watch_channel_by_channel_id(channel_id)


@router.post("/google-calendar")
async def receive_google_calendar_notification(
    x_goog_channel_id: Optional[str] = Header(default=None),
    x_goog_resource_id: Optional[str] = Header(default=None),
    x_goog_resource_state: Optional[str] = Header(default=None),
    x_goog_channel_token: Optional[str] = Header(default=None),
    x_goog_message_number: Optional[str] = Header(default=None),
) -> JSONResponse:
    """
    Receive a Google Calendar change notification and request a sync.

    The notification carries no event data; it only tells which channel
    fired. The channel token identifies the calendar source, which is
    cross-checked against the stored channel before a sync request is
    published to the 'calendar_sync_requests' Redis channel.

    Returns:
        200 {"status": "received"} when a sync was requested
        200 {"status": "ignored"} for handshakes and unknown/stale channels

    Raises:
        HTTPException: 400 if channel headers or token are missing/malformed
    """
    if not x_goog_channel_id:
        raise HTTPException(status_code=400, detail="Missing X-Goog-Channel-ID header")

    if x_goog_resource_state == SYNC_HANDSHAKE_STATE:
        logger.debug(f"Watch channel {x_goog_channel_id} handshake received")
        return JSONResponse(status_code=200, content={"status": "ignored"})

    try:
        token = decode_channel_token(x_goog_channel_token)
        source_id = UUID(token["userSourceId"])
    except (WatchChannelError, ValueError) as e:
        logger.warning(
            f"Rejected notification for channel {x_goog_channel_id}: {e}",
            extra={"channel_id": x_goog_channel_id},
        )
        raise HTTPException(status_code=400, detail="Invalid channel token") from e

    channel = await _find_watch_channel(x_goog_channel_id)
    if channel is None:
        logger.info(
            f"Ignoring notification for unknown channel {x_goog_channel_id}",
            extra={"channel_id": x_goog_channel_id},
        )
        return JSONResponse(status_code=200, content={"status": "ignored"})

    if channel.resource_id != x_goog_resource_id or channel.user_source_id != source_id:
        logger.warning(
            f"Ignoring notification for channel {x_goog_channel_id}: "
            f"resource/source mismatch with stored channel",
            extra={"channel_id": x_goog_channel_id, "source_id": str(source_id)},
        )
        return JSONResponse(status_code=200, content={"status": "ignored"})

    sync_request = CalendarSyncRequest(
        source_id=source_id,
        channel_id=x_goog_channel_id,
        resource_state=x_goog_resource_state or "exists",
        message_number=x_goog_message_number,
    )

    await publish_to_channel(CALENDAR_SYNC_CHANNEL, sync_request.model_dump(mode="json"))

    logger.info(
        f"Calendar sync requested for source {source_id} "
        f"(state={sync_request.resource_state}, message={x_goog_message_number})",
        extra={"channel_id": x_goog_channel_id, "source_id": str(source_id)},
    )
    return JSONResponse(status_code=200, content={"status": "received"})
