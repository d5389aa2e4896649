"""
Unit tests for Google Calendar watch channel management.
"""

import json
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from agent.services.gcal_watch_service import (
    CHANNEL_TYPE,
    WATCH_DEFAULT_TTL,
    WatchChannelError,
    WatchOutcome,
    decode_channel_token,
    encode_channel_token,
    ensure_watch_channel,
)
from tests.fakes import http_error

WEBHOOK_URL = "https://sync.kazador.example/webhook/google-calendar"


async def _store_channel(repository, source, expiration_at, now):
    await repository.upsert_watch_channel(
        source.id,
        resource_id="resource-old",
        channel_id="channel-old",
        expiration_at=expiration_at,
        renewed_at=now - timedelta(days=1),
        metadata={"webhookUrl": WEBHOOK_URL},
    )


class TestChannelToken:
    """Tests for the opaque channel token."""

    def test_round_trip(self, source):
        decoded = decode_channel_token(encode_channel_token(source))

        assert decoded == {"userSourceId": str(source.id), "userId": str(source.user_id)}

    @pytest.mark.parametrize("token", [None, "", "not-json", "[1, 2]", json.dumps({"userId": "u"})])
    def test_invalid_tokens(self, token):
        with pytest.raises(WatchChannelError):
            decode_channel_token(token)


class TestEnsureWatchChannel:
    """Tests for ensure_watch_channel()."""

    @pytest.mark.asyncio
    async def test_disabled_without_webhook_url(self, repository, client, source, now):
        outcome = await ensure_watch_channel(repository, client, source, now)

        assert outcome == WatchOutcome.DISABLED
        assert client.watches == []

    @pytest.mark.asyncio
    async def test_creates_channel(self, repository, client, source, now):
        client.watch_response = {
            "kind": "api#channel",
            "resourceId": "resource-1",
            "expiration": str(int((now + timedelta(days=7)).timestamp() * 1000)),
        }

        outcome = await ensure_watch_channel(
            repository, client, source, now, webhook_url=WEBHOOK_URL
        )

        assert outcome == WatchOutcome.CREATED
        body = client.watches[0]
        assert body["type"] == CHANNEL_TYPE
        assert body["address"] == WEBHOOK_URL
        assert json.loads(body["token"])["userSourceId"] == str(source.id)
        channel = repository.watch_channels[source.id]
        assert channel.channel_id == body["id"]
        assert channel.resource_id == "resource-1"
        assert channel.expiration_at == now + timedelta(days=7)
        assert channel.last_renewed_at == now
        assert channel.metadata_ == {"webhookUrl": WEBHOOK_URL}
        assert repository.commits == 1

    @pytest.mark.asyncio
    async def test_missing_expiration_uses_default_ttl(self, repository, client, source, now):
        await ensure_watch_channel(repository, client, source, now, webhook_url=WEBHOOK_URL)

        assert repository.watch_channels[source.id].expiration_at == now + WATCH_DEFAULT_TTL

    @pytest.mark.asyncio
    async def test_valid_channel_left_alone(self, repository, client, source, now):
        await _store_channel(repository, source, now + timedelta(hours=7), now)

        outcome = await ensure_watch_channel(
            repository, client, source, now, webhook_url=WEBHOOK_URL
        )

        assert outcome == WatchOutcome.ACTIVE
        assert client.watches == []
        assert client.stops == []

    @pytest.mark.asyncio
    async def test_expiring_channel_replaced(self, repository, client, source, now):
        await _store_channel(repository, source, now + timedelta(hours=5), now)

        outcome = await ensure_watch_channel(
            repository, client, source, now, webhook_url=WEBHOOK_URL
        )

        assert outcome == WatchOutcome.RENEWED
        assert client.stops == [("channel-old", "resource-old")]
        assert repository.deleted_channels == ["channel-old"]
        channel = repository.watch_channels[source.id]
        assert channel.channel_id != "channel-old"
        assert channel.resource_id == "resource-primary"

    @pytest.mark.asyncio
    async def test_stop_failure_does_not_block_renewal(self, repository, client, source, now):
        """A channel Google already forgot still gets replaced."""
        await _store_channel(repository, source, now - timedelta(hours=1), now)
        client.stop_error = http_error(404, "Not Found")

        outcome = await ensure_watch_channel(
            repository, client, source, now, webhook_url=WEBHOOK_URL
        )

        assert outcome == WatchOutcome.RENEWED
        assert repository.watch_channels[source.id].channel_id != "channel-old"

    @pytest.mark.asyncio
    async def test_response_without_resource_id(self, repository, client, source, now):
        client.watch_response = {"kind": "api#channel", "id": str(uuid4())}

        with pytest.raises(WatchChannelError, match="resource id"):
            await ensure_watch_channel(repository, client, source, now, webhook_url=WEBHOOK_URL)

        assert source.id not in repository.watch_channels

    @pytest.mark.asyncio
    async def test_watch_error_propagates(self, repository, client, source, now):
        client.watch_error = http_error(400, "Bad Request")

        with pytest.raises(Exception) as exc_info:
            await ensure_watch_channel(repository, client, source, now, webhook_url=WEBHOOK_URL)

        assert exc_info.value is client.watch_error

    @pytest.mark.asyncio
    async def test_unparseable_expiration_falls_back(self, repository, client, source, now):
        client.watch_response = {"resourceId": "resource-1", "expiration": "soon"}

        await ensure_watch_channel(repository, client, source, now, webhook_url=WEBHOOK_URL)

        assert repository.watch_channels[source.id].expiration_at == datetime(
            2025, 3, 2, 12, 0, tzinfo=UTC
        )
