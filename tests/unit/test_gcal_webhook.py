"""
Unit tests for the Google Calendar push notification endpoint.
"""

import json
from datetime import timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from api.main import app
from database.models import CalendarWatchChannel
from shared.redis_client import CALENDAR_SYNC_CHANNEL

WEBHOOK_PATH = "/webhook/google-calendar"


@pytest.fixture
def test_client():
    return TestClient(app)


@pytest.fixture
def channel(source, now):
    return CalendarWatchChannel(
        id=uuid4(),
        user_source_id=source.id,
        resource_id="resource-1",
        channel_id="channel-1",
        expiration_at=now + timedelta(days=7),
        last_renewed_at=now,
        metadata_={},
        created_at=now,
        updated_at=now,
    )


def _headers(source, **overrides):
    headers = {
        "X-Goog-Channel-ID": "channel-1",
        "X-Goog-Resource-ID": "resource-1",
        "X-Goog-Resource-State": "exists",
        "X-Goog-Channel-Token": json.dumps(
            {"userSourceId": str(source.id), "userId": str(source.user_id)}
        ),
        "X-Goog-Message-Number": "42",
    }
    headers.update(overrides)
    return {key: value for key, value in headers.items() if value is not None}


class TestGoogleCalendarWebhook:
    """Tests for POST /webhook/google-calendar."""

    def test_valid_notification_publishes_sync_request(self, test_client, source, channel):
        with patch(
            "api.routes.gcal_webhook._find_watch_channel", new=AsyncMock(return_value=channel)
        ), patch("api.routes.gcal_webhook.publish_to_channel", new=AsyncMock()) as mock_publish:
            response = test_client.post(WEBHOOK_PATH, headers=_headers(source))

        assert response.status_code == 200
        assert response.json() == {"status": "received"}
        mock_publish.assert_awaited_once_with(
            CALENDAR_SYNC_CHANNEL,
            {
                "source_id": str(source.id),
                "channel_id": "channel-1",
                "resource_state": "exists",
                "message_number": "42",
            },
        )

    def test_sync_handshake_ignored(self, test_client, source):
        with patch("api.routes.gcal_webhook.publish_to_channel", new=AsyncMock()) as mock_publish:
            response = test_client.post(
                WEBHOOK_PATH, headers=_headers(source, **{"X-Goog-Resource-State": "sync"})
            )

        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}
        mock_publish.assert_not_called()

    def test_missing_channel_id(self, test_client, source):
        response = test_client.post(
            WEBHOOK_PATH, headers=_headers(source, **{"X-Goog-Channel-ID": None})
        )

        assert response.status_code == 400

    @pytest.mark.parametrize(
        "token",
        ["not-json", json.dumps({"userId": "u"}), json.dumps({"userSourceId": "abc"})],
    )
    def test_invalid_channel_token(self, test_client, source, token):
        response = test_client.post(
            WEBHOOK_PATH, headers=_headers(source, **{"X-Goog-Channel-Token": token})
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid channel token"

    def test_missing_channel_token(self, test_client, source):
        response = test_client.post(
            WEBHOOK_PATH, headers=_headers(source, **{"X-Goog-Channel-Token": None})
        )

        assert response.status_code == 400

    def test_unknown_channel_ignored(self, test_client, source):
        with patch(
            "api.routes.gcal_webhook._find_watch_channel", new=AsyncMock(return_value=None)
        ), patch("api.routes.gcal_webhook.publish_to_channel", new=AsyncMock()) as mock_publish:
            response = test_client.post(WEBHOOK_PATH, headers=_headers(source))

        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}
        mock_publish.assert_not_called()

    def test_resource_mismatch_ignored(self, test_client, source, channel):
        """A notification from a replaced channel's resource does not trigger a sync."""
        with patch(
            "api.routes.gcal_webhook._find_watch_channel", new=AsyncMock(return_value=channel)
        ), patch("api.routes.gcal_webhook.publish_to_channel", new=AsyncMock()) as mock_publish:
            response = test_client.post(
                WEBHOOK_PATH, headers=_headers(source, **{"X-Goog-Resource-ID": "resource-other"})
            )

        assert response.json() == {"status": "ignored"}
        mock_publish.assert_not_called()

    def test_source_mismatch_ignored(self, test_client, source, channel):
        channel.user_source_id = uuid4()

        with patch(
            "api.routes.gcal_webhook._find_watch_channel", new=AsyncMock(return_value=channel)
        ), patch("api.routes.gcal_webhook.publish_to_channel", new=AsyncMock()) as mock_publish:
            response = test_client.post(WEBHOOK_PATH, headers=_headers(source))

        assert response.json() == {"status": "ignored"}
        mock_publish.assert_not_called()

    def test_missing_resource_state_defaults_to_exists(self, test_client, source, channel):
        with patch(
            "api.routes.gcal_webhook._find_watch_channel", new=AsyncMock(return_value=channel)
        ), patch("api.routes.gcal_webhook.publish_to_channel", new=AsyncMock()) as mock_publish:
            test_client.post(
                WEBHOOK_PATH, headers=_headers(source, **{"X-Goog-Resource-State": None})
            )

        assert mock_publish.await_args.args[1]["resource_state"] == "exists"


class TestRootEndpoint:
    def test_root(self, test_client):
        response = test_client.get("/")

        assert response.status_code == 200
        assert "Calendar Sync" in response.json()["message"]
