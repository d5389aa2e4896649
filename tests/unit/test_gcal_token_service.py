"""
Unit tests for Google OAuth token handling.
"""

import time
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials

from agent.services.gcal_token_service import (
    TOKEN_REFRESH_METADATA_KEY,
    MissingCalendarScopesError,
    RefreshedToken,
    TokenRefreshError,
    build_credentials,
    ensure_authorized_credentials,
    has_calendar_scopes,
    persist_refreshed_token,
    refresh_access_token,
    token_needs_refresh,
)
from tests.fakes import FakeCalendarRepository, make_account


def _fake_refresh(token="fresh-access-token", expiry=datetime(2025, 3, 1, 13, 0)):
    """Credentials.refresh replacement setting a new token/expiry (naive UTC, like google-auth)."""

    def refresh(self, request):
        self.token = token
        self.expiry = expiry

    return refresh


class TestScopesAndExpiry:
    """Tests for the pure token checks."""

    def test_has_calendar_scopes(self, account):
        assert has_calendar_scopes(account) is True

    def test_missing_scope(self, now):
        account = make_account(
            now=now, scopes=["https://www.googleapis.com/auth/calendar.readonly"]
        )

        assert has_calendar_scopes(account) is False

    def test_token_valid_for_an_hour(self, account, now):
        assert token_needs_refresh(account, now) is False

    def test_token_expiring_within_leeway(self, now):
        account = make_account(now=now, expires_at=now + timedelta(seconds=59))

        assert token_needs_refresh(account, now) is True

    def test_missing_access_token(self, now):
        assert token_needs_refresh(make_account(now=now, access_token=None), now) is True

    def test_missing_expiry(self, now):
        assert token_needs_refresh(make_account(now=now, expires_at=None), now) is True

    def test_build_credentials_uses_naive_utc_expiry(self, account):
        credentials = build_credentials(account)

        assert credentials.token == "access-token"
        assert credentials.refresh_token == "refresh-token"
        assert credentials.client_id == "test-client-id.apps.googleusercontent.com"
        assert credentials.expiry == datetime(2025, 3, 1, 13, 0)
        assert credentials.expiry.tzinfo is None


class TestRefreshAccessToken:
    """Tests for refresh_access_token()."""

    @pytest.mark.asyncio
    async def test_successful_refresh(self, now):
        credentials = MagicMock()

        def refresh(request):
            credentials.token = "new-token"
            credentials.expiry = datetime(2025, 3, 1, 13, 0)

        credentials.refresh.side_effect = refresh

        refreshed = await refresh_access_token(credentials, now)

        assert refreshed == RefreshedToken(
            access_token="new-token",
            expires_at=datetime(2025, 3, 1, 13, 0, tzinfo=UTC),
            refreshed_at=now,
        )

    @pytest.mark.asyncio
    async def test_revoked_grant(self, now):
        credentials = MagicMock()
        credentials.refresh.side_effect = RefreshError("invalid_grant: Token has been revoked")

        with pytest.raises(TokenRefreshError, match="invalid_grant"):
            await refresh_access_token(credentials, now)

    @pytest.mark.asyncio
    async def test_transport_error(self, now):
        credentials = MagicMock()
        credentials.refresh.side_effect = TransportError("connection reset")

        with pytest.raises(TokenRefreshError):
            await refresh_access_token(credentials, now)

    @pytest.mark.asyncio
    async def test_response_without_token(self, now):
        """A refresh that leaves no token behind is a failure."""
        credentials = MagicMock()
        credentials.token = None
        credentials.expiry = None

        with pytest.raises(TokenRefreshError, match="Failed to refresh"):
            await refresh_access_token(credentials, now)

    @pytest.mark.asyncio
    async def test_timeout(self, now):
        credentials = MagicMock()
        credentials.refresh.side_effect = lambda request: time.sleep(0.2)

        with pytest.raises(TokenRefreshError, match="timed out"):
            await refresh_access_token(credentials, now, timeout_seconds=0.01)


class TestEnsureAuthorizedCredentials:
    """Tests for ensure_authorized_credentials()."""

    @pytest.mark.asyncio
    async def test_valid_token_not_refreshed(self, account, now):
        repository = FakeCalendarRepository()

        with patch.object(Credentials, "refresh", autospec=True) as mock_refresh:
            credentials = await ensure_authorized_credentials(repository, account, now)

        mock_refresh.assert_not_called()
        assert credentials.token == "access-token"
        assert repository.saved_tokens == []

    @pytest.mark.asyncio
    async def test_expiring_token_refreshed_and_persisted(self, now):
        account = make_account(now=now, expires_at=now + timedelta(seconds=30))
        repository = FakeCalendarRepository()

        with patch.object(Credentials, "refresh", autospec=True, side_effect=_fake_refresh()):
            credentials = await ensure_authorized_credentials(repository, account, now)

        assert credentials.token == "fresh-access-token"
        assert account.access_token == "fresh-access-token"
        assert account.expires_at == datetime(2025, 3, 1, 13, 0, tzinfo=UTC)
        assert account.token_metadata[TOKEN_REFRESH_METADATA_KEY] == now.isoformat()
        assert len(repository.saved_tokens) == 1

    @pytest.mark.asyncio
    async def test_missing_scopes_is_fatal(self, now):
        account = make_account(now=now, scopes=["openid", "email"])
        repository = FakeCalendarRepository()

        with pytest.raises(MissingCalendarScopesError, match="missing Google Calendar scopes"):
            await ensure_authorized_credentials(repository, account, now)

    @pytest.mark.asyncio
    async def test_refresh_failure_propagates(self, now):
        account = make_account(now=now, access_token=None)
        repository = FakeCalendarRepository()

        with patch.object(
            Credentials, "refresh", autospec=True, side_effect=RefreshError("invalid_grant")
        ):
            with pytest.raises(TokenRefreshError):
                await ensure_authorized_credentials(repository, account, now)

        assert repository.saved_tokens == []
        assert account.access_token is None


class TestPersistRefreshedToken:
    @pytest.mark.asyncio
    async def test_existing_metadata_preserved(self, now):
        account = make_account(now=now, token_metadata={"connectedFrom": "settings"})
        repository = FakeCalendarRepository()
        refreshed = RefreshedToken("t", now + timedelta(hours=1), now)

        await persist_refreshed_token(repository, account, refreshed)

        assert account.token_metadata == {
            "connectedFrom": "settings",
            TOKEN_REFRESH_METADATA_KEY: now.isoformat(),
        }
        assert repository.commits == 1
