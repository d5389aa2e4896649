"""
Google OAuth token management for calendar sync.

Bridges the tokens stored on oauth_accounts and google-auth Credentials:
checks the granted scopes, refreshes an access token that is missing or about
to expire, and writes the refreshed token back to the account row.

A refreshed token is a return value plus an explicit persist step; nothing is
cached in memory between runs.

Usage:
    credentials = await ensure_authorized_credentials(repository, account, now)
    client = GoogleCalendarClient.from_credentials(credentials)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from agent.fsm.sync_state import CalendarSyncError
from agent.services.gcal_mapper import as_utc
from database.calendar_repository import CalendarSyncRepository
from database.models import OAuthAccount
from shared.config import get_settings

logger = logging.getLogger(__name__)

REQUIRED_CALENDAR_SCOPES = frozenset(
    {
        "https://www.googleapis.com/auth/calendar.events",
        "https://www.googleapis.com/auth/calendar.readonly",
    }
)

# Refresh when the access token expires within this window
TOKEN_REFRESH_LEEWAY = timedelta(seconds=60)

TOKEN_REFRESH_METADATA_KEY = "lastCalendarTokenRefreshAt"


class CalendarAuthError(CalendarSyncError):
    """Credentials for a calendar source cannot be used (fatal for that source)."""


class MissingCalendarScopesError(CalendarAuthError):
    """The OAuth account was not granted the calendar scopes."""


class TokenRefreshError(CalendarAuthError):
    """The refresh-token exchange failed or returned no usable token."""


@dataclass(frozen=True)
class RefreshedToken:
    access_token: str
    expires_at: datetime
    refreshed_at: datetime


def has_calendar_scopes(account: OAuthAccount) -> bool:
    """Check that the account carries every required calendar scope."""
    granted = set(account.scopes or [])
    return REQUIRED_CALENDAR_SCOPES.issubset(granted)


def token_needs_refresh(account: OAuthAccount, now: datetime) -> bool:
    """True when the access token or its expiry is missing, or expiry is within 60s of now."""
    if not account.access_token or account.expires_at is None:
        return True
    return as_utc(account.expires_at) - as_utc(now) < TOKEN_REFRESH_LEEWAY


def build_credentials(account: OAuthAccount) -> Credentials:
    """
    Build google-auth user credentials from an oauth_accounts row.

    google-auth compares expiry against a naive UTC clock, so the stored
    timezone-aware expiry is converted before it is handed over.
    """
    settings = get_settings()

    expiry = None
    if account.expires_at is not None:
        expiry = as_utc(account.expires_at).replace(tzinfo=None)

    return Credentials(
        token=account.access_token,
        refresh_token=account.refresh_token,
        token_uri=settings.GOOGLE_TOKEN_URI,
        client_id=settings.GOOGLE_CLIENT_ID,
        client_secret=settings.GOOGLE_CLIENT_SECRET,
        scopes=list(account.scopes or []),
        expiry=expiry,
    )


async def refresh_access_token(
    credentials: Credentials,
    now: datetime,
    timeout_seconds: Optional[float] = None,
) -> RefreshedToken:
    """
    Exchange the refresh token for a new access token.

    Credentials.refresh() is blocking, so it runs in the default executor and
    is bounded by GCAL_REQUEST_TIMEOUT_SECONDS.

    Args:
        credentials: Credentials holding a refresh token
        now: Timestamp of the current run (recorded as the refresh time)
        timeout_seconds: Override for the request timeout

    Returns:
        RefreshedToken with the new access token and its expiry

    Raises:
        TokenRefreshError: Revoked grant, transport failure, timeout or an
            incomplete token response
    """
    if timeout_seconds is None:
        timeout_seconds = get_settings().GCAL_REQUEST_TIMEOUT_SECONDS

    loop = asyncio.get_running_loop()
    try:
        await asyncio.wait_for(
            loop.run_in_executor(None, credentials.refresh, Request()),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise TokenRefreshError(
            f"Google token refresh timed out after {timeout_seconds}s"
        ) from e
    except GoogleAuthError as e:
        raise TokenRefreshError(f"Failed to refresh Google access token: {e}") from e

    if not credentials.token or credentials.expiry is None:
        raise TokenRefreshError("Failed to refresh Google access token")

    return RefreshedToken(
        access_token=credentials.token,
        expires_at=as_utc(credentials.expiry),
        refreshed_at=now,
    )


async def persist_refreshed_token(
    repository: CalendarSyncRepository,
    account: OAuthAccount,
    refreshed: RefreshedToken,
) -> None:
    """Write the refreshed token, its expiry and the refresh timestamp to the account."""
    metadata = dict(account.token_metadata or {})
    metadata[TOKEN_REFRESH_METADATA_KEY] = refreshed.refreshed_at.isoformat()

    await repository.save_account_token(
        account,
        access_token=refreshed.access_token,
        expires_at=refreshed.expires_at,
        token_metadata=metadata,
    )


async def ensure_authorized_credentials(
    repository: CalendarSyncRepository,
    account: OAuthAccount,
    now: datetime,
) -> Credentials:
    """
    Return credentials usable for the rest of a sync run.

    Args:
        repository: Repository used to persist a refreshed token
        account: OAuth account linked to the calendar source
        now: Timestamp of the current run

    Returns:
        google-auth Credentials with a valid access token

    Raises:
        MissingCalendarScopesError: Account lacks calendar.events/calendar.readonly
        TokenRefreshError: Refresh was needed and failed
    """
    if not has_calendar_scopes(account):
        raise MissingCalendarScopesError(
            f"Account {account.account_email} is missing Google Calendar scopes"
        )

    credentials = build_credentials(account)

    if token_needs_refresh(account, now):
        refreshed = await refresh_access_token(credentials, now)
        await persist_refreshed_token(repository, account, refreshed)
        logger.info(
            f"Refreshed Google access token for account {account.id} "
            f"(expires {refreshed.expires_at.isoformat()})",
            extra={"account_id": str(account.id)},
        )

    return credentials
