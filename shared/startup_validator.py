"""
Startup configuration validation module.

This module provides startup-time validation for critical configuration
to catch misconfigurations early (fail-fast) rather than at runtime when
the first sync run tries to refresh a token.

Usage:
    from shared.startup_validator import validate_startup_config, StartupValidationError

    async def main():
        try:
            await validate_startup_config()
        except StartupValidationError as e:
            logger.critical(f"Startup blocked: {e}")
            sys.exit(1)
"""

import logging

from sqlalchemy import text

from shared.config import get_settings

logger = logging.getLogger(__name__)

GOOGLE_CLIENT_ID_PLACEHOLDER = "google-client-id-placeholder"
GOOGLE_CLIENT_SECRET_PLACEHOLDER = "google-client-secret-placeholder"


class StartupValidationError(Exception):
    """Raised when critical startup validation fails."""

    pass


async def validate_startup_config(require_google_oauth: bool = True) -> dict[str, bool]:
    """
    Validate all critical configuration at startup.

    Performs tiered validation:
    - TIER 1 (CRITICAL): Block startup if any fail
    - TIER 2 (IMPORTANT): Warn but allow startup

    Args:
        require_google_oauth: If True, the Google OAuth client is CRITICAL.
                              If False, it's IMPORTANT (warn but continue).
                              Set to False for services that never refresh
                              tokens (e.g., the webhook API).

    Returns:
        dict of {check_name: passed} for all validations

    Raises:
        StartupValidationError: If any CRITICAL check fails
    """
    settings = get_settings()
    results: dict[str, bool] = {}
    critical_failures: list[str] = []

    # =========================================================================
    # TIER 1: CRITICAL (block startup if any fail)
    # =========================================================================

    # 1. Google OAuth client (needed to refresh user access tokens)
    oauth_errors = []
    if settings.GOOGLE_CLIENT_ID == GOOGLE_CLIENT_ID_PLACEHOLDER:
        oauth_errors.append("GOOGLE_CLIENT_ID is placeholder - set your OAuth client ID")
    if settings.GOOGLE_CLIENT_SECRET == GOOGLE_CLIENT_SECRET_PLACEHOLDER:
        oauth_errors.append("GOOGLE_CLIENT_SECRET is placeholder - set your OAuth client secret")

    results["google_oauth_client"] = not oauth_errors
    if not oauth_errors:
        logger.info("  [OK] Google OAuth client configured")
    elif require_google_oauth:
        critical_failures.extend(oauth_errors)
    else:
        for error in oauth_errors:
            logger.warning(f"  [WARN] {error} (not required for this service)")

    # =========================================================================
    # TIER 2: IMPORTANT (warn but allow startup)
    # =========================================================================

    # 2. Redis reachable (webhook-triggered syncs)
    try:
        from shared.redis_client import get_redis_client

        await get_redis_client().ping()
        results["redis_connection"] = True
        logger.info("  [OK] Redis connection successful")
    except Exception as e:
        logger.warning(
            f"  [WARN] Redis connection failed: {e} - webhook-triggered syncs unavailable"
        )
        results["redis_connection"] = False

    # 3. Database URL format validation
    if not settings.DATABASE_URL.startswith("postgresql+asyncpg://"):
        logger.warning(
            "DATABASE_URL should use asyncpg driver: postgresql+asyncpg://..."
        )
        results["database_url_format"] = False
    else:
        results["database_url_format"] = True

    # 4. Webhook URL (optional, Google only delivers to HTTPS)
    webhook_url = settings.GOOGLE_CALENDAR_WEBHOOK_URL
    if not webhook_url:
        logger.info(
            "  [INFO] GOOGLE_CALENDAR_WEBHOOK_URL not configured - watch channels disabled, poll-only sync"
        )
        results["calendar_webhook_url"] = False
    elif not webhook_url.startswith("https://"):
        logger.warning(
            "GOOGLE_CALENDAR_WEBHOOK_URL should be an https:// URL - Google rejects other schemes"
        )
        results["calendar_webhook_url"] = False
    else:
        results["calendar_webhook_url"] = True
        logger.info(f"  [OK] Calendar webhook URL: {webhook_url}")

    # 5. Sync interval sanity
    if settings.CALENDAR_SYNC_INTERVAL_MINUTES < 1:
        logger.warning(
            f"CALENDAR_SYNC_INTERVAL_MINUTES={settings.CALENDAR_SYNC_INTERVAL_MINUTES} "
            f"is below 1 minute - the worker will use 1 minute"
        )
        results["sync_interval"] = False
    else:
        results["sync_interval"] = True

    # =========================================================================
    # Summary and result
    # =========================================================================

    passed = sum(1 for v in results.values() if v)
    total = len(results)
    logger.info(f"Startup validation: {passed}/{total} checks passed")

    if critical_failures:
        logger.critical("=" * 60)
        logger.critical("STARTUP BLOCKED - Critical configuration errors:")
        for i, failure in enumerate(critical_failures, 1):
            logger.critical(f"  {i}. {failure}")
        logger.critical("=" * 60)
        raise StartupValidationError(
            f"Critical startup validation failed ({len(critical_failures)} errors): "
            f"{'; '.join(critical_failures)}"
        )

    return results


async def validate_database_connection() -> bool:
    """
    Validate database connection is working.

    This is a separate check because it's slower and may be called
    after basic config validation.

    Returns:
        True if database connection successful, False otherwise
    """
    try:
        from database.connection import get_async_session

        async with get_async_session() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()

        logger.info("  [OK] Database connection successful")
        return True

    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
