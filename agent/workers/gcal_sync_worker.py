"""
Google Calendar Sync Worker - Bidirectional sync between Google Calendar and PostgreSQL.

This worker handles, for every connected calendar source:
1. Token refresh (oauth_accounts)
2. Push: local pending changes -> Google Calendar
3. Pull: Google Calendar changes -> calendar_events (sync tokens)
4. Watch: keep a push-notification channel alive

Architecture:
    - Runs every N minutes (CALENDAR_SYNC_INTERVAL_MINUTES)
    - Also runs a single-source sync when the webhook receiver publishes a
      request on the calendar_sync_requests Redis channel
    - Sources are processed sequentially; one failing source never stops
      the others (its error is reported in the job summary)
    - Runs are serialized with one asyncio.Lock per process

Run:
    python -m agent.workers.gcal_sync_worker
"""

import asyncio
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Optional
from uuid import UUID

from google.oauth2.credentials import Credentials

from agent.services.gcal_client import GoogleCalendarClient
from agent.services.gcal_pull_service import pull_remote_changes
from agent.services.gcal_push_service import push_pending_local_changes
from agent.services.gcal_token_service import ensure_authorized_credentials
from agent.services.gcal_watch_service import ensure_watch_channel
from database.calendar_repository import CalendarSyncRepository
from database.connection import engine, get_async_session
from database.models import UserCalendarSource
from shared.config import get_settings
from shared.logging_config import configure_logging
from shared.redis_client import CALENDAR_SYNC_CHANNEL, close_redis_client, get_redis_client
from shared.startup_validator import StartupValidationError, validate_startup_config

# Configure logger
logger = logging.getLogger(__name__)

HEALTH_FILE_NAME = "calendar_sync_worker_health.json"
# Missed sync intervals before the last run counts as stale
HEALTH_STALE_INTERVALS = 3

ACCOUNT_NOT_FOUND_ERROR = "Google account not found"
UNKNOWN_SYNC_ERROR = "Unknown Google Calendar sync error"

# Serializes scheduled and webhook-triggered runs within this process
_sync_lock = asyncio.Lock()


# ============================================================================
# Job summary
# ============================================================================


@dataclass
class CalendarSyncJobSummary:
    """Aggregate counts of one sync job across all processed sources."""

    sources_processed: int = 0
    pushed_created: int = 0
    pushed_updated: int = 0
    pushed_deleted: int = 0
    pulled_inserted: int = 0
    pulled_updated: int = 0
    pulled_deleted: int = 0
    skipped_due_to_conflicts: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def add_error(self, source_id: Any, message: str) -> None:
        self.errors.append({"source_id": str(source_id), "message": message})

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourcesProcessed": self.sources_processed,
            "pushedCreated": self.pushed_created,
            "pushedUpdated": self.pushed_updated,
            "pushedDeleted": self.pushed_deleted,
            "pulledInserted": self.pulled_inserted,
            "pulledUpdated": self.pulled_updated,
            "pulledDeleted": self.pulled_deleted,
            "skippedDueToConflicts": self.skipped_due_to_conflicts,
            "errors": [
                {"sourceId": error["source_id"], "message": error["message"]}
                for error in self.errors
            ],
        }


# ============================================================================
# Sync job
# ============================================================================


def build_calendar_client(credentials: Credentials) -> GoogleCalendarClient:
    return GoogleCalendarClient.from_credentials(credentials)


async def sync_calendar_source(
    repository: CalendarSyncRepository,
    source: UserCalendarSource,
    now: datetime,
    summary: CalendarSyncJobSummary,
) -> None:
    """
    Run token -> push -> pull -> watch for one calendar source.

    Counts are added to summary as each phase completes. Exceptions propagate
    to the caller.
    """
    credentials = await ensure_authorized_credentials(repository, source.account, now)
    client = build_calendar_client(credentials)

    push_result = await push_pending_local_changes(repository, client, source, now)
    summary.pushed_created += push_result.created
    summary.pushed_updated += push_result.updated
    summary.pushed_deleted += push_result.deleted

    pull_result = await pull_remote_changes(repository, client, source, now)
    summary.pulled_inserted += pull_result.inserted
    summary.pulled_updated += pull_result.updated
    summary.pulled_deleted += pull_result.deleted
    summary.skipped_due_to_conflicts += pull_result.skipped_conflicts

    await ensure_watch_channel(repository, client, source, now)


async def run_calendar_sync_job(
    repository: Optional[CalendarSyncRepository] = None,
    now: Optional[datetime] = None,
    source_id: Optional[UUID] = None,
) -> CalendarSyncJobSummary:
    """
    Synchronize every calendar source (or only source_id).

    Args:
        repository: Repository to use; a database session is opened when None
        now: Timestamp of the run (default: current UTC time)
        source_id: Restrict the run to one source (webhook-triggered runs)

    Returns:
        CalendarSyncJobSummary with aggregate counts and per-source errors
    """
    now = now or datetime.now(UTC)

    if repository is None:
        async with get_async_session() as session:
            return await run_calendar_sync_job(
                CalendarSyncRepository(session), now=now, source_id=source_id
            )

    summary = CalendarSyncJobSummary()

    sources = await repository.list_sources(source_id)
    source_ids = [source.id for source in sources]
    if not source_ids:
        logger.info("No calendar sources to sync")
        return summary

    logger.info(f"Syncing {len(source_ids)} calendar source(s)")

    for current_id in source_ids:
        summary.sources_processed += 1
        log_extra = {"source_id": str(current_id)}

        try:
            # Reload: a rollback after a failed source expires loaded rows
            loaded = await repository.list_sources(current_id)
            if not loaded:
                logger.warning(f"Calendar source {current_id} disappeared during the run")
                continue
            source = loaded[0]

            if source.account is None:
                logger.error(
                    f"Calendar source {current_id} has no Google account", extra=log_extra
                )
                summary.add_error(current_id, ACCOUNT_NOT_FOUND_ERROR)
                continue

            await sync_calendar_source(repository, source, now, summary)

        except Exception as e:
            logger.error(
                f"Error syncing calendar source {current_id}: {e}",
                exc_info=True,
                extra=log_extra,
            )
            await repository.rollback()
            summary.add_error(current_id, str(e) or UNKNOWN_SYNC_ERROR)

    logger.info(
        f"Completed calendar sync: sources={summary.sources_processed}, "
        f"pushed={summary.pushed_created}/{summary.pushed_updated}/{summary.pushed_deleted}, "
        f"pulled={summary.pulled_inserted}/{summary.pulled_updated}/{summary.pulled_deleted}, "
        f"conflicts={summary.skipped_due_to_conflicts}, errors={len(summary.errors)}"
    )
    return summary


async def run_locked_sync(source_id: Optional[UUID] = None) -> CalendarSyncJobSummary:
    """Run a sync job, waiting for any run already in progress in this process."""
    async with _sync_lock:
        return await run_calendar_sync_job(source_id=source_id)


# ============================================================================
# Health check
# ============================================================================


async def update_health_check(
    last_run: datetime,
    status: str,
    summary: Optional[CalendarSyncJobSummary] = None,
) -> None:
    """
    Update health check file with job statistics.
    """
    settings = get_settings()
    health_dir = Path(settings.HEALTH_CHECK_DIR)
    health_dir.mkdir(parents=True, exist_ok=True)
    health_file = health_dir / HEALTH_FILE_NAME
    temp_file = health_dir / f"calendar_sync_worker_health.{int(time.time())}.tmp"

    health_data: dict[str, Any] = {
        "last_run": last_run.isoformat(),
        "status": status,
        "last_updated": datetime.now(UTC).isoformat(),
    }
    if summary is not None:
        health_data.update(summary.to_dict())

    try:
        temp_file.write_text(json.dumps(health_data, indent=2))
        temp_file.rename(health_file)
        logger.debug(f"Health check file updated: {health_file}")
    except Exception as e:
        logger.error(f"Failed to write health check file: {e}", exc_info=True)


def read_health_check(now: Optional[datetime] = None) -> dict[str, Any]:
    """
    Summarize the worker health file for the API health endpoint.

    status is the last run's status, "stale" when no run was recorded within
    HEALTH_STALE_INTERVALS sync intervals, or "unknown" when there is no
    readable file yet.
    """
    settings = get_settings()
    health_file = Path(settings.HEALTH_CHECK_DIR) / HEALTH_FILE_NAME
    now = now or datetime.now(UTC)

    try:
        data = json.loads(health_file.read_text())
        last_run = datetime.fromisoformat(data["last_run"])
    except FileNotFoundError:
        return {"status": "unknown"}
    except (OSError, ValueError, KeyError) as e:
        logger.warning(f"Unreadable health check file {health_file}: {e}")
        return {"status": "unknown"}

    status = data.get("status", "unknown")
    stale_after = timedelta(
        minutes=settings.CALENDAR_SYNC_INTERVAL_MINUTES * HEALTH_STALE_INTERVALS
    )
    if now - last_run > stale_after:
        status = "stale"

    return {
        "status": status,
        "last_run": data["last_run"],
        "errors": len(data.get("errors", [])),
    }


async def run_scheduled_sync() -> Optional[CalendarSyncJobSummary]:
    """Scheduled run: honours CALENDAR_SYNC_ENABLED and writes the health file."""
    if not get_settings().CALENDAR_SYNC_ENABLED:
        logger.info("Calendar sync is disabled, skipping")
        return None

    start_time = datetime.now(UTC)
    logger.info(f"Starting calendar sync job at {start_time.isoformat()}")

    try:
        summary = await run_locked_sync()
    except Exception as e:
        logger.exception(f"Critical error in calendar sync job: {e}")
        await update_health_check(last_run=datetime.now(UTC), status="unhealthy")
        return None

    duration = (datetime.now(UTC) - start_time).total_seconds()
    logger.info(f"Calendar sync job finished in {duration:.2f}s")

    await update_health_check(
        last_run=datetime.now(UTC),
        status="healthy" if not summary.errors else "unhealthy",
        summary=summary,
    )
    return summary


# ============================================================================
# Webhook-triggered syncs
# ============================================================================


async def handle_sync_request(data: dict[str, Any]) -> Optional[CalendarSyncJobSummary]:
    """Run a single-source sync for a message published by the webhook receiver."""
    if not get_settings().CALENDAR_SYNC_ENABLED:
        logger.info("Calendar sync is disabled, ignoring sync request")
        return None

    source_id = UUID(str(data["source_id"]))
    logger.info(
        f"Sync requested for source {source_id} "
        f"(state={data.get('resource_state')}, message={data.get('message_number')})",
        extra={"source_id": str(source_id), "channel_id": data.get("channel_id")},
    )
    return await run_locked_sync(source_id=source_id)


async def subscribe_to_sync_requests() -> None:
    """
    Subscribe to calendar_sync_requests and run a sync for each notified source.
    """
    client = get_redis_client()
    pubsub = client.pubsub()
    await pubsub.subscribe(CALENDAR_SYNC_CHANNEL)

    logger.info(f"Subscribed to '{CALENDAR_SYNC_CHANNEL}' channel")

    try:
        async for message in pubsub.listen():
            # Skip subscription confirmation messages
            if message["type"] != "message":
                continue

            try:
                data = json.loads(message["data"])
                await handle_sync_request(data)

            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.error(f"Invalid sync request message: {e}")
                continue

            except Exception as e:
                logger.error(f"Error handling sync request: {e}", exc_info=True)
                continue

    except asyncio.CancelledError:
        logger.info("Sync request subscriber cancelled")
        await pubsub.unsubscribe(CALENDAR_SYNC_CHANNEL)
        await pubsub.close()
        raise

    except Exception as e:
        logger.error(f"Fatal error in sync request subscriber: {e}", exc_info=True)
        raise


# ============================================================================
# Entry point
# ============================================================================


async def async_main() -> None:
    """
    Main async entry point - runs calendar sync on schedule using a single event loop.

    IMPORTANT: Uses asyncio.sleep() instead of schedule + asyncio.run() to avoid
    event loop corruption. Each asyncio.run() creates a new event loop, but
    SQLAlchemy's asyncpg connections keep references to the previous loop,
    causing "Future attached to a different loop" errors.

    Handles graceful shutdown on SIGTERM/SIGINT.
    """
    settings = get_settings()
    shutdown_event = asyncio.Event()

    try:
        await validate_startup_config()
    except StartupValidationError as e:
        logger.critical(f"Startup blocked: {e}")
        sys.exit(1)

    loop = asyncio.get_running_loop()

    def handle_shutdown_signal():
        logger.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown_event.set()

    try:
        loop.add_signal_handler(signal.SIGTERM, handle_shutdown_signal)
        loop.add_signal_handler(signal.SIGINT, handle_shutdown_signal)
    except NotImplementedError:
        logger.warning("Signal handlers not supported on this platform")

    sync_interval = max(1, settings.CALENDAR_SYNC_INTERVAL_MINUTES)
    logger.info("Calendar sync worker starting...")
    logger.info(f"Configuration: sync_interval={sync_interval} minutes")

    await update_health_check(last_run=datetime.now(UTC), status="starting")

    listener_task = asyncio.create_task(subscribe_to_sync_requests())

    try:
        # Run once immediately on startup
        logger.info("Running initial sync...")
        await run_scheduled_sync()

        logger.info(f"Calendar sync worker scheduled: every {sync_interval} minutes")

        while not shutdown_event.is_set():
            # Sleep for sync_interval minutes (checking shutdown flag every 30s)
            for _ in range((sync_interval * 60) // 30):
                if shutdown_event.is_set():
                    break
                await asyncio.sleep(30)

            if shutdown_event.is_set():
                break

            await run_scheduled_sync()

    finally:
        logger.info("Calendar sync worker shutting down gracefully...")
        listener_task.cancel()
        await asyncio.gather(listener_task, return_exceptions=True)
        await close_redis_client()
        await engine.dispose()


def run_gcal_sync_worker() -> None:
    """
    Synchronous entry point that sets up logging, then runs the async main function.
    """
    configure_logging()
    asyncio.run(async_main())


if __name__ == "__main__":
    run_gcal_sync_worker()
