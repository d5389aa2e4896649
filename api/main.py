"""
FastAPI entry point for the calendar sync webhook receiver.

Serves:
- POST /webhook/google-calendar: Google push notifications -> sync requests
  published for the sync worker
- GET /health: Redis (webhook -> worker transport), PostgreSQL, the sync
  worker's last recorded run and the sources whose last pull failed
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from agent.workers.gcal_sync_worker import read_health_check
from api.routes import gcal_webhook
from database.calendar_repository import CalendarSyncRepository
from database.connection import get_async_session
from shared.logging_config import configure_logging
from shared.redis_client import close_redis_client, get_redis_client
from shared.startup_validator import StartupValidationError, validate_startup_config

# Configure structured JSON logging on startup
configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Validate configuration before serving and close Redis on shutdown.

    Note: the API never refreshes OAuth tokens (only the sync worker does),
    so the Google OAuth client is not required here.

    Raises:
        StartupValidationError: If critical configuration is invalid
    """
    logger.info("Running API startup configuration validation...")
    try:
        await validate_startup_config(require_google_oauth=False)
    except StartupValidationError as e:
        logger.critical(f"API startup blocked due to configuration errors: {e}")
        raise  # FastAPI will fail to start
    logger.info("API startup configuration validation passed")

    yield

    await close_redis_client()


app = FastAPI(
    title="Kazador Calendar Sync API",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(gcal_webhook.router, prefix="/webhook", tags=["webhooks"])


@app.get("/health")
async def health_check() -> JSONResponse:
    """
    Health of the webhook receiver and of the sync it feeds.

    Returns:
        503 "unhealthy" if Redis or PostgreSQL is unreachable (notifications
        can be neither verified nor handed to the worker)
        200 "degraded" if the worker's last run failed, is stale or was never
        recorded, or a source's last pull recorded an error
        200 "healthy" otherwise
    """
    health: dict[str, Any] = {
        "status": "healthy",
        "redis": "unknown",
        "postgres": "unknown",
    }
    status_code = 200

    try:
        await get_redis_client().ping()
        health["redis"] = "connected"
    except Exception as e:
        logger.warning(f"Health check: Redis unreachable: {e}")
        health["redis"] = "disconnected"
        status_code = 503

    try:
        async with get_async_session() as session:
            repository = CalendarSyncRepository(session)
            health["sources_with_errors"] = await repository.count_sources_with_errors()
        health["postgres"] = "connected"
    except Exception as e:
        logger.warning(f"Health check: PostgreSQL unreachable: {e}")
        health["postgres"] = "disconnected"
        status_code = 503

    health["worker"] = read_health_check()

    if status_code != 200:
        health["status"] = "unhealthy"
    elif health["worker"]["status"] != "healthy" or health.get("sources_with_errors"):
        health["status"] = "degraded"

    return JSONResponse(status_code=status_code, content=health)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint"""
    return {"message": "Kazador Calendar Sync API - Use /health for health checks"}
