"""channelsync FastAPI application entrypoint."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import structlog
import uvicorn
from fastapi import FastAPI

from channelsync.api.errors import channelsync_error_handler
from channelsync.channels.pipeline import ChannelProvisioningPipeline
from channelsync.config import ChannelSyncConfig, get_config
from channelsync.db.engine import Database
from channelsync.errors import ChannelSyncError
from channelsync.guard.ratelimit import RateLimiter
from channelsync.guard.retry import RetryExecutor
from channelsync.logging import setup_logging
from channelsync.notifications.store import NotificationStore
from channelsync.providers.factory import build_clients
from channelsync.sync import SyncManager
from channelsync.verification.service import VerificationChallengeService

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup/shutdown lifecycle."""
    config: ChannelSyncConfig = getattr(app.state, "config", None) or get_config()
    setup_logging(level=config.log_level, fmt=config.log_format)
    logger.info("channelsync.starting", whatsapp_backend=config.whatsapp.backend)

    db = Database(
        config.data_dir,
        journal_mode=config.db_journal_mode,
        busy_timeout_ms=config.db_busy_timeout_ms,
    )
    await db.initialize()

    # Per-attempt deadlines come from RetryExecutor; the client timeout only bounds a single read.
    http = httpx.AsyncClient(
        timeout=config.retry.timeout_s,
        transport=getattr(app.state, "http_transport", None),
    )
    retry = RetryExecutor.from_config(config.retry)
    clients = build_clients(config=config, http=http, retry=retry)

    notifications = NotificationStore(
        ttl_s=config.notifications.ttl_s,
        max_per_recipient=config.notifications.max_per_recipient,
    )
    pipeline = ChannelProvisioningPipeline(
        db=db,
        clients=clients,
        config=config.provisioning,
        notifications=notifications,
    )
    verification = VerificationChallengeService(
        db=db,
        config=config.verification,
        notifications=notifications,
    )
    await verification.start()

    app.state.config = config
    app.state.db = db
    app.state.http = http
    app.state.clients = clients
    app.state.notifications = notifications
    app.state.pipeline = pipeline
    app.state.verification = verification
    app.state.sync = SyncManager(config=config.sync, notifications=notifications)
    app.state.rate_limiter = RateLimiter(
        max_requests=config.rate_limit.max_requests,
        window_s=config.rate_limit.window_s,
    )

    logger.info("channelsync.ready", providers={t.value: c.name for t, c in clients.items()})

    yield

    logger.info("channelsync.shutting_down")
    await verification.stop()
    await http.aclose()
    await db.close()
    logger.info("channelsync.stopped")


def create_app(
    config: ChannelSyncConfig | None = None,
    *,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create the FastAPI application."""
    app = FastAPI(
        title="channelsync",
        version="0.1.0",
        description="Channel provisioning, identity verification and message sync.",
        lifespan=lifespan,
    )
    if config is not None:
        app.state.config = config
    if http_transport is not None:
        app.state.http_transport = http_transport

    app.add_exception_handler(ChannelSyncError, channelsync_error_handler)

    from channelsync.api.routes.channels import router as channels_router
    from channelsync.api.routes.conversations import router as conversations_router
    from channelsync.api.routes.health import router as health_router
    from channelsync.api.routes.notifications import router as notifications_router
    from channelsync.api.routes.verification import router as verification_router
    from channelsync.api.routes.webhooks import router as webhooks_router

    app.include_router(health_router, tags=["health"])
    app.include_router(channels_router, tags=["channels"])
    app.include_router(verification_router, tags=["verification"])
    app.include_router(conversations_router, tags=["conversations"])
    app.include_router(notifications_router, tags=["notifications"])
    app.include_router(webhooks_router, tags=["webhooks"])

    return app


app = create_app()


def main() -> None:
    """Run the server directly."""
    config = get_config()
    setup_logging(level=config.log_level, fmt=config.log_format)
    uvicorn.run(
        "channelsync.main:app",
        host=config.host,
        port=config.port,
        log_level="warning",
    )


if __name__ == "__main__":
    main()
