from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from ledgersync.aggregation.router import router as aggregation_router
from ledgersync.core.config import get_settings
from ledgersync.core.logging import configure_logging, request_id_middleware
from ledgersync.db.init import create_tables, sanitize_db_url
from ledgersync.sync.router import router as sync_router
from ledgersync.sync.service import get_sync_service

logger = structlog.get_logger("app")

settings = get_settings()
configure_logging(settings.ENV, settings.DEBUG)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan events."""
    logger.info(
        "app.starting",
        env=settings.ENV,
        database=sanitize_db_url(settings.get_database_url()),
    )
    await create_tables()

    service = get_sync_service()
    if service.config.enabled:
        await service.start()
        logger.info("app.sync_started", interval_seconds=service.config.interval_seconds)
    else:
        logger.warning("app.sync_disabled")

    logger.info("app.started")

    yield

    logger.info("app.stopping")
    await service.stop()
    logger.info("app.stopped")


app = FastAPI(title="ledgersync", version="0.1.0", lifespan=lifespan)
app.middleware("http")(request_id_middleware)
app.include_router(aggregation_router)
app.include_router(sync_router)


@app.get("/")
def health_check():
    return {"status": "ok"}


@app.get("/healthz")
def healthz():
    return {"status": "healthy", "env": settings.ENV}
