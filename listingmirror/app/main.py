"""FastAPI application entry point."""

from __future__ import annotations

from fastapi import FastAPI

from .api import api_router
from .core.config import settings
from .core.database import get_session, init_db
from .core.logging import configure_logging
from .services.platforms import PlatformRecorder
from .services.scheduler import MonitorScheduler

app = FastAPI(title=settings.app_name, version="0.1.0")
configure_logging(settings.log_level)


async def ensure_platforms() -> None:
    async with get_session() as session:
        await PlatformRecorder(session).get_or_create(settings.marketplace_name, settings.marketplace_base_url)


@app.on_event("startup")
async def on_startup() -> None:
    await init_db()
    await ensure_platforms()
    scheduler = MonitorScheduler()
    app.state.scheduler = scheduler
    await scheduler.start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    scheduler: MonitorScheduler | None = getattr(app.state, "scheduler", None)
    if scheduler:
        await scheduler.stop()


app.include_router(api_router, prefix=settings.api_prefix)


__all__ = ["app"]
