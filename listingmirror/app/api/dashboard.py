"""Dashboard endpoints."""

from __future__ import annotations

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..dependencies import get_db
from ..models import Listing, PriceMutation
from ..schemas import DashboardPayload, PlatformOut, SystemHealth
from ..services.platforms import PlatformRecorder

router = APIRouter()


@router.get("/platforms", response_model=list[PlatformOut])
async def list_platforms(session: AsyncSession = Depends(get_db)) -> list[PlatformOut]:
    platforms = await PlatformRecorder(session).list_platforms()
    return [PlatformOut.model_validate(platform) for platform in platforms]


@router.get("/metrics/dashboard", response_model=DashboardPayload)
async def get_dashboard(
    request: Request,
    session: AsyncSession = Depends(get_db),
) -> DashboardPayload:
    platforms = await PlatformRecorder(session).list_platforms()
    total = await session.scalar(select(func.count(Listing.id)))
    lowest = await session.scalar(select(func.count(Listing.id)).where(Listing.is_lowest.is_(True)))
    auto = await session.scalar(
        select(func.count(Listing.id)).where(Listing.auto_reprice_enabled.is_(True))
    )
    since = datetime.utcnow() - timedelta(hours=24)
    mutations = await session.scalar(
        select(func.count(PriceMutation.id)).where(PriceMutation.created_at >= since)
    )
    failed = await session.scalar(
        select(func.count(PriceMutation.id)).where(
            PriceMutation.created_at >= since, PriceMutation.success.is_(False)
        )
    )
    scheduler = getattr(request.app.state, "scheduler", None)
    health_details = {}
    if scheduler:
        health_details = {
            "last_runs": {k: v.isoformat() for k, v in scheduler.last_runs.items()},
            "stats": dict(scheduler.stats),
        }
    status = "degraded" if any(platform.sync_status == "failed" for platform in platforms) else "ok"
    return DashboardPayload(
        platforms=[PlatformOut.model_validate(platform) for platform in platforms],
        total_listings=total or 0,
        lowest_listings=lowest or 0,
        auto_reprice_listings=auto or 0,
        mutations_last_24h=mutations or 0,
        failed_mutations_last_24h=failed or 0,
        health=SystemHealth(status=status, timestamp=datetime.utcnow(), details=health_details),
    )
