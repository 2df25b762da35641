"""Platform registry and sync status bookkeeping."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Platform, SyncStatus


class PlatformRecorder:
    """Record platform existence and the status of its sync runs."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_or_create(self, name: str, base_url: str | None = None) -> Platform:
        platform = await self.session.scalar(select(Platform).where(Platform.name == name))
        if platform is None:
            platform = Platform(name=name, base_url=base_url, sync_status=SyncStatus.IDLE.value)
            self.session.add(platform)
            await self.session.commit()
        return platform

    async def list_platforms(self) -> list[Platform]:
        return list((await self.session.scalars(select(Platform).order_by(Platform.name))).all())

    async def start_sync(self, platform_id: int) -> None:
        platform = await self.session.get(Platform, platform_id)
        if platform is None:
            raise LookupError(f"Platform {platform_id} not registered")
        platform.sync_status = SyncStatus.RUNNING.value
        platform.last_sync_start = datetime.utcnow()
        await self.session.commit()

    async def end_sync(self, platform_id: int, status: SyncStatus) -> None:
        platform = await self.session.get(Platform, platform_id)
        if platform is None:
            return
        platform.sync_status = status.value
        platform.last_sync_end = datetime.utcnow()
        await self.session.commit()
