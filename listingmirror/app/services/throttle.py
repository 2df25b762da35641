"""Deduplicate error notifications per listing and error kind."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.database import upsert_insert
from ..models import ErrorNotification


class NotificationThrottle:
    """Allow one notification per (listing, error kind) per rolling window."""

    def __init__(self, session: AsyncSession, window_hours: int | None = None) -> None:
        self.session = session
        self.window = timedelta(
            hours=window_hours if window_hours is not None else settings.notification_window_hours
        )

    async def should_notify(self, listing_id: int, error_kind: str) -> bool:
        cutoff = datetime.utcnow() - self.window
        recent = await self.session.scalar(
            select(ErrorNotification.id).where(
                ErrorNotification.listing_id == listing_id,
                ErrorNotification.error_kind == error_kind,
                ErrorNotification.last_notified_at > cutoff,
            )
        )
        return recent is None

    async def record_notified(self, listing_id: int, error_kind: str, message: str | None) -> None:
        now = datetime.utcnow()
        stmt = upsert_insert(self.session, ErrorNotification).values(
            listing_id=listing_id,
            error_kind=error_kind,
            last_message=message,
            last_notified_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["listing_id", "error_kind"],
            set_={
                "last_message": stmt.excluded.last_message,
                "last_notified_at": stmt.excluded.last_notified_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.commit()

    async def clear(self, listing_id: int) -> None:
        """Forget all notifications for a listing after a manual change."""

        await self.session.execute(delete(ErrorNotification).where(ErrorNotification.listing_id == listing_id))
        await self.session.commit()
