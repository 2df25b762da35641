"""Scheduler running the sync and auto-undercut loops."""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from ..core.config import settings
from ..core.database import get_session
from ..core.logging import logger
from .marketplace import MarketplaceClient, create_marketplace_client
from .notifier import Notifier, WebhookNotifier, create_notifier
from .reconciler import Reconciler
from .repricer import Repricer
from .sources import SnapshotSource, SourceXSnapshotSource


class MonitorScheduler:
    """Coordinate periodic platform syncs and repricing cycles."""

    def __init__(
        self,
        client_factory: Callable[[], Awaitable[MarketplaceClient]] = create_marketplace_client,
        source_factory: Callable[[MarketplaceClient], list[SnapshotSource]] | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.client_factory = client_factory
        self.source_factory = source_factory or (lambda client: [SourceXSnapshotSource(client)])
        self.notifier = notifier or create_notifier()
        self.client: MarketplaceClient | None = None
        self._tasks: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()
        self._sync_lock = asyncio.Lock()
        self._reprice_lock = asyncio.Lock()
        self.last_runs: dict[str, datetime] = {}
        self.stats: dict[str, dict[str, Any]] = defaultdict(dict)

    async def start(self) -> None:
        if any(not task.done() for task in self._tasks):
            return
        self._stop_event.clear()
        self.client = await self.client_factory()
        self._tasks = []
        if settings.sync_enabled:
            self._tasks.append(asyncio.create_task(self._sync_loop()))
        if settings.reprice_enabled:
            self._tasks.append(asyncio.create_task(self._reprice_loop()))
        logger.info("Scheduler started")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
            logger.info("Scheduler stopped")
        if self.client is not None:
            await self.client.close()
            self.client = None
        if isinstance(self.notifier, WebhookNotifier):
            await self.notifier.close()

    async def _wait(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _sync_loop(self) -> None:
        while not self._stop_event.is_set():
            started = time.monotonic()
            try:
                await self.trigger_sync()
            except Exception:
                logger.exception("Sync loop iteration failed")
            elapsed = time.monotonic() - started
            await self._wait(max(settings.sync_min_wait_seconds, settings.sync_interval_seconds - elapsed))

    async def _reprice_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.trigger_reprice()
            except Exception:
                logger.exception("Reprice loop iteration failed")
            await self._wait(settings.reprice_interval_seconds)

    async def _ensure_client(self) -> MarketplaceClient:
        if self.client is None:
            self.client = await self.client_factory()
        return self.client

    async def trigger_sync(self) -> dict[str, dict[str, Any]]:
        """Reconcile every configured source once; failures are logged per source."""

        results: dict[str, dict[str, Any]] = {}
        async with self._sync_lock:
            client = await self._ensure_client()
            for source in self.source_factory(client):
                key = f"sync:{source.platform_name}"
                try:
                    async with get_session() as session:
                        stats = await Reconciler(session).sync_source(source)
                    results[source.platform_name] = stats.as_dict()
                except Exception as exc:
                    logger.exception("Sync cycle failed for %s", source.platform_name)
                    results[source.platform_name] = {"status": "failed", "error": str(exc)}
                self.stats[key] = results[source.platform_name]
                self.last_runs[key] = datetime.utcnow()
        return results

    async def trigger_reprice(self) -> dict[str, Any]:
        async with self._reprice_lock:
            client = await self._ensure_client()
            try:
                async with get_session() as session:
                    result: dict[str, Any] = await Repricer(session, client, self.notifier).run_cycle()
            except Exception as exc:
                logger.exception("Auto-undercut cycle failed")
                result = {"status": "failed", "error": str(exc)}
            self.stats["reprice"] = result
            self.last_runs["reprice"] = datetime.utcnow()
        return result
