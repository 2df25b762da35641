"""Reconcile a fetched marketplace snapshot into the local listing store."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.database import upsert_insert
from ..core.logging import logger
from ..models import CustomFieldHistory, InventoryHistory, Listing, PriceHistory, StockChangeType, SyncStatus
from .listing_cache import ListingCache, ListingSnapshot
from .platforms import PlatformRecorder
from .sources import ScrapedItem, SnapshotSource

# Columns owned by the sync; dashboard-owned columns (auto reprice, stop loss) are never overwritten.
UPSERT_COLUMNS = (
    "platform_id",
    "product_sku",
    "variant_id",
    "product_name",
    "image_url",
    "size",
    "current_price",
    "current_stock",
    "is_lowest",
    "brand",
    "payout_price",
    "commission_basis_points",
    "external_listing_refs",
    "last_event_at",
    "updated_at",
)

CUSTOM_FIELDS = ("is_lowest", "payout_price", "commission_basis_points", "brand")


@dataclass
class SyncStats:
    """Outcome of one reconciliation run."""

    platform_id: int
    total: int = 0
    previous_count: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    price_changes: int = 0
    stock_changes: int = 0
    custom_field_changes: int = 0
    chunks_succeeded: int = 0
    chunks_failed: int = 0
    history_failures: int = 0
    warning: str | None = None
    status: str = SyncStatus.RUNNING.value
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def duration_ms(self) -> int | None:
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["started_at"] = self.started_at.isoformat()
        payload["completed_at"] = self.completed_at.isoformat() if self.completed_at else None
        payload["duration_ms"] = self.duration_ms
        return payload


def _price(value: Any) -> Decimal | None:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _field_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _item_value(item: ScrapedItem, name: str) -> Any:
    if name == "current_price":
        return _price(item.price)
    if name == "current_stock":
        return item.stock
    if name == "external_listing_refs":
        return tuple(item.external_listing_refs or ())
    return getattr(item, name)


def diff_listing(snapshot: ListingSnapshot, item: ScrapedItem) -> list[str]:
    """Return the tracked fields whose observed value differs from the persisted one."""

    changed = []
    for name in (
        "current_price",
        "current_stock",
        "is_lowest",
        "payout_price",
        "commission_basis_points",
        "image_url",
        "external_listing_refs",
        "brand",
    ):
        old = getattr(snapshot, name)
        new = _item_value(item, name)
        if name == "current_price":
            old = _price(old)
        if old != new:
            changed.append(name)
    return changed


def classify_stock_change(old_stock: int | None, new_stock: int) -> StockChangeType:
    if old_stock is None:
        return StockChangeType.CORRECTION
    if new_stock < old_stock:
        return StockChangeType.SOLD
    if new_stock > old_stock:
        return StockChangeType.RESTOCK
    return StockChangeType.CORRECTION


class Reconciler:
    """Turn snapshots into inserts, updates and history rows."""

    def __init__(
        self,
        session: AsyncSession,
        cache: ListingCache | None = None,
        recorder: PlatformRecorder | None = None,
        chunk_size: int | None = None,
        partial_fetch_threshold: float | None = None,
    ) -> None:
        self.session = session
        self.cache = cache or ListingCache(session)
        self.recorder = recorder or PlatformRecorder(session)
        self.chunk_size = max(1, min(chunk_size or settings.upsert_chunk_size, 500))
        self.partial_fetch_threshold = (
            partial_fetch_threshold
            if partial_fetch_threshold is not None
            else settings.partial_fetch_threshold
        )

    async def sync_source(self, source: SnapshotSource) -> SyncStats:
        """Fetch a platform snapshot from ``source`` and reconcile it."""

        platform = await self.recorder.get_or_create(source.platform_name, source.base_url)
        platform_id = platform.id
        stats = SyncStats(platform_id=platform_id)
        await self.recorder.start_sync(platform_id)
        logger.info("Fetching snapshot for %s", source.platform_name)
        try:
            items = await source.fetch()
        except Exception:
            logger.exception("Snapshot fetch failed for %s", source.platform_name)
            await self.recorder.end_sync(platform_id, SyncStatus.FAILED)
            raise
        return await self._reconcile(platform_id, items, stats)

    async def reconcile(self, platform_id: int, items: list[ScrapedItem]) -> SyncStats:
        stats = SyncStats(platform_id=platform_id)
        await self.recorder.start_sync(platform_id)
        return await self._reconcile(platform_id, items, stats)

    async def _reconcile(self, platform_id: int, items: list[ScrapedItem], stats: SyncStats) -> SyncStats:
        try:
            items = self._dedupe(items)
            stats.total = len(items)
            cached = await self.cache.warm(platform_id)
            stats.previous_count = len(cached)
            stats.warning = self._check_partial_fetch(stats.previous_count, stats.total)
            if stats.warning:
                logger.warning("Platform %s: %s", platform_id, stats.warning)

            now = datetime.utcnow()
            rows: list[dict[str, Any]] = []
            staged: dict[int, list[tuple[type, dict[str, Any]]]] = {}
            for item in items:
                snapshot = self.cache.get(platform_id, item.id)
                if snapshot is None:
                    stats.inserted += 1
                    staged[item.id] = self._initial_history(item, now)
                else:
                    changes = diff_listing(snapshot, item)
                    if not changes:
                        stats.unchanged += 1
                        continue
                    stats.updated += 1
                    staged[item.id] = self._change_history(snapshot, item, changes, now)
                rows.append(self._row(platform_id, item, now))

            written = await self._write_chunks(rows, stats)
            await self._write_history(staged, written, stats)
            if rows:
                await self.cache.warm(platform_id)
        except Exception as exc:
            await self.session.rollback()
            stats.status = SyncStatus.FAILED.value
            stats.completed_at = datetime.utcnow()
            stats.errors.append(str(exc))
            logger.exception("Reconciliation failed for platform %s", platform_id)
            await self.recorder.end_sync(platform_id, SyncStatus.FAILED)
            raise

        failed = bool(stats.chunks_failed or stats.history_failures)
        status = SyncStatus.FAILED if failed else SyncStatus.IDLE
        stats.status = status.value
        stats.completed_at = datetime.utcnow()
        await self.recorder.end_sync(platform_id, status)
        logger.info(
            "Sync completed for platform %s in %sms: %s new, %s updated, %s unchanged, "
            "%s price changes, %s stock changes, %s chunk failures",
            platform_id,
            stats.duration_ms,
            stats.inserted,
            stats.updated,
            stats.unchanged,
            stats.price_changes,
            stats.stock_changes,
            stats.chunks_failed,
        )
        return stats

    def _dedupe(self, items: list[ScrapedItem]) -> list[ScrapedItem]:
        unique: dict[int, ScrapedItem] = {}
        for item in items:
            unique[item.id] = item
        if len(unique) != len(items):
            logger.warning("Dropped %s duplicate items from snapshot", len(items) - len(unique))
        return list(unique.values())

    def _check_partial_fetch(self, previous: int, current: int) -> str | None:
        if previous <= 0 or current >= previous * (1 - self.partial_fetch_threshold):
            return None
        drop = round((1 - current / previous) * 100)
        return f"Possible partial fetch: count dropped from {previous} to {current} (-{drop}%)"

    def _row(self, platform_id: int, item: ScrapedItem, now: datetime) -> dict[str, Any]:
        return {
            "id": item.id,
            "platform_id": platform_id,
            "product_sku": item.sku,
            "variant_id": item.variant_id,
            "product_name": item.title,
            "image_url": item.image_url,
            "size": item.size,
            "current_price": _price(item.price),
            "current_stock": item.stock,
            "is_lowest": bool(item.is_lowest),
            "brand": item.brand,
            "payout_price": item.payout_price,
            "commission_basis_points": item.commission_basis_points,
            "external_listing_refs": list(item.external_listing_refs or []),
            "auto_reprice_enabled": False,
            "last_event_at": now,
            "updated_at": now,
        }

    def _initial_history(self, item: ScrapedItem, now: datetime) -> list[tuple[type, dict[str, Any]]]:
        history: list[tuple[type, dict[str, Any]]] = []
        if item.price is not None:
            history.append(
                (PriceHistory, {"listing_id": item.id, "old_price": None, "price": _price(item.price), "recorded_at": now})
            )
        if item.stock is not None:
            history.append(
                (
                    InventoryHistory,
                    {
                        "listing_id": item.id,
                        "old_stock": None,
                        "stock": item.stock,
                        "change_type": StockChangeType.INITIAL.value,
                        "recorded_at": now,
                    },
                )
            )
        for name in CUSTOM_FIELDS:
            value = _field_text(getattr(item, name))
            if value is not None:
                history.append(
                    (
                        CustomFieldHistory,
                        {"listing_id": item.id, "field_name": name, "old_value": None, "new_value": value, "recorded_at": now},
                    )
                )
        return history

    def _change_history(
        self,
        snapshot: ListingSnapshot,
        item: ScrapedItem,
        changes: list[str],
        now: datetime,
    ) -> list[tuple[type, dict[str, Any]]]:
        history: list[tuple[type, dict[str, Any]]] = []
        if "current_price" in changes and item.price is not None:
            history.append(
                (
                    PriceHistory,
                    {
                        "listing_id": item.id,
                        "old_price": _price(snapshot.current_price),
                        "price": _price(item.price),
                        "recorded_at": now,
                    },
                )
            )
        if "current_stock" in changes and item.stock is not None:
            change_type = classify_stock_change(snapshot.current_stock, item.stock)
            history.append(
                (
                    InventoryHistory,
                    {
                        "listing_id": item.id,
                        "old_stock": snapshot.current_stock,
                        "stock": item.stock,
                        "change_type": change_type.value,
                        "recorded_at": now,
                    },
                )
            )
        for name in CUSTOM_FIELDS:
            if name not in changes:
                continue
            new_value = _field_text(getattr(item, name))
            if new_value is None:
                continue
            history.append(
                (
                    CustomFieldHistory,
                    {
                        "listing_id": item.id,
                        "field_name": name,
                        "old_value": _field_text(getattr(snapshot, name)),
                        "new_value": new_value,
                        "recorded_at": now,
                    },
                )
            )
        return history

    async def _write_chunks(self, rows: list[dict[str, Any]], stats: SyncStats) -> set[int]:
        """Upsert rows by primary id, committing each chunk on its own."""

        written: set[int] = set()
        for start in range(0, len(rows), self.chunk_size):
            chunk = rows[start : start + self.chunk_size]
            stmt = upsert_insert(self.session, Listing).values(chunk)
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={name: stmt.excluded[name] for name in UPSERT_COLUMNS},
            )
            try:
                await self.session.execute(stmt)
                await self.session.commit()
            except Exception as exc:
                await self.session.rollback()
                stats.chunks_failed += 1
                stats.errors.append(f"chunk {start // self.chunk_size}: {exc}")
                logger.exception(
                    "Upsert of chunk %s (%s rows) failed", start // self.chunk_size, len(chunk)
                )
                continue
            stats.chunks_succeeded += 1
            written.update(row["id"] for row in chunk)
        return written

    async def _write_history(
        self,
        staged: dict[int, list[tuple[type, dict[str, Any]]]],
        written: set[int],
        stats: SyncStats,
    ) -> None:
        grouped: dict[type, list[dict[str, Any]]] = {PriceHistory: [], InventoryHistory: [], CustomFieldHistory: []}
        for listing_id, entries in staged.items():
            if listing_id not in written:
                continue
            for model, row in entries:
                grouped[model].append(row)

        counters = {
            PriceHistory: "price_changes",
            InventoryHistory: "stock_changes",
            CustomFieldHistory: "custom_field_changes",
        }
        for model, rows in grouped.items():
            if not rows:
                continue
            try:
                await self.session.execute(insert(model), rows)
                await self.session.commit()
            except Exception as exc:
                await self.session.rollback()
                stats.history_failures += 1
                stats.errors.append(f"{model.__tablename__}: {exc}")
                logger.exception("Failed to write %s rows to %s", len(rows), model.__tablename__)
                continue
            setattr(stats, counters[model], len(rows))
