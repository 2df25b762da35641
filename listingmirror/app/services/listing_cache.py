"""Per-platform in-memory index of persisted listing state."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.logging import logger
from ..models import Listing


def make_key(platform_id: int, sku: str, variant_id: str | None) -> str:
    return f"{platform_id}:{sku}:{variant_id or ''}"


@dataclass(frozen=True)
class ListingSnapshot:
    """Persisted state of a listing as of the last cache warm."""

    id: int
    platform_id: int
    product_sku: str
    variant_id: str | None
    product_name: str
    image_url: str | None
    size: str | None
    current_price: Decimal | None
    current_stock: int | None
    is_lowest: bool
    brand: str | None
    payout_price: int | None
    commission_basis_points: int | None
    external_listing_refs: tuple[str, ...]
    auto_reprice_enabled: bool
    stop_loss_price: int | None
    updated_at: datetime | None

    @property
    def key(self) -> str:
        return make_key(self.platform_id, self.product_sku, self.variant_id)

    @classmethod
    def from_listing(cls, listing: Listing) -> "ListingSnapshot":
        return cls(
            id=listing.id,
            platform_id=listing.platform_id,
            product_sku=listing.product_sku,
            variant_id=listing.variant_id,
            product_name=listing.product_name,
            image_url=listing.image_url,
            size=listing.size,
            current_price=listing.current_price,
            current_stock=listing.current_stock,
            is_lowest=bool(listing.is_lowest),
            brand=listing.brand,
            payout_price=listing.payout_price,
            commission_basis_points=listing.commission_basis_points,
            external_listing_refs=tuple(listing.external_listing_refs or ()),
            auto_reprice_enabled=bool(listing.auto_reprice_enabled),
            stop_loss_price=listing.stop_loss_price,
            updated_at=listing.updated_at,
        )


class ListingCache:
    """Previous known state of every listing on a platform.

    Snapshots are held by listing id; several listings can share a
    ``platform:sku:variant`` key when a reseller holds more than one unit
    of the same variant.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._entries: dict[int, dict[int, ListingSnapshot]] = {}
        self._by_key: dict[int, dict[str, list[ListingSnapshot]]] = {}

    async def warm(self, platform_id: int) -> dict[int, ListingSnapshot]:
        """Reload every current-state row of a platform from storage."""

        result = await self.session.scalars(
            select(Listing)
            .where(Listing.platform_id == platform_id)
            .order_by(Listing.id)
            .execution_options(populate_existing=True)
        )
        entries: dict[int, ListingSnapshot] = {}
        by_key: dict[str, list[ListingSnapshot]] = defaultdict(list)
        for listing in result.all():
            snapshot = ListingSnapshot.from_listing(listing)
            entries[snapshot.id] = snapshot
            by_key[snapshot.key].append(snapshot)
        self._entries[platform_id] = entries
        self._by_key[platform_id] = dict(by_key)
        logger.debug("Cache warmed for platform %s with %s listings", platform_id, len(entries))
        return entries

    def get(self, platform_id: int, listing_id: int) -> ListingSnapshot | None:
        return self._entries.get(platform_id, {}).get(listing_id)

    def lookup(self, key: str) -> list[ListingSnapshot]:
        """All listings sharing a ``platform:sku:variant`` key."""

        platform_id = int(key.split(":", 1)[0])
        return list(self._by_key.get(platform_id, {}).get(key, []))

    def size(self, platform_id: int) -> int:
        return len(self._entries.get(platform_id, {}))

    def snapshots(self, platform_id: int) -> list[ListingSnapshot]:
        return list(self._entries.get(platform_id, {}).values())
