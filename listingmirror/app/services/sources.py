"""Snapshot sources turning raw marketplace inventory into normalized items."""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from ..core.config import settings
from ..core.logging import logger
from .marketplace import MarketplaceClient

_RELAY_ID = re.compile(r":(\d+)$")


@dataclass
class ScrapedItem:
    """One externally observed listing, already normalized."""

    id: int
    sku: str
    title: str
    variant_id: str | None = None
    image_url: str | None = None
    size: str | None = None
    price: Decimal | None = None
    stock: int | None = None
    is_lowest: bool = False
    brand: str | None = None
    payout_price: int | None = None
    commission_basis_points: int | None = None
    external_listing_refs: list[str] = field(default_factory=list)


class SnapshotSource(Protocol):
    """Capability to fetch the current snapshot of a platform."""

    platform_name: str
    base_url: str | None

    async def fetch(self) -> list[ScrapedItem]:
        ...


def decode_relay_id(value: str | None) -> int | None:
    """Decode a base64 ``Type:123`` identifier into its integer part."""

    if not value:
        return None
    try:
        decoded = base64.b64decode(value).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    match = _RELAY_ID.search(decoded)
    return int(match.group(1)) if match else None


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class SourceXSnapshotSource:
    """Fetch the lowest and not-lowest inventory sets and normalize them."""

    def __init__(
        self,
        client: MarketplaceClient,
        platform_name: str | None = None,
        base_url: str | None = None,
        channel: str | None = None,
    ) -> None:
        self.client = client
        self.platform_name = platform_name or settings.marketplace_name
        self.base_url = base_url or settings.marketplace_base_url
        self.channel = channel or settings.marketplace_channel

    async def fetch(self) -> list[ScrapedItem]:
        lowest = await self.client.fetch_inventory(is_lowest=True)
        not_lowest = await self.client.fetch_inventory(is_lowest=False)
        items: list[ScrapedItem] = []
        for raw, is_lowest in [(node, True) for node in lowest] + [(node, False) for node in not_lowest]:
            item = self.transform(raw, is_lowest)
            if item is None:
                logger.warning("Dropping inventory item with undecodable id %s", raw.get("id"))
                continue
            items.append(item)
        return items

    def _channel_listing(self, raw: dict[str, Any]) -> dict[str, Any] | None:
        for edge in (raw.get("platformListings") or {}).get("edges", []):
            node = edge.get("node") or {}
            if (node.get("marketplace") or {}).get("title") == self.channel:
                return node
        return None

    def transform(self, raw: dict[str, Any], is_lowest: bool) -> ScrapedItem | None:
        external_id = decode_relay_id(raw.get("id"))
        if external_id is None:
            return None
        variant = raw.get("variant") or {}
        product = variant.get("product") or {}

        stock = raw.get("quantity")
        if raw.get("isSold") is True:
            stock = 0
        elif raw.get("isListed") is False:
            # delisted but not sold
            stock = -1

        payout = commission = None
        channel_listing = self._channel_listing(raw)
        if channel_listing is not None:
            payout_value = _to_decimal(channel_listing.get("resellerPayoutPrice"))
            if payout_value is not None:
                payout = int(payout_value.to_integral_value())
            percent = _to_decimal((channel_listing.get("marketplace") or {}).get("commissionPercentage"))
            if percent is not None:
                commission = int((percent * 100).to_integral_value())

        images = (product.get("images") or {}).get("edges") or []
        variant_id = decode_relay_id(variant.get("id"))
        refs = [
            edge["node"]["id"]
            for edge in (raw.get("platformListings") or {}).get("edges", [])
            if (edge.get("node") or {}).get("id")
        ]
        return ScrapedItem(
            id=external_id,
            sku=product.get("skuId") or "UNKNOWN",
            title=product.get("title") or "Unknown Product",
            variant_id=str(variant_id) if variant_id is not None else None,
            image_url=(images[0].get("node") or {}).get("image") if images else None,
            size=variant.get("title"),
            price=_to_decimal(variant.get("lowestPrice")),
            stock=stock,
            is_lowest=is_lowest,
            brand=product.get("brandName"),
            payout_price=payout,
            commission_basis_points=commission,
            external_listing_refs=refs,
        )
