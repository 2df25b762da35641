"""Pydantic schemas for API responses and requests."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class PlatformOut(ORMModel):
    """Platform and the status of its last sync."""

    id: int
    name: str
    base_url: str | None = None
    sync_status: str
    last_sync_start: datetime | None = None
    last_sync_end: datetime | None = None


class ListingOut(ORMModel):
    """Current state of a mirrored listing."""

    id: int
    platform_id: int
    product_sku: str
    variant_id: str | None = None
    product_name: str
    image_url: str | None = None
    size: str | None = None
    current_price: Decimal | None = None
    current_stock: int | None = None
    is_lowest: bool
    brand: str | None = None
    payout_price: int | None = None
    commission_basis_points: int | None = None
    external_listing_refs: list[str] | None = None
    auto_reprice_enabled: bool
    stop_loss_price: int | None = None
    last_event_at: datetime | None = None
    updated_at: datetime | None = None


class ListingPage(BaseModel):
    data: list[ListingOut]
    page: int
    limit: int
    total: int


class PriceHistoryOut(ORMModel):
    id: int
    listing_id: int
    old_price: Decimal | None = None
    price: Decimal
    recorded_at: datetime


class InventoryHistoryOut(ORMModel):
    id: int
    listing_id: int
    old_stock: int | None = None
    stock: int
    change_type: str
    recorded_at: datetime


class CustomFieldHistoryOut(ORMModel):
    id: int
    listing_id: int
    field_name: str
    old_value: str | None = None
    new_value: str
    recorded_at: datetime


class PriceMutationOut(ORMModel):
    """Audit entry for a payout change attempt."""

    id: int
    listing_id: int
    old_payout_price: int | None = None
    new_payout_price: int
    old_projected_price: int | None = None
    new_projected_price: int | None = None
    trigger_type: str
    trigger_reason: str | None = None
    market_lowest_at_trigger: Decimal | None = None
    success: bool
    error_message: str | None = None
    created_at: datetime


class ManualPayoutUpdate(BaseModel):
    """Manual payout change from the dashboard."""

    payout_price: int = Field(..., gt=0)
    reason: str | None = None


class AutoRepriceUpdate(BaseModel):
    """Toggle auto reprice and/or change the stop loss."""

    auto_reprice_enabled: bool | None = None
    stop_loss_price: int | None = Field(None, gt=0)
    clear_stop_loss: bool = False


class SystemHealth(BaseModel):
    """Health check payload."""

    status: str
    timestamp: datetime
    details: dict[str, Any] = Field(default_factory=dict)


class DashboardPayload(BaseModel):
    """Combined payload for the dashboard."""

    platforms: list[PlatformOut]
    total_listings: int
    lowest_listings: int
    auto_reprice_listings: int
    mutations_last_24h: int
    failed_mutations_last_24h: int
    health: SystemHealth
