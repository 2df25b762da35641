"""Listing browsing, ledgers and manual controls."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..dependencies import get_db, get_marketplace_client
from ..models import CustomFieldHistory, InventoryHistory, Listing, PriceHistory, PriceMutation
from ..schemas import (
    AutoRepriceUpdate,
    CustomFieldHistoryOut,
    InventoryHistoryOut,
    ListingOut,
    ListingPage,
    ManualPayoutUpdate,
    PriceHistoryOut,
    PriceMutationOut,
)
from ..services.controls import ListingControls, ListingNotFoundError
from ..services.marketplace import MalformedReferenceError, MarketplaceClient
from ..services.mutations import UpstreamMutationError

router = APIRouter()


async def _get_listing(session: AsyncSession, listing_id: int) -> Listing:
    listing = await session.get(Listing, listing_id)
    if listing is None:
        raise HTTPException(status_code=404, detail="Listing not found")
    return listing


@router.get("/", response_model=ListingPage)
async def list_listings(
    platform_id: int | None = None,
    sku: str | None = None,
    is_lowest: bool | None = None,
    auto_reprice: bool | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_db),
) -> ListingPage:
    query = select(Listing)
    if platform_id is not None:
        query = query.where(Listing.platform_id == platform_id)
    if sku:
        query = query.where(Listing.product_sku == sku)
    if is_lowest is not None:
        query = query.where(Listing.is_lowest.is_(is_lowest))
    if auto_reprice is not None:
        query = query.where(Listing.auto_reprice_enabled.is_(auto_reprice))
    total = await session.scalar(select(func.count()).select_from(query.subquery()))
    listings = (
        await session.scalars(query.order_by(Listing.product_sku, Listing.size, Listing.id).offset((page - 1) * limit).limit(limit))
    ).all()
    return ListingPage(
        data=[ListingOut.model_validate(listing) for listing in listings],
        page=page,
        limit=limit,
        total=int(total or 0),
    )


@router.get("/{listing_id}", response_model=ListingOut)
async def get_listing(listing_id: int, session: AsyncSession = Depends(get_db)) -> ListingOut:
    return ListingOut.model_validate(await _get_listing(session, listing_id))


@router.get("/{listing_id}/price-history", response_model=list[PriceHistoryOut])
async def price_history(
    listing_id: int,
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_db),
) -> list[PriceHistoryOut]:
    await _get_listing(session, listing_id)
    rows = await session.scalars(
        select(PriceHistory)
        .where(PriceHistory.listing_id == listing_id)
        .order_by(PriceHistory.recorded_at.desc(), PriceHistory.id.desc())
        .limit(limit)
    )
    return [PriceHistoryOut.model_validate(row) for row in rows.all()]


@router.get("/{listing_id}/inventory-history", response_model=list[InventoryHistoryOut])
async def inventory_history(
    listing_id: int,
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_db),
) -> list[InventoryHistoryOut]:
    await _get_listing(session, listing_id)
    rows = await session.scalars(
        select(InventoryHistory)
        .where(InventoryHistory.listing_id == listing_id)
        .order_by(InventoryHistory.recorded_at.desc(), InventoryHistory.id.desc())
        .limit(limit)
    )
    return [InventoryHistoryOut.model_validate(row) for row in rows.all()]


@router.get("/{listing_id}/field-history", response_model=list[CustomFieldHistoryOut])
async def field_history(
    listing_id: int,
    field_name: str | None = None,
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_db),
) -> list[CustomFieldHistoryOut]:
    await _get_listing(session, listing_id)
    query = select(CustomFieldHistory).where(CustomFieldHistory.listing_id == listing_id)
    if field_name:
        query = query.where(CustomFieldHistory.field_name == field_name)
    rows = await session.scalars(
        query.order_by(CustomFieldHistory.recorded_at.desc(), CustomFieldHistory.id.desc()).limit(limit)
    )
    return [CustomFieldHistoryOut.model_validate(row) for row in rows.all()]


@router.get("/{listing_id}/mutations", response_model=list[PriceMutationOut])
async def mutations(
    listing_id: int,
    limit: int = Query(100, ge=1, le=1000),
    session: AsyncSession = Depends(get_db),
) -> list[PriceMutationOut]:
    await _get_listing(session, listing_id)
    rows = await session.scalars(
        select(PriceMutation)
        .where(PriceMutation.listing_id == listing_id)
        .order_by(PriceMutation.created_at.desc(), PriceMutation.id.desc())
        .limit(limit)
    )
    return [PriceMutationOut.model_validate(row) for row in rows.all()]


@router.post("/{listing_id}/payout", response_model=PriceMutationOut)
async def update_payout(
    listing_id: int,
    payload: ManualPayoutUpdate,
    session: AsyncSession = Depends(get_db),
    client: MarketplaceClient = Depends(get_marketplace_client),
) -> PriceMutationOut:
    controls = ListingControls(session, client)
    try:
        mutation = await controls.set_payout_price(listing_id, payload.payout_price, payload.reason)
    except ListingNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except MalformedReferenceError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except UpstreamMutationError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return PriceMutationOut.model_validate(mutation)


@router.patch("/{listing_id}/auto-reprice", response_model=ListingOut)
async def update_auto_reprice(
    listing_id: int,
    payload: AutoRepriceUpdate,
    session: AsyncSession = Depends(get_db),
) -> ListingOut:
    controls = ListingControls(session)
    try:
        listing = await controls.update_auto_reprice(
            listing_id,
            enabled=payload.auto_reprice_enabled,
            stop_loss_price=payload.stop_loss_price,
            clear_stop_loss=payload.clear_stop_loss,
        )
    except ListingNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return ListingOut.model_validate(listing)
