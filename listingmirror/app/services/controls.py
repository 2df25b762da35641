"""Manual listing operations exposed to the dashboard."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.logging import logger
from ..models import Listing, PriceMutation, TriggerType
from .marketplace import MalformedReferenceError, MarketplaceClient, parse_listing_refs
from .mutations import PriceMutator, UpstreamMutationError
from .throttle import NotificationThrottle


class ListingNotFoundError(LookupError):
    """Raised when a listing id is unknown."""


class ListingControls:
    """Manual overrides; each one resets the listing's notification throttle."""

    def __init__(
        self,
        session: AsyncSession,
        client: MarketplaceClient | None = None,
        throttle: NotificationThrottle | None = None,
        mutator: PriceMutator | None = None,
    ) -> None:
        self.session = session
        self.client = client
        self.throttle = throttle or NotificationThrottle(session)
        self.mutator = mutator or (PriceMutator(session, client) if client is not None else None)

    async def _get_listing(self, listing_id: int) -> Listing:
        listing = await self.session.get(Listing, listing_id)
        if listing is None:
            raise ListingNotFoundError(f"Listing {listing_id} not found")
        return listing

    async def set_payout_price(self, listing_id: int, new_payout: int, reason: str | None = None) -> PriceMutation:
        """Push a manual payout through the audit path.

        Raises ``MalformedReferenceError`` or ``UpstreamMutationError`` after
        the failed attempt has been recorded.
        """

        if self.mutator is None:
            raise RuntimeError("A marketplace client is required to change payout prices")
        listing = await self._get_listing(listing_id)
        reason = reason or "Manual payout update"
        try:
            refs = parse_listing_refs(listing.external_listing_refs)
            if new_payout <= 0:
                raise MalformedReferenceError("Payout price must be a positive number")
        except MalformedReferenceError as exc:
            self.mutator.record(
                listing,
                new_payout,
                TriggerType.MANUAL,
                reason,
                listing.current_price,
                success=False,
                error_message=str(exc),
            )
            await self.session.commit()
            await self.throttle.clear(listing_id)
            raise

        mutation = await self.mutator.push(
            listing, refs, new_payout, TriggerType.MANUAL, reason, listing.current_price
        )
        await self.throttle.clear(listing_id)
        if not mutation.success:
            raise UpstreamMutationError(mutation.error_message or "Payout update failed", mutation)
        return mutation

    async def update_auto_reprice(
        self,
        listing_id: int,
        enabled: bool | None = None,
        stop_loss_price: int | None = None,
        clear_stop_loss: bool = False,
    ) -> Listing:
        listing = await self._get_listing(listing_id)
        if enabled is not None:
            listing.auto_reprice_enabled = enabled
        if clear_stop_loss:
            listing.stop_loss_price = None
        elif stop_loss_price is not None:
            listing.stop_loss_price = stop_loss_price
        await self.session.commit()
        await self.throttle.clear(listing_id)
        logger.info(
            "Listing %s auto reprice=%s stop loss=%s",
            listing_id,
            listing.auto_reprice_enabled,
            listing.stop_loss_price,
        )
        return listing
