"""Push payout prices upstream and record every attempt in the audit log."""

from __future__ import annotations

import asyncio
from datetime import datetime
from decimal import Decimal

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.logging import logger
from ..models import Listing, PriceMutation, TriggerType
from .marketplace import MalformedReferenceError, MarketplaceClient, MarketplaceError
from .pricing import projected_price


class UpstreamMutationError(Exception):
    """Raised when a manual payout push is rejected or fails upstream."""

    def __init__(self, message: str, mutation: PriceMutation | None = None) -> None:
        super().__init__(message)
        self.mutation = mutation


class PriceMutator:
    """Apply payout changes through the marketplace client."""

    def __init__(
        self,
        session: AsyncSession,
        client: MarketplaceClient,
        timeout_seconds: float | None = None,
    ) -> None:
        self.session = session
        self.client = client
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.marketplace_timeout_seconds
        )

    def record(
        self,
        listing: Listing,
        new_payout: int,
        trigger_type: TriggerType,
        reason: str | None,
        market_lowest: Decimal | None,
        success: bool,
        error_message: str | None = None,
    ) -> PriceMutation:
        old_payout = listing.payout_price
        mutation = PriceMutation(
            listing_id=listing.id,
            old_payout_price=old_payout,
            new_payout_price=new_payout,
            old_projected_price=(
                projected_price(old_payout, listing.commission_basis_points) if old_payout is not None else None
            ),
            new_projected_price=projected_price(new_payout, listing.commission_basis_points),
            trigger_type=trigger_type.value,
            trigger_reason=reason,
            market_lowest_at_trigger=market_lowest,
            success=success,
            error_message=error_message,
            created_at=datetime.utcnow(),
        )
        self.session.add(mutation)
        return mutation

    async def push(
        self,
        listing: Listing,
        refs: list[str],
        new_payout: int,
        trigger_type: TriggerType,
        reason: str | None,
        market_lowest: Decimal | None,
    ) -> PriceMutation:
        """Push ``new_payout`` to every reference; update the listing only on full success."""

        error: str | None = None
        success = False
        try:
            result = await asyncio.wait_for(
                self.client.apply_payout_price(refs, new_payout), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            error = f"Payout update timed out after {self.timeout_seconds}s"
        except (MarketplaceError, MalformedReferenceError, httpx.HTTPError) as exc:
            error = str(exc) or exc.__class__.__name__
        except Exception as exc:
            logger.exception("Unexpected error pushing payout for listing %s", listing.id)
            error = f"{exc.__class__.__name__}: {exc}"
        else:
            success = result.success and result.updated_count >= len(refs)
            if not success:
                error = "; ".join(result.errors) or (
                    f"Partial update: {result.updated_count}/{len(refs)} listings updated"
                )

        mutation = self.record(
            listing, new_payout, trigger_type, reason, market_lowest, success, error
        )
        if success:
            listing.payout_price = new_payout
            listing.current_price = Decimal(mutation.new_projected_price)
            listing.updated_at = datetime.utcnow()
            logger.info(
                "Listing %s payout %s -> %s (%s)",
                listing.id,
                mutation.old_payout_price,
                new_payout,
                trigger_type.value,
            )
        else:
            logger.error("Payout update for listing %s failed: %s", listing.id, error)
        await self.session.commit()
        return mutation
