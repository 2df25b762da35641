"""Automated undercut repricing."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import settings
from ..core.logging import logger
from ..models import ErrorKind, Listing, PriceMutation, TriggerType
from .marketplace import MalformedReferenceError, MarketplaceClient, parse_listing_refs
from .mutations import PriceMutator
from .notifier import AlertEvent, AlertSeverity, LogNotifier, Notifier
from .pricing import projected_price, round_price, undercut_payout
from .throttle import NotificationThrottle


class DecisionKind(str, Enum):
    """Outcome of evaluating one listing."""

    NONE = "none"
    SKIP_SELF = "skip_self"
    SKIP_DUPLICATE = "skip_duplicate"
    SKIP_NO_MARKET = "skip_no_market"
    MALFORMED_REFERENCE = "malformed_reference"
    STOP_LOSS_HALT = "stop_loss_halt"
    REPRICE = "reprice"


@dataclass
class PriceDecision:
    listing_id: int
    kind: DecisionKind
    reason: str
    market_lowest: Decimal | None = None
    current_payout: int | None = None
    current_projected: int | None = None
    new_payout: int | None = None
    new_projected: int | None = None
    sibling_lowest_projected: int | None = None
    mutation: PriceMutation | None = None

    @property
    def succeeded(self) -> bool:
        return self.mutation is not None and self.mutation.success


class UndercutStrategy:
    """Decide how to respond to the current market lowest price.

    Checks run in order: a sibling listing of ours holding the market
    lowest, already lowest, stop loss. The caller applies the recent
    duplicate-mutation check to ``reprice`` outcomes.
    """

    def decide(
        self,
        listing: Any,
        market_lowest: Decimal | None,
        sibling_lowest_projected: int | None = None,
    ) -> PriceDecision:
        payout = listing.payout_price
        basis_points = listing.commission_basis_points
        our_projected = projected_price(payout, basis_points)
        decision = PriceDecision(
            listing_id=listing.id,
            kind=DecisionKind.NONE,
            reason="Already lowest",
            market_lowest=market_lowest,
            current_payout=payout,
            current_projected=our_projected,
            sibling_lowest_projected=sibling_lowest_projected,
        )
        if market_lowest is None:
            decision.kind = DecisionKind.SKIP_NO_MARKET
            decision.reason = "No market lowest price observed"
            return decision
        # A sibling tie means the "competitor" is one of ours.
        if sibling_lowest_projected is not None and round_price(market_lowest) == sibling_lowest_projected:
            decision.kind = DecisionKind.SKIP_SELF
            decision.reason = f"Market lowest {market_lowest} is held by our own listing"
            return decision
        if our_projected <= market_lowest:
            return decision

        new_payout = undercut_payout(market_lowest, basis_points)
        decision.new_payout = new_payout
        decision.new_projected = projected_price(new_payout, basis_points)
        stop_loss = listing.stop_loss_price
        if new_payout <= 0 or (stop_loss is not None and new_payout < stop_loss):
            decision.kind = DecisionKind.STOP_LOSS_HALT
            decision.reason = f"New payout {new_payout} below stop loss {stop_loss}"
            return decision
        decision.kind = DecisionKind.REPRICE
        decision.reason = f"Competitor undercut to {market_lowest}"
        return decision


class Repricer:
    """Evaluate every eligible listing and push undercut payouts."""

    def __init__(
        self,
        session: AsyncSession,
        client: MarketplaceClient,
        notifier: Notifier | None = None,
        throttle: NotificationThrottle | None = None,
        strategy: UndercutStrategy | None = None,
        mutator: PriceMutator | None = None,
        duplicate_window_minutes: int | None = None,
    ) -> None:
        self.session = session
        self.client = client
        self.notifier = notifier or LogNotifier()
        self.throttle = throttle or NotificationThrottle(session)
        self.strategy = strategy or UndercutStrategy()
        self.mutator = mutator or PriceMutator(session, client)
        self.duplicate_window = timedelta(
            minutes=duplicate_window_minutes
            if duplicate_window_minutes is not None
            else settings.duplicate_mutation_window_minutes
        )

    async def _eligible_ids(self) -> list[int]:
        rows = await self.session.execute(
            select(Listing.id, Listing.external_listing_refs)
            .where(
                Listing.auto_reprice_enabled.is_(True),
                Listing.payout_price.is_not(None),
                Listing.current_stock > 0,
                Listing.external_listing_refs.is_not(None),
            )
            .order_by(Listing.id)
        )
        return [listing_id for listing_id, refs in rows.all() if refs]

    async def _sibling_lowest_projected(self, listing: Any) -> int | None:
        """Lowest projected price among our other eligible listings of the same product and size."""

        size_clause = Listing.size.is_(None) if listing.size is None else Listing.size == listing.size
        rows = await self.session.execute(
            select(Listing.payout_price, Listing.commission_basis_points, Listing.external_listing_refs).where(
                Listing.platform_id == listing.platform_id,
                Listing.product_sku == listing.product_sku,
                size_clause,
                Listing.id != listing.id,
                Listing.auto_reprice_enabled.is_(True),
                Listing.payout_price.is_not(None),
                Listing.current_stock > 0,
            )
        )
        projected = [
            projected_price(payout, basis_points)
            for payout, basis_points, refs in rows.all()
            if refs
        ]
        return min(projected) if projected else None

    async def _last_mutation(self, listing_id: int) -> PriceMutation | None:
        cutoff = datetime.utcnow() - self.duplicate_window
        return await self.session.scalar(
            select(PriceMutation)
            .where(PriceMutation.listing_id == listing_id, PriceMutation.created_at >= cutoff)
            .order_by(PriceMutation.created_at.desc(), PriceMutation.id.desc())
            .limit(1)
        )

    async def evaluate(self, listing: Any, market_lowest: Decimal | None = None) -> PriceDecision:
        """Decide what to do with ``listing``; nothing is written."""

        if market_lowest is None:
            market_lowest = listing.current_price
        try:
            parse_listing_refs(listing.external_listing_refs)
        except MalformedReferenceError as exc:
            return PriceDecision(
                listing_id=listing.id,
                kind=DecisionKind.MALFORMED_REFERENCE,
                reason=str(exc),
                market_lowest=market_lowest,
                current_payout=listing.payout_price,
            )
        sibling_lowest = await self._sibling_lowest_projected(listing)
        decision = self.strategy.decide(listing, market_lowest, sibling_lowest)
        if decision.kind is DecisionKind.REPRICE:
            last = await self._last_mutation(listing.id)
            if last is not None and last.new_payout_price == decision.new_payout:
                decision.kind = DecisionKind.SKIP_DUPLICATE
                decision.reason = "Same mutation already attempted recently"
        return decision

    async def process_listing(self, listing: Listing) -> PriceDecision:
        decision = await self.evaluate(listing)
        if decision.kind is DecisionKind.STOP_LOSS_HALT:
            logger.info("Listing %s: stop loss reached (%s)", listing.id, decision.reason)
            await self._notify_error(listing, ErrorKind.STOP_LOSS, decision.reason, decision)
        elif decision.kind is DecisionKind.MALFORMED_REFERENCE:
            logger.warning("Listing %s skipped: %s", listing.id, decision.reason)
        elif decision.kind is DecisionKind.REPRICE:
            decision.mutation = await self.mutator.push(
                listing,
                parse_listing_refs(listing.external_listing_refs),
                decision.new_payout,
                TriggerType.AUTO_UNDERCUT,
                decision.reason,
                decision.market_lowest,
            )
            if decision.succeeded:
                await self._deliver(
                    AlertEvent(
                        kind="price_mutation",
                        title="Auto-undercut applied",
                        message=decision.reason,
                        listing_id=listing.id,
                        severity=AlertSeverity.INFO,
                        details=self._details(listing, decision),
                    )
                )
            else:
                await self._notify_error(
                    listing, ErrorKind.API_ERROR, decision.mutation.error_message or "Unknown error", decision
                )
        return decision

    async def run_cycle(self) -> dict[str, int]:
        result = {"processed": 0, "repriced": 0, "skipped": 0, "halted_on_stop_loss": 0, "errors": 0}
        listing_ids = await self._eligible_ids()
        logger.info("Auto-undercut check over %s eligible listings", len(listing_ids))
        for listing_id in listing_ids:
            result["processed"] += 1
            try:
                # Reloaded per listing; a rollback below expires earlier instances.
                listing = await self.session.get(Listing, listing_id, populate_existing=True)
                if listing is None:
                    result["skipped"] += 1
                    continue
                decision = await self.process_listing(listing)
            except Exception:
                await self.session.rollback()
                logger.exception("Auto-undercut failed for listing %s", listing_id)
                result["errors"] += 1
                continue
            if decision.kind is DecisionKind.REPRICE:
                result["repriced" if decision.succeeded else "errors"] += 1
            elif decision.kind is DecisionKind.STOP_LOSS_HALT:
                result["halted_on_stop_loss"] += 1
            else:
                result["skipped"] += 1
        logger.info("Auto-undercut complete: %s", result)
        return result

    def _details(self, listing: Listing, decision: PriceDecision) -> dict[str, Any]:
        return {
            "product_name": listing.product_name,
            "product_sku": listing.product_sku,
            "size": listing.size,
            "current_payout": decision.current_payout,
            "attempted_payout": decision.new_payout,
            "new_projected": decision.new_projected,
            "market_lowest": str(decision.market_lowest) if decision.market_lowest is not None else None,
        }

    async def _notify_error(
        self, listing: Listing, kind: ErrorKind, message: str, decision: PriceDecision
    ) -> bool:
        if not await self.throttle.should_notify(listing.id, kind.value):
            logger.debug("Suppressed %s notification for listing %s", kind.value, listing.id)
            return False
        title = "Stop loss triggered" if kind is ErrorKind.STOP_LOSS else "Auto-undercut failed"
        delivered = await self._deliver(
            AlertEvent(
                kind=kind.value,
                title=title,
                message=message,
                listing_id=listing.id,
                severity=AlertSeverity.WARNING if kind is ErrorKind.STOP_LOSS else AlertSeverity.CRITICAL,
                details=self._details(listing, decision),
            )
        )
        if delivered:
            await self.throttle.record_notified(listing.id, kind.value, message)
        return delivered

    async def _deliver(self, event: AlertEvent) -> bool:
        try:
            return await self.notifier.send_alert(event)
        except Exception:
            logger.exception("Notifier failed for %s alert", event.kind)
            return False
