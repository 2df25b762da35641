from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from listingmirror.app.models import ErrorNotification, Listing, Platform, PriceMutation, TriggerType
from listingmirror.app.services.marketplace import ApplyResult, MarketplaceError
from listingmirror.app.services.mutations import PriceMutator
from listingmirror.app.services.pricing import projected_price, undercut_payout
from listingmirror.app.services.repricer import DecisionKind, Repricer, UndercutStrategy


class StubMarketplace:
    def __init__(self, fail: bool = False, updated_count: int | None = None) -> None:
        self.fail = fail
        self.updated_count = updated_count
        self.calls: list[tuple[list[str], int]] = []

    async def apply_payout_price(self, refs: list[str], new_payout: int) -> ApplyResult:
        self.calls.append((list(refs), new_payout))
        if self.fail:
            raise MarketplaceError("HTTP 500 from marketplace")
        count = len(refs) if self.updated_count is None else self.updated_count
        return ApplyResult(success=True, updated_count=count)


class RecordingNotifier:
    def __init__(self) -> None:
        self.events = []

    async def send_alert(self, event) -> bool:
        self.events.append(event)
        return True


def make_listing(listing_id: int, platform_id: int, **overrides) -> Listing:
    values = {
        "id": listing_id,
        "platform_id": platform_id,
        "product_sku": "DZ5485-612",
        "variant_id": str(listing_id),
        "product_name": "Jordan 1 High",
        "size": "UK 9",
        "current_price": Decimal("11000"),
        "current_stock": 1,
        "is_lowest": False,
        "payout_price": 10000,
        "commission_basis_points": 1400,
        "external_listing_refs": [f"UGxhdGZvcm1MaXN0aW5nOj{listing_id}="],
        "auto_reprice_enabled": True,
        "stop_loss_price": 9000,
    }
    values.update(overrides)
    return Listing(**values)


def test_pricing_arithmetic():
    assert projected_price(10000, 1400) == 11400
    assert undercut_payout(Decimal("11000"), 1400) == 9648
    assert projected_price(9648, 1400) == 10999


def test_strategy_reprices_below_market():
    listing = SimpleNamespace(id=1, payout_price=10000, commission_basis_points=1400, stop_loss_price=9000)

    decision = UndercutStrategy().decide(listing, Decimal("11000"))

    assert decision.kind is DecisionKind.REPRICE
    assert decision.current_projected == 11400
    assert decision.new_payout == 9648
    assert decision.new_projected == 10999


def test_strategy_none_when_already_lowest():
    listing = SimpleNamespace(id=1, payout_price=9000, commission_basis_points=1400, stop_loss_price=None)

    decision = UndercutStrategy().decide(listing, Decimal("11000"))

    assert decision.kind is DecisionKind.NONE
    assert decision.new_payout is None


def test_strategy_halts_on_stop_loss():
    listing = SimpleNamespace(id=1, payout_price=1000, commission_basis_points=1400, stop_loss_price=1000)

    decision = UndercutStrategy().decide(listing, Decimal("1084"))

    assert decision.new_payout == 950
    assert decision.kind is DecisionKind.STOP_LOSS_HALT


def test_strategy_skips_own_sibling():
    listing = SimpleNamespace(id=1, payout_price=10000, commission_basis_points=1400, stop_loss_price=None)

    decision = UndercutStrategy().decide(listing, Decimal("11400"), sibling_lowest_projected=11400)

    assert decision.kind is DecisionKind.SKIP_SELF


def test_strategy_without_market_price():
    listing = SimpleNamespace(id=1, payout_price=10000, commission_basis_points=1400, stop_loss_price=None)

    decision = UndercutStrategy().decide(listing, None)

    assert decision.kind is DecisionKind.SKIP_NO_MARKET


@pytest.mark.anyio
async def test_end_to_end_reprice_updates_listing(db_session, platform):
    listing = make_listing(1, platform.id)
    db_session.add(listing)
    await db_session.commit()
    client = StubMarketplace()
    notifier = RecordingNotifier()

    result = await Repricer(db_session, client, notifier).run_cycle()

    assert result == {"processed": 1, "repriced": 1, "skipped": 0, "halted_on_stop_loss": 0, "errors": 0}
    assert client.calls == [(["UGxhdGZvcm1MaXN0aW5nOj1="], 9648)]
    mutation = await db_session.scalar(select(PriceMutation))
    assert mutation.success is True
    assert mutation.trigger_type == TriggerType.AUTO_UNDERCUT.value
    assert mutation.old_payout_price == 10000
    assert mutation.new_payout_price == 9648
    assert mutation.old_projected_price == 11400
    assert mutation.new_projected_price == 10999
    assert mutation.market_lowest_at_trigger == Decimal("11000")

    refreshed = await db_session.get(Listing, 1)
    assert refreshed.payout_price == mutation.new_payout_price
    assert refreshed.current_price == Decimal("10999")
    assert [event.kind for event in notifier.events] == ["price_mutation"]


@pytest.mark.anyio
async def test_successful_mutations_match_listing_payout(db_session, platform):
    db_session.add_all(
        [
            make_listing(1, platform.id),
            make_listing(2, platform.id, product_sku="OTHER", current_price=Decimal("20000"), payout_price=19000),
            make_listing(3, platform.id, product_sku="THIRD", payout_price=9000),
        ]
    )
    await db_session.commit()

    await Repricer(db_session, StubMarketplace(), RecordingNotifier()).run_cycle()

    mutations = (await db_session.scalars(select(PriceMutation).where(PriceMutation.success.is_(True)))).all()
    assert {mutation.listing_id for mutation in mutations} == {1, 2}
    for mutation in mutations:
        listing = await db_session.get(Listing, mutation.listing_id)
        assert listing.payout_price == mutation.new_payout_price


@pytest.mark.anyio
async def test_sibling_listings_never_chase_each_other(db_session, platform):
    # Both siblings project to 11400 and the market lowest is that same price.
    db_session.add_all(
        [
            make_listing(1, platform.id, variant_id="555", current_price=Decimal("11400")),
            make_listing(2, platform.id, variant_id="555", current_price=Decimal("11400")),
        ]
    )
    await db_session.commit()
    client = StubMarketplace()
    repricer = Repricer(db_session, client, RecordingNotifier())

    first = await repricer.evaluate(await db_session.get(Listing, 1))
    second = await repricer.evaluate(await db_session.get(Listing, 2))
    result = await repricer.run_cycle()

    assert first.kind is DecisionKind.SKIP_SELF
    assert second.kind is DecisionKind.SKIP_SELF
    assert first.sibling_lowest_projected == 11400
    assert result["repriced"] == 0
    assert client.calls == []


@pytest.mark.anyio
async def test_ineligible_siblings_are_ignored(db_session, platform):
    db_session.add_all(
        [
            make_listing(1, platform.id),
            make_listing(2, platform.id, payout_price=9649, current_stock=0),
        ]
    )
    await db_session.commit()

    decision = await Repricer(db_session, StubMarketplace()).evaluate(await db_session.get(Listing, 1))

    assert decision.sibling_lowest_projected is None
    assert decision.kind is DecisionKind.REPRICE


@pytest.mark.anyio
async def test_duplicate_mutation_is_skipped(db_session, platform):
    db_session.add(make_listing(1, platform.id))
    await db_session.commit()
    client = StubMarketplace()
    repricer = Repricer(db_session, client, RecordingNotifier())
    listing = await db_session.get(Listing, 1)

    first = await repricer.evaluate(listing)
    assert first.kind is DecisionKind.REPRICE
    # Record the attempt without moving the listing, as after a failed push.
    repricer.mutator.record(
        listing, first.new_payout, TriggerType.AUTO_UNDERCUT, first.reason, first.market_lowest, success=False
    )
    await db_session.commit()

    second = await repricer.evaluate(listing)

    assert second.kind is DecisionKind.SKIP_DUPLICATE
    assert second.new_payout == first.new_payout


@pytest.mark.anyio
async def test_old_mutation_does_not_block_reprice(db_session, platform):
    db_session.add(make_listing(1, platform.id))
    db_session.add(
        PriceMutation(
            listing_id=1,
            old_payout_price=10000,
            new_payout_price=9648,
            trigger_type=TriggerType.AUTO_UNDERCUT.value,
            success=False,
            created_at=datetime.utcnow() - timedelta(minutes=6),
        )
    )
    await db_session.commit()

    decision = await Repricer(db_session, StubMarketplace()).evaluate(await db_session.get(Listing, 1))

    assert decision.kind is DecisionKind.REPRICE


@pytest.mark.anyio
async def test_stop_loss_halts_and_notifies_once(db_session, platform):
    db_session.add(
        make_listing(1, platform.id, payout_price=1000, stop_loss_price=1000, current_price=Decimal("1084"))
    )
    await db_session.commit()
    client = StubMarketplace()
    notifier = RecordingNotifier()
    repricer = Repricer(db_session, client, notifier)

    first = await repricer.run_cycle()
    second = await repricer.run_cycle()

    assert first["halted_on_stop_loss"] == 1
    assert second["halted_on_stop_loss"] == 1
    assert client.calls == []
    listing = await db_session.get(Listing, 1)
    assert listing.payout_price == 1000
    assert [event.kind for event in notifier.events] == ["stop_loss"]
    assert await db_session.scalar(select(PriceMutation)) is None


@pytest.mark.anyio
async def test_upstream_failure_is_recorded(db_session, platform):
    db_session.add(make_listing(1, platform.id))
    await db_session.commit()
    notifier = RecordingNotifier()

    result = await Repricer(db_session, StubMarketplace(fail=True), notifier).run_cycle()

    assert result["errors"] == 1
    mutation = await db_session.scalar(select(PriceMutation))
    assert mutation.success is False
    assert "HTTP 500" in mutation.error_message
    listing = await db_session.get(Listing, 1)
    assert listing.payout_price == 10000
    assert listing.current_price == Decimal("11000")
    assert [event.kind for event in notifier.events] == ["api_error"]
    throttle_row = await db_session.scalar(select(ErrorNotification))
    assert throttle_row.error_kind == "api_error"


@pytest.mark.anyio
async def test_partial_update_counts_as_failure(db_session, platform):
    db_session.add(make_listing(1, platform.id, external_listing_refs=["a", "b"]))
    await db_session.commit()

    result = await Repricer(db_session, StubMarketplace(updated_count=1), RecordingNotifier()).run_cycle()

    assert result["errors"] == 1
    mutation = await db_session.scalar(select(PriceMutation))
    assert mutation.success is False
    assert "1/2" in mutation.error_message
    assert (await db_session.get(Listing, 1)).payout_price == 10000


@pytest.mark.anyio
async def test_malformed_references_are_skipped(db_session, platform):
    db_session.add(make_listing(1, platform.id, external_listing_refs=["", "  "]))
    await db_session.commit()
    client = StubMarketplace()

    result = await Repricer(db_session, client, RecordingNotifier()).run_cycle()

    assert result["skipped"] == 1
    assert client.calls == []


@pytest.mark.anyio
async def test_ineligible_listings_are_not_processed(db_session, platform):
    db_session.add_all(
        [
            make_listing(1, platform.id, auto_reprice_enabled=False),
            make_listing(2, platform.id, product_sku="B", current_stock=0),
            make_listing(3, platform.id, product_sku="C", payout_price=None),
            make_listing(4, platform.id, product_sku="D", external_listing_refs=[]),
        ]
    )
    await db_session.commit()

    result = await Repricer(db_session, StubMarketplace(), RecordingNotifier()).run_cycle()

    assert result["processed"] == 0


class SlowMarketplace(StubMarketplace):
    async def apply_payout_price(self, refs, new_payout):
        await asyncio.sleep(1)
        return await super().apply_payout_price(refs, new_payout)


class FlakyMarketplace(StubMarketplace):
    """Fails the first call with an error outside the marketplace taxonomy."""

    async def apply_payout_price(self, refs, new_payout):
        self.calls.append((list(refs), new_payout))
        if len(self.calls) == 1:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return ApplyResult(success=True, updated_count=len(refs))


class FailingFirstStrategy(UndercutStrategy):
    def decide(self, listing, market_lowest, sibling_lowest_projected=None):
        if listing.id == 1:
            raise RuntimeError("bad listing state")
        return super().decide(listing, market_lowest, sibling_lowest_projected)


@pytest.mark.anyio
async def test_hung_upstream_call_times_out_as_failed_mutation(db_session, platform):
    db_session.add(make_listing(1, platform.id))
    await db_session.commit()
    client = SlowMarketplace()
    notifier = RecordingNotifier()
    mutator = PriceMutator(db_session, client, timeout_seconds=0.01)

    result = await Repricer(db_session, client, notifier, mutator=mutator).run_cycle()

    assert result["errors"] == 1
    mutation = await db_session.scalar(select(PriceMutation))
    assert mutation.success is False
    assert "timed out" in mutation.error_message
    listing = await db_session.get(Listing, 1)
    assert listing.payout_price == 10000
    assert [event.kind for event in notifier.events] == ["api_error"]


@pytest.mark.anyio
async def test_unexpected_upstream_error_is_recorded(db_session, platform):
    db_session.add(make_listing(1, platform.id))
    await db_session.commit()
    notifier = RecordingNotifier()

    result = await Repricer(db_session, FlakyMarketplace(), notifier).run_cycle()

    assert result["errors"] == 1
    mutation = await db_session.scalar(select(PriceMutation))
    assert mutation.success is False
    assert "ValueError" in mutation.error_message
    assert [event.kind for event in notifier.events] == ["api_error"]


async def seed_async(session) -> None:
    platform = Platform(name="SourceX")
    session.add(platform)
    await session.commit()
    session.add_all(
        [make_listing(listing_id, platform.id, product_sku=f"SKU-{listing_id}") for listing_id in (1, 2, 3)]
    )
    await session.commit()


@pytest.mark.anyio
async def test_cycle_survives_upstream_error_on_async_session(async_db_session):
    await seed_async(async_db_session)
    client = FlakyMarketplace()

    result = await Repricer(async_db_session, client, RecordingNotifier()).run_cycle()

    assert result == {"processed": 3, "repriced": 2, "skipped": 0, "halted_on_stop_loss": 0, "errors": 1}
    rows = (await async_db_session.execute(select(PriceMutation.listing_id, PriceMutation.success))).all()
    assert sorted(rows) == [(1, False), (2, True), (3, True)]


@pytest.mark.anyio
async def test_cycle_continues_after_rollback_on_async_session(async_db_session):
    await seed_async(async_db_session)
    client = StubMarketplace()
    repricer = Repricer(async_db_session, client, RecordingNotifier(), strategy=FailingFirstStrategy())

    result = await repricer.run_cycle()

    assert result["errors"] == 1
    assert result["repriced"] == 2
    assert [payout for _, payout in client.calls] == [9648, 9648]
