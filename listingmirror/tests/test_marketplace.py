from __future__ import annotations

import base64
import json
import time

import httpx
import pytest

from listingmirror.app.services.marketplace import (
    MalformedReferenceError,
    MarketplaceClient,
    MarketplaceSession,
    decode_token_expiry,
    parse_listing_refs,
)

API_URL = "https://api.example/graphql"


def make_token(exp: float) -> str:
    claims = base64.urlsafe_b64encode(json.dumps({"exp": exp}).encode()).decode().rstrip("=")
    return f"header.{claims}.signature"


class FakeMarketplace:
    """Answer GraphQL operations the way the upstream API does."""

    def __init__(self, pages: dict[bool, list[dict]] | None = None) -> None:
        self.pages = pages or {}
        self.operations: list[str] = []
        self.update_payloads: list[dict] = []
        self.token = make_token(time.time() + 3600)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        operation = body["operationName"]
        self.operations.append(operation)
        if operation == "Login":
            return httpx.Response(
                200,
                json={"data": {"obtainToken": {"success": True, "token": self.token, "refreshToken": "r1"}}},
            )
        assert request.headers["authorization"] == f"JWT {self.token}"
        if operation == "LowestAndNotLowest":
            variables = body["variables"]
            pages = self.pages.get(variables["isLowest"], [])
            index = int(variables["after"] or 0)
            edges = [{"node": node} for node in pages[index]] if pages else []
            has_next = index + 1 < len(pages)
            return httpx.Response(
                200,
                json={
                    "data": {
                        "myInventories": {
                            "edges": edges,
                            "pageInfo": {"hasNextPage": has_next, "endCursor": str(index + 1) if has_next else None},
                        }
                    }
                },
            )
        if operation == "UpdatePlatformListings":
            updates = body["variables"]["updates"]
            self.update_payloads.append(updates)
            return httpx.Response(
                200,
                json={
                    "data": {
                        "updateMultiplePlatformListings": [
                            {"id": update["platformListingId"], "resellerPayoutPrice": update["resellerPayoutPrice"]}
                            for update in updates
                        ]
                    }
                },
            )
        return httpx.Response(400, json={"errors": [{"message": "unknown operation"}]})


def make_client(fake: FakeMarketplace) -> MarketplaceClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    session = MarketplaceSession(http_client, email="ops@example.com", password="secret", api_url=API_URL)
    return MarketplaceClient(session, http_client, page_size=2)


def test_decode_token_expiry():
    assert decode_token_expiry(make_token(1700000000)) == 1700000000
    assert decode_token_expiry("garbage") == 0.0


def test_parse_listing_refs():
    assert parse_listing_refs(["a", "b"]) == ["a", "b"]
    assert parse_listing_refs('["a"]') == ["a"]
    assert parse_listing_refs(("a",)) == ["a"]
    for bad in (None, [], "not json", [""], [1], {"id": "a"}):
        with pytest.raises(MalformedReferenceError):
            parse_listing_refs(bad)


@pytest.mark.anyio
async def test_fetch_inventory_follows_cursor_and_dedupes():
    fake = FakeMarketplace(pages={True: [[{"id": "a"}, {"id": "b"}], [{"id": "b"}, {"id": "c"}]]})
    client = make_client(fake)

    nodes = await client.fetch_inventory(is_lowest=True)
    await client.close()

    assert [node["id"] for node in nodes] == ["a", "b", "c"]
    assert fake.operations == ["Login", "LowestAndNotLowest", "LowestAndNotLowest"]


@pytest.mark.anyio
async def test_apply_payout_price_updates_every_ref():
    fake = FakeMarketplace()
    client = make_client(fake)

    result = await client.apply_payout_price(["r1", "r2"], 9648)
    await client.close()

    assert result.success is True
    assert result.updated_count == 2
    assert [update["resellerPayoutPrice"] for update in fake.update_payloads[0]] == [9648, 9648]


@pytest.mark.anyio
async def test_apply_payout_price_validates_input():
    client = make_client(FakeMarketplace())

    with pytest.raises(MalformedReferenceError):
        await client.apply_payout_price([], 9648)
    with pytest.raises(MalformedReferenceError):
        await client.apply_payout_price(["r1"], 0)
    await client.close()


@pytest.mark.anyio
async def test_session_reuses_valid_token():
    fake = FakeMarketplace()
    client = make_client(fake)

    await client.apply_payout_price(["r1"], 100)
    await client.apply_payout_price(["r1"], 101)
    await client.close()

    assert fake.operations.count("Login") == 1
