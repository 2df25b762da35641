"""Marketplace GraphQL client: inventory snapshots and payout updates."""

from __future__ import annotations

import asyncio
import base64
import json
import time
from dataclasses import dataclass, field
from typing import Any

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import settings
from ..core.logging import logger

LOGIN_MUTATION = """
mutation Login($email: String!, $password: String!) {
  obtainToken(email: $email, password: $password) {
    success
    message
    token
    refreshToken
  }
}
"""

REFRESH_TOKEN_MUTATION = """
mutation RefreshToken($refreshToken: String!) {
  refreshToken(refreshToken: $refreshToken) {
    token
    refreshToken
  }
}
"""

INVENTORY_QUERY = """
query LowestAndNotLowest($isLowest: Boolean!, $first: Int!, $after: String) {
  myInventories(isLowest: $isLowest, first: $first, after: $after) {
    totalCount
    pageInfo { hasNextPage endCursor }
    edges {
      node {
        id
        quantity
        isSold
        isListed
        variant {
          id
          title
          lowestPrice
          product {
            skuId
            title
            brandName
            images(first: 1) { edges { node { image } } }
          }
        }
        platformListings {
          edges {
            node {
              id
              resellerPayoutPrice
              marketplace { title commissionPercentage }
            }
          }
        }
      }
    }
  }
}
"""

UPDATE_PLATFORM_LISTINGS_MUTATION = """
mutation UpdatePlatformListings($updates: [PlatformListingUpdateInput!]!) {
  updateMultiplePlatformListings(updates: $updates) {
    id
    resellerPayoutPrice
    status
  }
}
"""


class MarketplaceError(Exception):
    """Raised when the marketplace API returns an error."""


class MarketplaceAuthError(MarketplaceError):
    """Raised when login or token refresh is rejected."""


class RateLimitError(MarketplaceError):
    """Raised when API throttle occurs."""


class MalformedReferenceError(ValueError):
    """Raised when a listing's external references cannot be used for a price push."""


@dataclass
class Credentials:
    """Bearer credentials for the marketplace API."""

    access_token: str
    refresh_token: str | None
    expires_at: float

    @property
    def authorization(self) -> str:
        return f"JWT {self.access_token}"


@dataclass
class ApplyResult:
    """Outcome of a payout price push."""

    success: bool
    updated_count: int
    per_listing_results: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def decode_token_expiry(token: str) -> float:
    """Return the ``exp`` claim of a JWT as an epoch timestamp, or 0 when unreadable."""

    try:
        payload = token.split(".")[1]
        payload += "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload))
        return float(claims.get("exp", 0))
    except (IndexError, ValueError, TypeError):
        return 0.0


def parse_listing_refs(refs: Any) -> list[str]:
    """Validate stored external listing references.

    Accepts a list or a JSON encoded list of non-empty strings.
    """

    if isinstance(refs, str):
        try:
            refs = json.loads(refs)
        except ValueError as exc:
            raise MalformedReferenceError("External listing references are not valid JSON") from exc
    if isinstance(refs, tuple):
        refs = list(refs)
    if not isinstance(refs, list) or not refs:
        raise MalformedReferenceError("No external listing references found")
    if not all(isinstance(ref, str) and ref.strip() for ref in refs):
        raise MalformedReferenceError("External listing references must be non-empty strings")
    return list(refs)


class MarketplaceSession:
    """Hold marketplace credentials and keep them valid."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        email: str | None = None,
        password: str | None = None,
        api_url: str | None = None,
        refresh_buffer_seconds: int | None = None,
    ) -> None:
        self._client = http_client
        self.email = email or settings.marketplace_email
        self.password = password or settings.marketplace_password
        self.api_url = api_url or settings.marketplace_api_url
        self.refresh_buffer = (
            refresh_buffer_seconds
            if refresh_buffer_seconds is not None
            else settings.marketplace_token_refresh_buffer_seconds
        )
        self._credentials: Credentials | None = None
        self._lock = asyncio.Lock()

    async def ensure_valid(self) -> Credentials:
        async with self._lock:
            creds = self._credentials
            if creds and time.time() < creds.expires_at - self.refresh_buffer:
                return creds
            if creds and creds.refresh_token:
                try:
                    self._credentials = await self._refresh(creds.refresh_token)
                    return self._credentials
                except MarketplaceError as exc:
                    logger.warning("Token refresh failed, logging in again: %s", exc)
            self._credentials = await self._login()
            return self._credentials

    async def _post(self, operation: str, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        response = await self._client.post(
            self.api_url,
            json={"operationName": operation, "query": query, "variables": variables},
        )
        response.raise_for_status()
        payload = response.json()
        if payload.get("errors"):
            raise MarketplaceAuthError(payload["errors"][0].get("message", "GraphQL error"))
        return payload.get("data") or {}

    async def _login(self) -> Credentials:
        if not self.email or not self.password:
            raise MarketplaceAuthError("Marketplace credentials are not configured")
        data = await self._post("Login", LOGIN_MUTATION, {"email": self.email, "password": self.password})
        result = data.get("obtainToken") or {}
        if not result.get("success"):
            raise MarketplaceAuthError(result.get("message") or "Login failed")
        logger.info("Logged in to marketplace as %s", self.email)
        return Credentials(
            access_token=result["token"],
            refresh_token=result.get("refreshToken"),
            expires_at=decode_token_expiry(result["token"]),
        )

    async def _refresh(self, refresh_token: str) -> Credentials:
        data = await self._post("RefreshToken", REFRESH_TOKEN_MUTATION, {"refreshToken": refresh_token})
        result = data.get("refreshToken") or {}
        if not result.get("token"):
            raise MarketplaceAuthError("Token refresh returned no token")
        logger.debug("Refreshed marketplace token")
        return Credentials(
            access_token=result["token"],
            refresh_token=result.get("refreshToken") or refresh_token,
            expires_at=decode_token_expiry(result["token"]),
        )


class MarketplaceClient:
    """Minimal marketplace GraphQL client with retry."""

    def __init__(
        self,
        session: MarketplaceSession,
        http_client: httpx.AsyncClient,
        page_size: int | None = None,
    ) -> None:
        self.session = session
        self._client = http_client
        self.page_size = page_size or settings.marketplace_page_size

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, operation: str, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=10),
            retry=retry_if_exception_type((httpx.RequestError, RateLimitError)),
            reraise=True,
        ):
            with attempt:
                credentials = await self.session.ensure_valid()
                response = await self._client.post(
                    self.session.api_url,
                    json={"operationName": operation, "query": query, "variables": variables},
                    headers={"authorization": credentials.authorization},
                )
                if response.status_code == 429:
                    raise RateLimitError("API throttled")
                if response.status_code >= 400:
                    raise MarketplaceError(f"HTTP {response.status_code} from marketplace")
                return response.json()
        raise RuntimeError("Unreachable")

    async def fetch_inventory(self, is_lowest: bool) -> list[dict[str, Any]]:
        """Fetch every inventory node in the lowest (or not lowest) set."""

        nodes: dict[str, dict[str, Any]] = {}
        after: str | None = None
        while True:
            payload = await self._request(
                "LowestAndNotLowest",
                INVENTORY_QUERY,
                {"isLowest": is_lowest, "first": self.page_size, "after": after},
            )
            if payload.get("errors"):
                raise MarketplaceError(payload["errors"][0].get("message", "GraphQL error"))
            page = (payload.get("data") or {}).get("myInventories") or {}
            for edge in page.get("edges", []):
                node = edge.get("node") or {}
                if node.get("id"):
                    nodes[node["id"]] = node
            page_info = page.get("pageInfo") or {}
            if not page_info.get("hasNextPage") or not page_info.get("endCursor"):
                break
            after = page_info["endCursor"]
        logger.info("Fetched %s inventory items (is_lowest=%s)", len(nodes), is_lowest)
        return list(nodes.values())

    async def apply_payout_price(self, refs: list[str], new_payout: int) -> ApplyResult:
        """Push a new reseller payout price to every platform listing reference."""

        refs = parse_listing_refs(refs)
        if new_payout <= 0:
            raise MalformedReferenceError("Payout price must be a positive number")
        updates = [
            {
                "platformListingId": ref,
                "resellerPayoutPrice": new_payout,
                "resellerPayoutPriceSx": new_payout,
            }
            for ref in refs
        ]
        logger.info("Updating %s platform listings to payout %s", len(updates), new_payout)
        payload = await self._request(
            "UpdatePlatformListings", UPDATE_PLATFORM_LISTINGS_MUTATION, {"updates": updates}
        )
        if payload.get("errors"):
            messages = [error.get("message", "GraphQL error") for error in payload["errors"]]
            logger.error("Payout update rejected: %s", messages)
            return ApplyResult(success=False, updated_count=0, errors=messages)
        updated = (payload.get("data") or {}).get("updateMultiplePlatformListings")
        if updated is None:
            return ApplyResult(success=False, updated_count=0, errors=["No update result in response"])
        return ApplyResult(success=True, updated_count=len(updated), per_listing_results=list(updated))


async def create_marketplace_client() -> MarketplaceClient:
    """Factory for dependency injection."""

    http_client = httpx.AsyncClient(timeout=settings.marketplace_timeout_seconds)
    session = MarketplaceSession(http_client)
    return MarketplaceClient(session, http_client)
