"""FastAPI dependencies."""

from __future__ import annotations

from collections.abc import AsyncIterator

from .core.database import get_session
from .services.marketplace import MarketplaceClient, create_marketplace_client


async def get_db() -> AsyncIterator:
    async with get_session() as session:
        yield session


async def get_marketplace_client() -> AsyncIterator[MarketplaceClient]:
    client = await create_marketplace_client()
    try:
        yield client
    finally:
        await client.close()
