from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
import sys

import pytest
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from listingmirror.app.models import Base, Platform


class AsyncSessionWrapper:
    """Minimal async wrapper around a synchronous SQLAlchemy session."""

    def __init__(self, sync_session: Session) -> None:
        self._session = sync_session

    @property
    def bind(self):
        return self._session.bind

    def add(self, obj) -> None:
        self._session.add(obj)

    def add_all(self, objects) -> None:
        self._session.add_all(objects)

    async def execute(self, *args, **kwargs):
        return self._session.execute(*args, **kwargs)

    async def scalar(self, *args, **kwargs):
        return self._session.scalar(*args, **kwargs)

    async def scalars(self, *args, **kwargs):
        return self._session.scalars(*args, **kwargs)

    async def get(self, *args, **kwargs):
        return self._session.get(*args, **kwargs)

    async def delete(self, instance) -> None:
        self._session.delete(instance)

    async def commit(self) -> None:
        self._session.commit()

    async def flush(self) -> None:
        self._session.flush()

    async def rollback(self) -> None:
        self._session.rollback()

    async def refresh(self, instance) -> None:
        self._session.refresh(instance)

    async def close(self) -> None:
        self._session.close()


@pytest.fixture
async def db_session() -> AsyncIterator[AsyncSessionWrapper]:
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    session = SessionLocal()
    try:
        yield AsyncSessionWrapper(session)
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
async def async_db_session() -> AsyncIterator[AsyncSession]:
    """A real asyncio session, for code paths that must not lazy-load."""

    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
async def platform(db_session) -> Platform:
    platform = Platform(name="SourceX", base_url="https://sourcex.example")
    db_session.add(platform)
    await db_session.commit()
    return platform


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
