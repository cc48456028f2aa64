from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .db_tables import metadata

_engine_cache: dict[str, AsyncEngine] = {}
_session_factory_cache: dict[str, async_sessionmaker[AsyncSession]] = {}


def _ensure_sqlite_parent(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite" or not url.database or url.database == ":memory:":
        return
    Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def _ensure_async_engine(database_url: str) -> AsyncEngine:
    if database_url not in _engine_cache:
        _ensure_sqlite_parent(database_url)
        _engine_cache[database_url] = create_async_engine(database_url, future=True)
    return _engine_cache[database_url]


def _ensure_sessionmaker(database_url: str) -> async_sessionmaker[AsyncSession]:
    if database_url not in _session_factory_cache:
        engine = _ensure_async_engine(database_url)
        _session_factory_cache[database_url] = async_sessionmaker(engine, expire_on_commit=False)
    return _session_factory_cache[database_url]


@asynccontextmanager
async def session_scope(database_url: str) -> AsyncIterator[AsyncSession]:
    factory = _ensure_sessionmaker(database_url)
    async with factory() as session:
        yield session


async def create_schema(database_url: str) -> None:
    """Create the ledger tables when they do not exist yet."""

    engine = _ensure_async_engine(database_url)
    async with engine.begin() as connection:
        await connection.run_sync(metadata.create_all)


async def dispose_engine(database_url: str) -> None:
    _session_factory_cache.pop(database_url, None)
    engine = _engine_cache.pop(database_url, None)
    if engine is not None:
        await engine.dispose()
