"""
Async engine and session factory for the ticket store.

SQLite (aiosqlite) for development and tests, postgres (asyncpg) in
production. All store work goes through `Database.gated()`, which caps the
number of coroutines holding a connection at once so request bursts queue
in the app instead of timing out in the pool.
"""
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from .. import config

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA synchronous=NORMAL",
)


def normalize_async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        cur = dbapi_connection.cursor()
        for pragma in _SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


class Database:

    def __init__(self, engine: AsyncEngine, gate_limit: int) -> None:
        self.engine = engine
        self.sessions = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self._gate = asyncio.Semaphore(max(1, gate_limit))

    @asynccontextmanager
    async def gated(self) -> AsyncIterator[None]:
        async with self._gate:
            yield

    async def dispose(self) -> None:
        await self.engine.dispose()


def make_database(
    database_url: str, *, gate_limit: Optional[int] = None
) -> Database:
    url = normalize_async_url(database_url)

    if url.startswith("postgresql+asyncpg://"):
        engine = create_async_engine(
            url,
            pool_pre_ping=True,
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_MAX_OVERFLOW,
            pool_timeout=config.DB_POOL_TIMEOUT,
        )
    else:
        engine = create_async_engine(url, pool_pre_ping=True)
        if url.startswith("sqlite+aiosqlite://"):
            _install_sqlite_pragmas(engine)

    return Database(engine, gate_limit or config.DB_GATE_LIMIT)
