"""Async engine factory shared by the app and the tests."""
import asyncio
import os
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession, async_sessionmaker, create_async_engine,
)
from sqlalchemy.pool import StaticPool

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def async_url(url: str) -> str:
    for prefix, replacement in _ASYNC_DRIVERS:
        if url.startswith(prefix):
            return url.replace(prefix, replacement, 1)
    return url


def is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite+aiosqlite://") and (
        url.endswith(":memory:") or url == "sqlite+aiosqlite://"
    )


@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    async with sem:
        yield


def make_async_engine(database_url: str):
    """Return ``(engine, SessionAsync, gated)`` for a sync-style URL.

    ``gated()`` caps concurrent reads on hot polling routes below the pool
    size, so webhook writes still find a free connection.
    """
    url = async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )
    elif is_memory_sqlite(url):
        # one shared connection, otherwise every checkout sees an empty db
        kw = dict(
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    engine = create_async_engine(url, **kw)

    if url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size or 10))
    sem = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(sem)

    return engine, SessionAsync, gated
