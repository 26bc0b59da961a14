# tikiti/infra/sql.py
"""
Async engine + per-process DB gate.

Every unit of work runs as

    async with db.gated():
        async with db.session.begin():
            ...

The gate (a semaphore sized to the connection pool) keeps bursts of
requests queued in the event loop instead of in the pool.
"""
from __future__ import annotations
import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

Gated = Callable[[], AsyncContextManager[None]]

ASYNC_DRIVERS = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
}

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


@dataclass
class GatedAsyncSession:
    session: AsyncSession
    gated: Gated


def async_url(database_url: str) -> str:
    for plain, driver in ASYNC_DRIVERS.items():
        if database_url.startswith(plain):
            return driver + database_url[len(plain):]
    return database_url


def backend_name(database_url: str) -> str:
    url = async_url(database_url)
    if url.startswith("sqlite"):
        return "SQLite"
    if url.startswith("postgresql"):
        return "PostgreSQL"
    return url.split(":", 1)[0]


@asynccontextmanager
async def _hold(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def _install_sqlite_hooks(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()
        # pysqlite must not open transactions on its own; see _on_begin
        dbapi_connection.isolation_level = None

    # take the write lock up front so a read-then-write unit of work
    # cannot interleave with another writer
    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


@dataclass
class Database:
    url: str
    engine: AsyncEngine
    SessionAsync: async_sessionmaker
    gate: asyncio.Semaphore

    @property
    def backend(self) -> str:
        return backend_name(self.url)

    def gated(self) -> AsyncContextManager[None]:
        return _hold(self.gate)

    @asynccontextmanager
    async def open(self) -> AsyncIterator[GatedAsyncSession]:
        async with self.SessionAsync() as session:
            yield GatedAsyncSession(session=session, gated=self.gated)

    async def dispose(self) -> None:
        await self.engine.dispose()


def make_database(database_url: str) -> Database:
    url = async_url(database_url)
    options: Dict[str, Any] = {"pool_pre_ping": True}

    if url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        options.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )
        gate_limit = int(os.getenv("DB_GATE_LIMIT", str(pool_size)))
    else:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", "10"))

    engine = create_async_engine(url, **options)
    if url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_hooks(engine)

    return Database(
        url=url,
        engine=engine,
        SessionAsync=async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False,
            autoflush=False,
        ),
        gate=asyncio.Semaphore(max(1, gate_limit)),
    )
