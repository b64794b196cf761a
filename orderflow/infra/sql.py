import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, AsyncIterator, Callable, Optional

from sqlalchemy import event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

Gated = Callable[[], AsyncContextManager[None]]

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


@dataclass
class GatedAsyncSession:
    """A session plus the process-wide DB gate.

    Public model functions take one of these and wrap each transaction in
    ``async with db.gated(): async with db.session.begin(): ...``.
    """
    session: AsyncSession
    gated: Gated


@dataclass
class Database:
    engine: AsyncEngine
    SessionAsync: async_sessionmaker
    gated: Gated

    @asynccontextmanager
    async def session(self) -> AsyncIterator[GatedAsyncSession]:
        async with self.SessionAsync() as session:
            yield GatedAsyncSession(session=session, gated=self.gated)

    async def dispose(self) -> None:
        await self.engine.dispose()


def _semaphore_gate(limit: int) -> Gated:
    # DB-GATE: never more sessions doing work than the pool can serve
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated():
        async with sem:
            yield

    return gated


def _sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA busy_timeout=5000;")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.execute("PRAGMA foreign_keys=ON;")
        cur.close()


def open_database(database_url: str, *, pool_size: int = 10,
                  max_overflow: int = 10, pool_timeout: int = 30,
                  gate_limit: Optional[int] = None) -> Database:
    url = async_url(database_url)
    kw = dict(pool_pre_ping=True)
    is_sqlite = url.startswith("sqlite+aiosqlite://")
    if not is_sqlite:
        kw.update(pool_size=pool_size, max_overflow=max_overflow,
                  pool_timeout=pool_timeout)

    engine = create_async_engine(url, **kw)
    if is_sqlite:
        _sqlite_pragmas(engine)

    if gate_limit is None:
        # sqlite has a single writer
        gate_limit = 1 if is_sqlite else pool_size

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return Database(engine=engine, SessionAsync=SessionAsync,
                    gated=_semaphore_gate(gate_limit))


def insert_for(session: AsyncSession, table):
    """Dialect insert construct, so callers can use on_conflict_do_nothing."""
    if session.bind.dialect.name == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)
