import os
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, Callable, Mapping, Optional, Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)

Gated = Callable[[], AsyncContextManager[None]]


@dataclass
class GatedAsyncSession:
    """
    A session plus the process-wide DB gate. Public model functions take
    the gate once around their transaction; helpers that receive the bare
    session must not take it again.
    """
    session: AsyncSession
    gated: Gated


_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def normalize_async_url(url: str) -> str:
    for prefix, async_prefix in _DRIVERS:
        if url.startswith(prefix):
            return async_prefix + url[len(prefix):]
    return url


# DB-GATE
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def _install_sqlite_hooks(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _):
        # BEGIN is emitted by _sqlite_begin below
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA busy_timeout=5000;")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.close()

    # no row locks on SQLite: writers take the database lock up front and
    # queue on busy_timeout instead of failing on lock upgrade
    @event.listens_for(engine.sync_engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_async_engine(
    database_url: str, env: Optional[Mapping[str, str]] = None
) -> Tuple[AsyncEngine, async_sessionmaker, Gated]:
    """
    Engine, session factory and DB gate for `database_url`. Pool and gate
    sizes come from DB_POOL_SIZE, DB_MAX_OVERFLOW, DB_POOL_TIMEOUT and
    DB_GATE_LIMIT.
    """
    env = os.environ if env is None else env
    db_url = normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    gate_limit = int(env.get("DB_GATE_LIMIT", "10"))
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(env.get("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(env.get("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(env.get("DB_POOL_TIMEOUT", "30")),
        )
        # gate defaults to the pool size on postgres
        gate_limit = int(env.get("DB_GATE_LIMIT", pool_size))

    engine = create_async_engine(db_url, **kw)
    if db_url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_hooks(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # DB-GATE
    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, gated
