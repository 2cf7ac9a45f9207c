"""Database engines and sessions.

- The job store and the dispatcher use sync Session (psycopg / sqlite3); every store
  operation opens its own short-lived session so worker threads never share one.
- Read-only FastAPI handlers use AsyncSession (asyncpg / aiosqlite).
"""

from __future__ import annotations

from typing import AsyncGenerator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import URL, Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from .config import settings


def _is_sqlite(url: URL) -> bool:
    return url.drivername.startswith("sqlite")


def _with_driver(url: URL, drivername: str) -> URL:
    """Return a copy of URL with a different drivername."""
    return url.set(drivername=drivername)


def _pool_kwargs() -> dict:
    return {
        "pool_size": max(1, int(settings.db_pool_size)),
        "max_overflow": max(0, int(settings.db_max_overflow)),
        "pool_timeout": max(1, int(settings.db_pool_timeout_s)),
        "pool_recycle": max(0, int(settings.db_pool_recycle_s)),
    }


def install_sqlite_pragmas(engine: Engine) -> None:
    """
    Improve concurrency characteristics for SQLite.
    - WAL: concurrent readers while the claiming writer is active
    - busy_timeout: wait for locks instead of failing immediately
    """
    busy_ms = int(settings.sqlite_busy_timeout_ms)

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.execute(f"PRAGMA busy_timeout={busy_ms};")
        finally:
            cursor.close()


def create_sync_engine(database_url: str) -> Engine:
    url = make_url(database_url)
    if _is_sqlite(url):
        # NullPool so each worker thread gets its own connection.
        timeout_s = max(0.0, float(settings.sqlite_busy_timeout_ms) / 1000.0)
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": timeout_s},
            poolclass=NullPool,
        )
        if url.database and url.database != ":memory:":
            install_sqlite_pragmas(engine)
        return engine
    # If user provided plain postgresql://..., force psycopg for sync usage.
    if url.drivername == "postgresql":
        url = _with_driver(url, "postgresql+psycopg")
    return create_engine(url, pool_pre_ping=True, **_pool_kwargs())


raw_url: URL = make_url(settings.database_url)

# ----------------------------
# Sync engine/session (store, dispatcher, workers)
# ----------------------------

sync_engine = create_sync_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=sync_engine)

# ----------------------------
# Async engine/session (API reads)
# ----------------------------

async_url = raw_url
if _is_sqlite(async_url):
    if async_url.drivername == "sqlite":
        async_url = _with_driver(async_url, "sqlite+aiosqlite")
elif async_url.drivername == "postgresql":
    async_url = _with_driver(async_url, "postgresql+asyncpg")

async_engine_kwargs: dict = {"pool_pre_ping": True}
if not _is_sqlite(async_url):
    async_engine_kwargs.update(_pool_kwargs())

async_engine = create_async_engine(async_url, **async_engine_kwargs)
AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)

# ----------------------------
# Helpers
# ----------------------------


def init_db():
    """
    Create tables on SQLite (local dev and tests).

    We avoid implicit `create_all()` on Postgres; schema is managed via Alembic.
    """
    if not _is_sqlite(raw_url):
        return
    from .models import Base
    Base.metadata.create_all(bind=sync_engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an AsyncSession."""
    async with AsyncSessionLocal() as session:
        yield session
