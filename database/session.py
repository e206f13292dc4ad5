"""
Async database session management for the SQL store.

    postgresql:// | postgres://   → postgresql+asyncpg://
    mysql:// | mysql+pymysql://   → mysql+aiomysql://
    sqlite://                     → sqlite+aiosqlite://

Worker loops for several devices claim job items concurrently, so SQLite
runs in WAL mode with a busy timeout and foreign keys on (job_items
cascade with their job).

Usage:
    await init_db()                         # once at startup (sql backend)
    store = SqlStore(create_session_factory(get_engine()))
    async with session_scope(factory) as db:
        ...
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

SQLITE_BUSY_TIMEOUT_MS = 5000

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep or scheme not in _ASYNC_DRIVERS:
        return db_url
    return f"{_ASYNC_DRIVERS[scheme]}://{rest}"


def _pool_kwargs(db_url: str) -> dict:
    if db_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def build_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    """Create an engine for `db_url` (sync or async form)."""
    url = _to_async_url(db_url)
    engine = create_async_engine(url, echo=echo, **_pool_kwargs(url))

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
            if ":memory:" not in url:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Return the global engine, creating it from settings if needed."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.database.url, echo=settings.debug)
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    url=_engine.url.render_as_string(hide_password=True))
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


@asynccontextmanager
async def session_scope(factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Transactional scope: commit on success, roll back on any error."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide a transactional async session scope on the global engine."""
    async with session_scope(_get_session_factory()) as session:
        yield session


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """Create all tables. Call once at application startup."""
    engine = get_engine()
    await create_tables(engine)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=list(Base.metadata.tables.keys()))


async def close_db() -> None:
    """Dispose engine connections. Call at application shutdown."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
