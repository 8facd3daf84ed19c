"""
Async engine and session scope for the prompt library.

Only the drivers the relay ships with are mapped:
  postgresql:// | postgres://  → postgresql+asyncpg://
  sqlite://                    → sqlite+aiosqlite://
URLs that already name a driver pass through unchanged.

Usage:
    await init_db()                    # creates the prompts table
    async with get_session() as db:    # one transaction
        result = await db.execute(...)
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep or "+" in scheme:
        return db_url
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def get_engine(db_url: str = None) -> AsyncEngine:
    """Return the library engine, creating it (and its session factory) on first use."""
    global _engine, _session_factory
    if _engine is None:
        url = make_url(to_async_url(db_url or get_settings().database.url))
        kwargs = {"echo": get_settings().debug}
        if url.get_backend_name() != "sqlite":
            kwargs.update(pool_size=5, max_overflow=10, pool_recycle=1800, pool_pre_ping=True)
        _engine = create_async_engine(url, **kwargs)
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
        logger.info("library_engine_created", dialect=_engine.dialect.name,
                    url=url.render_as_string(hide_password=True))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: committed on exit, rolled back and re-raised on error."""
    get_engine()
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: str = None) -> None:
    """Create missing library tables. Idempotent."""
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("library_schema_ready", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("library_engine_disposed")
