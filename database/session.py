"""
Async engine and session scope for SqlJobStore.

One engine per process. SqlJobStore.initialize() creates it (and the tables),
every store call opens a short transactional session, and SqlJobStore.close()
disposes it.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("mysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    """Map a plain database URL onto its asyncio driver."""
    for plain, async_prefix in _ASYNC_DRIVERS:
        if db_url.startswith(plain):
            return async_prefix + db_url[len(plain):]
    return db_url


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """Return the process engine, creating it from db_url (or settings) on first use."""
    global _engine, _sessions
    if _engine is None:
        settings = get_settings()
        url = _to_async_url(db_url or settings.database.url)
        options = {"echo": settings.debug}
        if not url.startswith("sqlite"):
            options.update(pool_size=5, max_overflow=10, pool_recycle=1800, pool_pre_ping=True)
        _engine = create_async_engine(url, **options)
        _sessions = async_sessionmaker(_engine, expire_on_commit=False)
        logger.info("database_engine_created", dialect=_engine.dialect.name)
    return _engine


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Commit on success, roll back on any error."""
    get_engine()
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: Optional[str] = None) -> None:
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _sessions = None
        logger.info("database_closed")
