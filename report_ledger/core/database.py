"""
Async engine and transactional sessions.

One session per request or job, committed when the unit of work returns and
rolled back on any error. Report runs depend on this: hash, artifact path
and status are flushed together and become visible in a single commit.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import get_settings

logger = logging.getLogger(__name__)


@lru_cache
def get_engine() -> AsyncEngine:
    settings = get_settings()
    url = settings.database_url_async
    options: dict = {"echo": settings.database_echo}

    # SQLite (local runs) has no connection pool to tune
    if not url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            pool_recycle=300,
            pool_timeout=30,
        )

    logger.info(f"Connecting to database {url.split('@')[-1]}")
    return create_async_engine(url, **options)


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """Unit of work outside FastAPI: commit on success, roll back on error."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Transaction rolled back: {type(e).__name__}: {e}")
            raise


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency wrapping each request in one transaction."""
    async with get_session_context() as session:
        yield session


async def init_db() -> None:
    """Create missing tables. Deployed databases are migrated instead."""
    from ..models import Base

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await get_engine().dispose()
