"""
Runner Control Plane - Persistence
==================================

One async engine per process. Services receive an AsyncSession and own
their commits; the request-scoped session only commits what is left.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from control_plane.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for fleet tables."""


# ==========================================================================
# Engine
# ==========================================================================

def create_engine() -> AsyncEngine:
    url = str(settings.DATABASE_URL)
    if settings.is_sqlite:
        # aiosqlite runs on a worker thread
        return create_async_engine(
            url,
            echo=settings.DATABASE_ECHO,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(
        url,
        echo=settings.DATABASE_ECHO,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,
    )


engine = create_engine()

# Rows stay readable after commit; handlers build responses from them.
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


# ==========================================================================
# Sessions
# ==========================================================================

@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Session scope for work outside a request.

        async with get_db_session() as db:
            await OrderService(db).cancel(order_id)
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with get_db_session() as session:
        yield session


# ==========================================================================
# Lifecycle
# ==========================================================================

async def init_db() -> None:
    """Create any missing fleet tables."""
    from control_plane.core import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
