"""
Database layer — async SQL via SQLAlchemy 2.0 (asyncpg in production).

Provides:
    • Async engine and session factory builders
    • Base model for ORM entities
    • Table creation / disposal helpers used by the app lifespan

The engine is only created when STORE_BACKEND=sql; the default
in-memory store never touches this module's engine helpers.

Usage:
    from backend.app.core.database import create_engine_from_url, build_session_factory

    engine = create_engine_from_url(settings.DATABASE_URL)
    session_factory = build_session_factory(engine)
    await init_db(engine)
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
def create_engine_from_url(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, future=True)
    return create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        echo=echo,
        future=True,
    )


# ── Session Factory ──
def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Lifecycle ──
async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Register ORM tables on Base.metadata
    from backend.app.alerts import sql_store  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db(engine: AsyncEngine) -> None:
    """Dispose engine connections."""
    await engine.dispose()
    logger.info("Database connections closed")
