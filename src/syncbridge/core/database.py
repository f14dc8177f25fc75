"""Async SQLAlchemy engine and session factory.

Provides:
- Base: Declarative base for the engine's tables (entity mappings, sync tasks)
- get_engine(): Lazily created engine singleton for settings.DATABASE_URL
- get_session(): Session generator used as the repositories' session_factory
- init_db() / close_db(): Create tables on startup, dispose on shutdown
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.syncbridge.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        if not settings.DATABASE_URL:
            msg = "DATABASE_URL is not configured"
            raise RuntimeError(msg)
        options: dict = {"echo": False, "pool_pre_ping": True}
        if not settings.DATABASE_URL.startswith("sqlite"):
            options.update(pool_size=20, max_overflow=10)
        _engine = create_async_engine(settings.DATABASE_URL, **options)
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for all persisted engine state."""


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession; repositories open one short session per operation."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create the engine tables if they don't exist."""
    # Register models on Base.metadata
    import src.syncbridge.sync.models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
