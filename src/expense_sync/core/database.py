"""Async SQLAlchemy engine and session management.

Provides:
- Base: Declarative base for the canonical expense and sync-log tables
- get_engine(): Lazily created async engine singleton
- get_session(): AsyncSession generator used as a repository session_factory
- init_db() / close_db(): Lifespan hooks
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.expense_sync.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        kwargs: dict = {"echo": False}
        if not settings.DATABASE_URL.startswith("sqlite"):
            kwargs.update(pool_size=10, max_overflow=10, pool_pre_ping=True)
        _engine = create_async_engine(settings.DATABASE_URL, **kwargs)
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for all persisted models."""


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the engine singleton."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create tables that don't exist yet.

    Alembic owns the schema in deployed environments; this keeps local
    development and tests usable without running migrations first.
    """
    # Import models so they register on Base.metadata
    from src.expense_sync.expenses import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
