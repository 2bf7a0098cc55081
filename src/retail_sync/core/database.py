"""Async SQLAlchemy engine for the sync state store.

Provides:
- SyncBase: Declarative base for all sync tables (schema "sync")
- get_session(): AsyncSession factory used by SyncRepository
- init_db() / close_db(): lifecycle hooks for the FastAPI lifespan

Every sync table carries a tenant_id column and every repository query
filters on it; there is no cross-tenant query path.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.retail_sync.config import get_settings

SYNC_SCHEMA = "sync"

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=20,
            max_overflow=10,
            pool_pre_ping=True,
            echo=False,
        )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────

sync_metadata = MetaData(schema=SYNC_SCHEMA)


class SyncBase(DeclarativeBase):
    """Base class for sync state models (mappings, references, runs, ...)."""

    metadata = sync_metadata


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the shared engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create the sync schema and tables if they don't exist."""
    import src.retail_sync.sync.models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {SYNC_SCHEMA}"))
        await conn.run_sync(SyncBase.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
