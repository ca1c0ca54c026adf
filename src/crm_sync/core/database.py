"""Async SQLAlchemy engine for the sync engine tables.

Provides:
- SyncBase: Declarative base for all tables in the "integrations" schema
- get_session(): AsyncSession generator used as the repositories' session_factory
- init_db() / close_db(): lifecycle helpers for the application lifespan

All sync tables are shared across tenants and partitioned by a tenant_id
column. Workers claim jobs across tenants, so there is no per-tenant schema.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy import MetaData, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.crm_sync.config import get_settings

SYNC_SCHEMA = "integrations"

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
    """Base class for sync engine models (credentials, queue, mappings, ...)."""

    metadata = sync_metadata


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the shared engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create the integrations schema and tables if they don't exist.

    Production deployments run Alembic; this keeps local development and
    the Postgres-backed tests self-contained.
    """
    # Imported for its side effect of registering the models on SyncBase
    from src.crm_sync.integrations import models  # noqa: F401

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
