"""Async SQLAlchemy engine, declarative base, and session factories.

Provides:
- Base: Declarative base for every CRM table
- get_engine(): Lazily created async engine singleton
- get_session(): Session generator used by repositories and FastAPI deps
- make_session_factory(): Session generator bound to an explicit engine (tests, scripts)
- init_db() / close_db(): Startup and shutdown hooks
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.crm.config import get_settings

SessionFactory = Callable[[], AsyncGenerator[AsyncSession, None]]

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

naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all CRM models."""

    metadata = MetaData(naming_convention=naming_convention)


# ── Session Factories ───────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the application engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


def make_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Build a session generator callable bound to ``engine``.

    Repositories accept any callable with the same shape as get_session(),
    so tests can point them at a throwaway database.
    """

    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _factory


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create all tables that don't exist yet (dev convenience; prod uses Alembic)."""
    import src.crm.models  # noqa: F401 -- register mappers

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
