"""Shared test fixtures.

Provides a throwaway SQLite database per test (aiosqlite, file-backed so
separate sessions see each other's commits) with every CRM table created,
and a session factory with the same shape as get_session().
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

import src.crm.models  # noqa: F401 -- register mappers
from src.crm.core.database import Base, SessionFactory, make_session_factory


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'crm.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> SessionFactory:
    return make_session_factory(engine)
