"""Async database engine and session factory construction.

This module builds the async SQLAlchemy 2.0 engine and session factory used
by the job store. Nothing is created at import time: the worker entry point
calls create_engine_from_env() once and passes the session factory to the
stores that need it.

Usage:
    from orchestrator.database import create_engine_from_env

    engine, session_factory = create_engine_from_env()
    async with session_factory() as session:
        ...
"""

import os

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from orchestrator.config import get_database_url
from orchestrator.models import Base


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to engine.

    expire_on_commit=False keeps loaded attributes usable after commit, which
    the short transaction pattern (load → commit → use) depends on.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def create_engine_from_env() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create the production engine and session factory from DATABASE_URL.

    Returns:
        Tuple of (engine, session_factory).

    Raises:
        ValueError: If DATABASE_URL is not set.
    """
    database_url = get_database_url()

    if database_url.startswith("sqlite"):
        engine = create_async_engine(database_url, echo=False)
    else:
        engine = create_async_engine(
            database_url,
            pool_size=10,
            max_overflow=5,
            pool_pre_ping=True,
            echo=os.getenv("DATABASE_ECHO", "").lower() == "true",
        )

    return engine, create_session_factory(engine)


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Create an async engine for testing.

    Args:
        database_url: Test database URL (defaults to in-memory SQLite).

    Returns:
        Tuple of (engine, session_factory) for testing.
    """
    test_engine = create_async_engine(database_url, echo=False)
    return test_engine, create_session_factory(test_engine)


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet.

    Used for SQLite deployments and tests; PostgreSQL deployments run the
    Alembic migrations instead.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
