"""Shared pytest fixtures for async database testing.

This module provides reusable fixtures for testing the stores, the queue
and the pipeline controller against a real SQLite database (aiosqlite).
A file-backed database is used so concurrent sessions see each other's
commits the way they would on PostgreSQL.
"""

import pytest
import pytest_asyncio

from orchestrator.notifications import InMemoryNotificationBus
from orchestrator.store import JobStore, PostStore, ScriptVersionStore


@pytest.fixture(autouse=True)
def clean_orchestrator_env(monkeypatch: pytest.MonkeyPatch):
    """Remove orchestrator environment variables so defaults apply.

    Tests that need a variable set it explicitly with monkeypatch.setenv().
    """
    for name in (
        "DATABASE_URL",
        "MAX_CONCURRENT_GENERATIONS",
        "GENERATION_MAX_ATTEMPTS",
        "GENERATION_RETRY_DELAY_SECONDS",
        "GENERATION_RETRY_BACKOFF",
        "GENERATION_PROCESSING_TIMEOUT_SECONDS",
        "GENERATION_EXPECTED_DURATION_SECONDS",
        "PIPELINE_CHECK_INTERVAL_SECONDS",
        "PIPELINE_AUTO_TRIGGER",
        "PIPELINE_DEFAULT_STYLE",
        "PIPELINE_DEFAULT_DURATION",
        "SCRIPT_GENERATOR_URL",
        "NOTIFICATION_WEBHOOK_URL",
        "UPSTREAM_RATE_LIMIT_PER_MINUTE",
        "WORKER_ID",
    ):
        monkeypatch.delenv(name, raising=False)

    from orchestrator.config import get_database_url

    get_database_url.cache_clear()
    yield
    get_database_url.cache_clear()


@pytest_asyncio.fixture
async def job_store(session_factory) -> JobStore:
    return JobStore(session_factory)


@pytest_asyncio.fixture
async def post_store(session_factory) -> PostStore:
    return PostStore(session_factory)


@pytest_asyncio.fixture
async def script_store(session_factory) -> ScriptVersionStore:
    return ScriptVersionStore(session_factory)


@pytest.fixture
def bus() -> InMemoryNotificationBus:
    """In-process notification bus; inspect published events via bus.history."""
    return InMemoryNotificationBus()


# Import additional fixtures from fixtures/ package
from tests.fixtures.database import (  # noqa: F401, E402
    async_test_engine,
    async_test_session,
    session_factory,
)
