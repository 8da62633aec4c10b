"""Pytest configuration for integration tests.

These tests run against a real PostgreSQL database (TEST_DATABASE_URL) and
are skipped when it cannot be reached. Tables are created from the models
and emptied after each test.
"""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from taskmail.db import to_async_url
from taskmail.db.models import Base


def pytest_collection_modifyitems(items):
    for item in items:
        if "integration" in item.path.parts:
            item.add_marker(pytest.mark.integration)


@pytest_asyncio.fixture
async def engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Engine bound to the test database, with the schema in place."""
    engine = create_async_engine(to_async_url(database_url), pool_size=10)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except (OperationalError, OSError) as e:
        await engine.dispose()
        pytest.skip(f"PostgreSQL not available: {e}")

    yield engine

    async with engine.begin() as conn:
        await conn.execute(text("TRUNCATE notification_jobs"))
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)
