"""Fixtures for tests against the SQL store."""

import pytest_asyncio

from pulse.persistence.database import DatabaseConfig
from pulse.persistence.store import SqlScheduleStore


@pytest_asyncio.fixture
async def database():
    """In-memory SQLite database with the schema created."""
    database = DatabaseConfig(url="sqlite+aiosqlite:///:memory:")
    await database.create_tables()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def sql_store(database) -> SqlScheduleStore:
    return SqlScheduleStore(database)
