"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from perp_positioning.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)


@pytest.fixture
def trader_address() -> str:
    """Sample trader address for testing."""
    return "0x1234567890abcdef1234567890abcdef12345678"


@pytest.fixture
def base_time() -> datetime:
    """Minute-aligned UTC timestamp used as the origin of test fills."""
    return datetime(2024, 3, 1, 10, 0, tzinfo=UTC)


@pytest.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an async in-memory SQLite engine with the schema applied."""
    engine = create_async_db_engine("sqlite+aiosqlite:///:memory:")
    await init_async_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Create an async session for testing."""
    session_factory = create_async_session_factory(async_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def db_manager() -> AsyncGenerator[DatabaseManager, None]:
    """DatabaseManager bound to a fresh in-memory SQLite database."""
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()
