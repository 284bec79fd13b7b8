"""Shared fixtures for core tests."""

from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest


@pytest.fixture
def mock_settings() -> Generator[MagicMock, None, None]:
    """Mock Settings object for database tests."""
    settings = MagicMock()
    settings.db_host = "localhost"
    settings.db_port = 5432
    settings.db_name = "test_db"
    settings.db_user = "test_user"
    settings.db_password = "test_password"  # noqa: S105
    settings.db_pool_min_size = 2
    settings.db_pool_max_size = 10
    settings.dsn_summary = "localhost:5432/test_db"
    yield settings


@pytest.fixture
def mock_conn() -> AsyncMock:
    """Connection whose transaction() works as an async context manager."""
    conn = AsyncMock()
    transaction = AsyncMock()
    transaction.__aenter__.return_value = None
    transaction.__aexit__.return_value = None
    conn.transaction = MagicMock(return_value=transaction)
    return conn


@pytest.fixture
def mock_pool(mock_conn: AsyncMock) -> MagicMock:
    """Pool whose acquire() yields mock_conn."""
    pool = MagicMock()
    async_acquire = AsyncMock()
    async_acquire.__aenter__.return_value = mock_conn
    async_acquire.__aexit__.return_value = None
    pool.acquire.return_value = async_acquire
    pool.close = AsyncMock()
    return pool
