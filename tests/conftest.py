"""Pytest configuration and fixtures."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from db import DatabaseManager
from plugins.registry import reset_registry


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def db_manager(mock_pool, mock_connection):
    """DatabaseManager whose pool hands out mock_connection."""

    @asynccontextmanager
    async def mock_acquire():
        yield mock_connection

    mock_pool.acquire = mock_acquire

    manager = DatabaseManager(
        host="localhost",
        port=5432,
        database="test",
        user="test",
        password="test",
    )
    manager.pool = mock_pool
    return manager


@pytest.fixture(autouse=True)
def fresh_registry():
    """Each test starts with an empty global plugin registry."""
    reset_registry()
    yield
    reset_registry()


@pytest.fixture
def sample_row():
    """A parsed managed_resources row for a TugResource."""
    return {
        "id": 1,
        "kind": "TugResource",
        "namespace": "default",
        "name": "test-tug",
        "provider": "tug",
        "spec": {"authoritative_value": 2, "contended_value": 1},
        "status": {},
        "generation": 1,
        "observed_generation": 0,
        "finalizers": ["tug"],
        "retry_count": 0,
        "last_reconcile_time": None,
        "next_reconcile_time": None,
        "deleted_at": None,
    }
