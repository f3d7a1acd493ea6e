"""Pytest configuration and fixtures for stowage tests."""

import logging
import os
from unittest.mock import AsyncMock, patch

import pytest

from stowage.cache.memory import LRUCacheBackend
from stowage.cache.mmap_store import PersistentLocalBackend


@pytest.fixture(autouse=True, scope="session")
def mock_environment_variables(tmp_path_factory):
    """Keep developer configuration (env vars, stowage.toml) out of the tests."""
    home = tmp_path_factory.mktemp("home")
    env_vars = {key: value for key, value in os.environ.items() if not key.startswith("STOWAGE_")}
    env_vars.update(
        {
            "HOME": str(home),
            "XDG_CONFIG_HOME": str(home / ".config"),
            "STOWAGE_CONFIG": str(home / "missing.toml"),
            # Logging - disable noisy logs during tests
            "LOG_LEVEL": "ERROR",
        }
    )

    with patch.dict(os.environ, env_vars, clear=True):
        yield


@pytest.fixture
async def lru_backend():
    """Small LRU backend without the background sweeper."""
    backend = LRUCacheBackend(capacity=3, sweep_interval=None)
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
def region_dir(tmp_path):
    return str(tmp_path / "regions")


@pytest.fixture
async def region_backend(region_dir):
    backend = PersistentLocalBackend("one", directory=region_dir)
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
def redis_client():
    """AsyncMock standing in for a redis.asyncio client."""
    client = AsyncMock()
    client.ping.return_value = True
    client.scan.return_value = (0, [])
    return client


# Disable logging to reduce noise during tests
logging.getLogger().setLevel(logging.ERROR)
