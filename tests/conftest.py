"""Shared fixtures for shellcache tests."""

from pathlib import Path

import pytest

from fakes import ORIGIN, FakeNetwork
from shellcache.clients import ClientRegistry
from shellcache.config import CacheConfig
from shellcache.storage import MemoryCacheStorage, SqliteCacheStorage


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def cache_config() -> CacheConfig:
    return CacheConfig(
        app_name="app",
        version="v2",
        origin=ORIGIN,
        precache=["/", "/index.html", "/app.js"],
    )


@pytest.fixture
def memory_storage() -> MemoryCacheStorage:
    return MemoryCacheStorage()


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path: Path):
    """Each storage substrate in turn."""
    if request.param == "memory":
        yield MemoryCacheStorage()
    else:
        store = SqliteCacheStorage(str(tmp_path / "caches.db"))
        yield store
        store.close()


@pytest.fixture
def clients() -> ClientRegistry:
    return ClientRegistry()
