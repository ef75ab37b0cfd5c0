"""Shared fixtures: isolated in-memory engines and a dict-backed Redis mock."""

from unittest.mock import AsyncMock

import pytest

from ckg.config import Settings
from ckg.engine.knowledge_graph import KnowledgeGraph
from ckg.storage.cache import QueryCache
from ckg.storage.local_store import LocalGraphStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path):
    """Settings that never touch Dgraph or Redis."""
    return Settings(
        _env_file=None,
        environment="test",
        dgraph_enabled=False,
        cache_enabled=False,
        local_db_path=tmp_path / "local_db",
    )


@pytest.fixture
def store():
    """In-memory local store."""
    return LocalGraphStore()


@pytest.fixture
def redis_client():
    """AsyncMock Redis client backed by a dict; TTLs are recorded, not enforced."""
    data: dict[str, str] = {}
    ttls: dict[str, int] = {}

    async def get(key):
        return data.get(key)

    async def setex(key, ttl, value):
        data[key] = value
        ttls[key] = ttl
        return True

    async def delete(key):
        return 1 if data.pop(key, None) is not None else 0

    client = AsyncMock()
    client.get = AsyncMock(side_effect=get)
    client.setex = AsyncMock(side_effect=setex)
    client.delete = AsyncMock(side_effect=delete)
    client.ping = AsyncMock(return_value=True)
    client.data = data
    client.ttls = ttls
    return client


@pytest.fixture
def cache(settings, redis_client):
    return QueryCache(settings, client=redis_client)


@pytest.fixture
def graph(store, settings):
    """Engine over an in-memory store, without cache."""
    return KnowledgeGraph(store, settings)


@pytest.fixture
def cached_graph(store, settings, cache):
    """Engine over an in-memory store with the mocked cache."""
    return KnowledgeGraph(store, settings, cache=cache)
