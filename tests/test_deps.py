"""
Tests for process-wide API dependencies.
"""
import asyncio

import pytest
import pytest_asyncio

from fulfillment_backend.api import deps
from fulfillment_backend.core.redis_client import InMemoryKeyValueStore


@pytest_asyncio.fixture
async def slow_kv_store(monkeypatch):
    """Key-value store lookup that yields to the loop, like a Redis ping."""
    calls = []

    async def get_key_value_store():
        calls.append(1)
        await asyncio.sleep(0)
        return InMemoryKeyValueStore()

    monkeypatch.setattr(deps, "get_key_value_store", get_key_value_store)
    await deps.close_fulfillment_clients()
    yield calls
    await deps.close_fulfillment_clients()


class TestGetOrchestrator:

    @pytest.mark.asyncio
    async def test_concurrent_first_requests_share_one_instance(self, slow_kv_store):
        first, second = await asyncio.gather(deps.get_orchestrator(), deps.get_orchestrator())

        assert first is second
        assert first.locks is second.locks
        assert len(slow_kv_store) == 1

    @pytest.mark.asyncio
    async def test_orchestrator_is_reused(self, slow_kv_store):
        orchestrator = await deps.get_orchestrator()

        assert await deps.get_orchestrator() is orchestrator
        assert len(slow_kv_store) == 1

    @pytest.mark.asyncio
    async def test_close_resets_instances(self, slow_kv_store):
        orchestrator = await deps.get_orchestrator()
        await deps.close_fulfillment_clients()

        assert await deps.get_orchestrator() is not orchestrator
