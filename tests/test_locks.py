"""
Tests for per-key asyncio locks.
"""
import asyncio

import pytest

from fulfillment_backend.core.locks import KeyedLockManager


class TestKeyedLockManager:

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLockManager()
        events = []

        async def worker(name):
            async with locks.hold("order-1"):
                events.append(f"{name}-start")
                await asyncio.sleep(0)
                events.append(f"{name}-end")

        await asyncio.gather(worker("a"), worker("b"))

        assert events == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_keys_interleave(self):
        locks = KeyedLockManager()
        events = []

        async def worker(key):
            async with locks.hold(key):
                events.append(f"{key}-start")
                await asyncio.sleep(0)
                events.append(f"{key}-end")

        await asyncio.gather(worker("x"), worker("y"))

        assert events[:2] == ["x-start", "y-start"]

    @pytest.mark.asyncio
    async def test_entries_released(self):
        locks = KeyedLockManager()

        async with locks.hold("order-1"):
            assert locks.is_locked("order-1")
            assert len(locks) == 1

        assert not locks.is_locked("order-1")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = KeyedLockManager()

        with pytest.raises(RuntimeError):
            async with locks.hold("order-1"):
                raise RuntimeError("boom")

        assert len(locks) == 0
