"""
Redis client and key-value stores

The carrier token is cached across processes in a single key-value slot with
its own TTL. Callers depend only on the KeyValueStore interface; Redis backs it
in deployed environments and an in-memory store is used when REDIS_URL is not
configured or Redis cannot be reached (graceful degradation).
"""
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis

from fulfillment_backend.core.config import settings

logger = logging.getLogger(__name__)

# Global Redis client (initialized lazily)
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get Redis client, initializing if needed.

    Returns None if REDIS_URL not configured (graceful degradation).
    """
    global _redis_client

    if not settings.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True
            )
            await _redis_client.ping()
            logger.info("Redis connection established")
        except Exception as e:
            logger.warning(f"Redis connection failed: {e}. Falling back to in-memory.")
            _redis_client = None

    return _redis_client


async def close_redis():
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.close()
        _redis_client = None


class KeyValueStore(ABC):
    """Minimal persistent key-value interface with per-key TTL."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    async def clear(self, key: str) -> None:
        pass


class RedisKeyValueStore(KeyValueStore):
    """KeyValueStore backed by Redis SETEX/GET/DEL."""

    def __init__(self, client: redis.Redis, prefix: str = "fulfillment:"):
        self._client = client
        self._prefix = prefix

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(f"{self._prefix}{key}")

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._client.setex(f"{self._prefix}{key}", max(1, int(ttl_seconds)), value)

    async def clear(self, key: str) -> None:
        await self._client.delete(f"{self._prefix}{key}")


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local KeyValueStore; entries expire lazily on read."""

    def __init__(self, monotonic: Callable[[], float] = time.monotonic):
        self._data: Dict[str, Tuple[str, float]] = {}
        self._monotonic = monotonic

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._monotonic() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        self._data[key] = (value, self._monotonic() + ttl_seconds)

    async def clear(self, key: str) -> None:
        self._data.pop(key, None)


async def get_key_value_store() -> KeyValueStore:
    """Redis-backed store when available, otherwise in-memory."""
    client = await get_redis()
    if client is None:
        return InMemoryKeyValueStore()
    return RedisKeyValueStore(client)
