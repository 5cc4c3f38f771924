"""
Key/value response cache with a durable Redis backend and an in-process
fallback.

``FallbackCache`` owns the fallback policy; the two leaf stores only know how
to get and set. Once the durable store has failed with a connectivity error
the cache stays in memory for the rest of the process lifetime.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import exceptions as redis_exceptions

from .config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

CONNECTIVITY_ERRORS = (
    redis_exceptions.ConnectionError,
    redis_exceptions.TimeoutError,
    asyncio.TimeoutError,
    OSError,  # DNS failures, refused connections
)


class KeyValueStore(ABC):
    """get/set contract shared by every cache backend."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ...

    async def close(self) -> None:
        """Release connections; stores without any keep the default."""
        return None


class InMemoryStore(KeyValueStore):
    """Process-local store with per-entry TTL, evicted lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._store: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() > expires_at:
            del self._store[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        self._store[key] = (value, expires_at)

    def __len__(self) -> int:
        return len(self._store)


class RedisStore(KeyValueStore):
    """Redis-backed store. Values are JSON encoded; every call is time-boxed."""

    def __init__(self, client: aioredis.Redis, timeout: float = 2.0):
        self._client = client
        self.timeout = timeout

    @classmethod
    def from_url(cls, url: str, timeout: float = 2.0) -> "RedisStore":
        client = aioredis.from_url(
            url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=True,
        )
        return cls(client, timeout=timeout)

    async def get(self, key: str) -> Optional[Any]:
        raw = await asyncio.wait_for(self._client.get(key), timeout=self.timeout)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await asyncio.wait_for(
            self._client.set(key, json.dumps(value), ex=ttl), timeout=self.timeout
        )

    async def close(self) -> None:
        await self._client.aclose()


class FallbackCache(KeyValueStore):
    """
    Try the durable store first and downgrade to memory on failure.

    Connectivity errors always trigger the downgrade. Outside production any
    error does, so a misconfigured local Redis never blocks development.
    """

    def __init__(
        self,
        primary: Optional[KeyValueStore],
        fallback: Optional[InMemoryStore] = None,
        production: bool = False,
    ):
        self.primary = primary
        self.fallback = fallback or InMemoryStore()
        self.production = production
        self.using_fallback = primary is None

    def _should_fall_back(self, error: Exception) -> bool:
        return not self.production or isinstance(error, CONNECTIVITY_ERRORS)

    def _downgrade(self, operation: str, error: Exception) -> None:
        self.using_fallback = True
        logger.warning(
            "⚠️ Redis unreachable during %s (%s: %s). "
            "Falling back to in-memory cache for this process.",
            operation,
            type(error).__name__,
            error,
        )

    async def get(self, key: str) -> Optional[Any]:
        if self.primary is not None and not self.using_fallback:
            try:
                return await self.primary.get(key)
            except Exception as e:
                if not self._should_fall_back(e):
                    raise
                self._downgrade("get", e)
        return await self.fallback.get(key)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        if self.primary is not None and not self.using_fallback:
            try:
                await self.primary.set(key, value, ttl)
                return
            except Exception as e:
                if not self._should_fall_back(e):
                    raise
                self._downgrade("set", e)
        await self.fallback.set(key, value, ttl)

    async def close(self) -> None:
        if self.primary is None:
            return
        try:
            await self.primary.close()
        except CONNECTIVITY_ERRORS as e:
            logger.warning(f"⚠️ Error closing Redis connection: {e}")


def create_cache(config: Settings = default_settings) -> FallbackCache:
    """Build the process-wide cache from settings."""
    if not config.redis_url:
        if config.is_production:
            logger.error(
                "❌ REDIS_URL missing in production. Using in-memory cache: entries are "
                "lost on restart and not shared between instances."
            )
        else:
            logger.warning("⚠️ REDIS_URL not set. Using in-memory cache (development only).")
        return FallbackCache(primary=None, production=config.is_production)

    primary = RedisStore.from_url(config.redis_url, timeout=config.cache_timeout_seconds)
    return FallbackCache(primary=primary, production=config.is_production)
