"""Cache backends for short-lived usage counters."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis


logger = logging.getLogger(__name__)


class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    def delete(self, *keys: str) -> None: ...


class InMemoryCache:
    """Process-local TTL cache; the default backend and the one tests use."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._items: Dict[str, Tuple[Any, float]] = {}

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if self._clock() >= expires_at:
                del self._items[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._items[key] = (value, self._clock() + ttl_seconds)

    def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._items.pop(key, None)


class RedisCache:
    def __init__(self, client: redis.Redis, prefix: str = "spend_ledger:") -> None:
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Optional[Any]:
        return self.client.get(self.prefix + key)

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        self.client.set(self.prefix + key, value, ex=max(int(ttl_seconds), 1))

    def delete(self, *keys: str) -> None:
        if keys:
            self.client.delete(*(self.prefix + key for key in keys))


def build_cache(backend: str, redis_url: str) -> CacheBackend:
    if backend == "redis":
        logger.info("cache.backend", extra={"backend": "redis"})
        return RedisCache.from_url(redis_url)
    if backend != "memory":
        raise ValueError(f"Unknown cache backend: {backend}")
    return InMemoryCache()
