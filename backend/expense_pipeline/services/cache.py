from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Optional

import redis

from expense_pipeline.config import Settings

logger = logging.getLogger("expenses.cache")


class CacheService(ABC):
    """Fast key/value cache used for dedup markers and FX rates."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        """Atomically write ``key`` unless present. Returns True when written."""


class InMemoryCacheService(CacheService):
    """Process-local cache. Expiry uses the monotonic clock."""

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._items: dict[str, tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            self._items.pop(key, None)
            return None
        return value

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return self._clock() + float(ttl_seconds)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._items[key] = (str(value), self._expiry(ttl_seconds))

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._items[key] = (str(value), self._expiry(ttl_seconds))
            return True


class RedisCacheService(CacheService):
    def __init__(self, client: redis.Redis) -> None:
        self._redis = client

    @classmethod
    def from_url(cls, url: str, *, timeout_seconds: float = 5.0) -> "RedisCacheService":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client)

    def get(self, key: str) -> Optional[str]:
        return self._redis.get(key)

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None:
            self._redis.set(key, value, ex=int(ttl_seconds))
            return
        self._redis.set(key, value)

    def exists(self, key: str) -> bool:
        return int(self._redis.exists(key)) > 0

    def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        ex = int(ttl_seconds) if ttl_seconds is not None else None
        return bool(self._redis.set(key, value, ex=ex, nx=True))


def build_cache_service(settings: Settings) -> CacheService:
    backend = str(settings.cache_backend or "memory").lower()
    if backend == "redis":
        logger.info("cache_backend_selected", extra={"backend": "redis"})
        return RedisCacheService.from_url(
            settings.redis_url, timeout_seconds=settings.http_timeout_ms / 1000.0
        )
    logger.info("cache_backend_selected", extra={"backend": "memory"})
    return InMemoryCacheService()
