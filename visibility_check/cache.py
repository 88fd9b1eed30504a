"""
Result cache.

A `CacheStore` is a plain key/value backend with TTL (Redis in production, an
in-process dict otherwise). `ResultCache` sits on top of it and owns the
failure policy: a read that fails is a miss, a write that fails is logged and
dropped. Visibility checks must keep working with the cache down.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import redis

from visibility_check import config
from visibility_check.models import ProviderOutcome

logger = logging.getLogger(__name__)


class CacheStore(ABC):

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when absent/expired."""

    @abstractmethod
    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store value under key for ttl_seconds."""


class RedisCacheStore(CacheStore):

    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheStore":
        return cls(redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=10))

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.setex(key, ttl_seconds, value)


class MemoryCacheStore(CacheStore):
    """Thread-safe in-process store; used when no REDIS_URL is configured."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)

    def __len__(self) -> int:
        return len(self._entries)


def build_cache_store(redis_url: str = config.REDIS_URL) -> CacheStore:
    if redis_url:
        logger.info("🗄️  Result cache: Redis")
        return RedisCacheStore.from_url(redis_url)
    logger.info("🗄️  Result cache: in-process (REDIS_URL not set)")
    return MemoryCacheStore()


class ResultCache:
    """Serialized per-provider outcome lists keyed by query fingerprint."""

    def __init__(self, store: CacheStore, ttl_seconds: int = config.RESULT_CACHE_TTL):
        self.store = store
        self.ttl_seconds = ttl_seconds

    def load(self, key: str) -> Optional[list[ProviderOutcome]]:
        try:
            raw = self.store.get(key)
        except Exception as e:
            logger.warning(f"⚠️  Cache read failed for {key}, treating as miss: {e}")
            return None
        if not raw:
            return None
        try:
            return [ProviderOutcome.from_dict(item) for item in json.loads(raw)]
        except (ValueError, TypeError, KeyError) as e:
            logger.warning(f"⚠️  Cached entry for {key} is unreadable, treating as miss: {e}")
            return None

    def save(self, key: str, outcomes: list[ProviderOutcome]) -> bool:
        try:
            payload = json.dumps([o.to_dict() for o in outcomes])
            self.store.set_with_ttl(key, payload, self.ttl_seconds)
        except Exception as e:
            logger.warning(f"⚠️  Cache write failed for {key}: {e}")
            return False
        logger.info(f"🗄️  Cached {len(outcomes)} outcome(s) under {key} for {self.ttl_seconds}s")
        return True
