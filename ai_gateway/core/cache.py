"""
Response cache and the key/value stores behind it.

A Redis store is used when a URL is configured, otherwise an in-process map.
Cache contents are a performance optimization, not a source of truth: every
store failure degrades to "absent" instead of raising.
"""

import hashlib
import math
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis
import structlog

from .errors import CacheUnavailable

logger = structlog.get_logger()


class CacheKeys:
    """Key families stored in the cache."""

    @staticmethod
    def ai_response(fingerprint: str) -> str:
        return f"ai_response:{fingerprint}"

    @staticmethod
    def rate_limit(prefix: str, identifier: str) -> str:
        return f"rate:{prefix}:{identifier}"


class CacheStore(Protocol):
    """Minimal store contract. Implementations raise CacheUnavailable."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl: int) -> None: ...

    def delete(self, key: str) -> None: ...

    def exists(self, key: str) -> bool: ...

    def ttl(self, key: str) -> Optional[int]: ...

    def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]: ...


class MemoryCacheStore:
    """In-process store with TTL expiry.

    Entries are (value, expires_at) pairs. Expired entries are dropped on
    access, and every purge_every writes a full sweep removes the ones no
    one reads again. The clock is injectable so windows can be tested.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None, purge_every: int = 1000):
        if purge_every <= 0:
            raise ValueError("purge_every must be > 0")
        self._clock = clock or time.time
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._purge_every = purge_every
        self._writes = 0

    def _after_write(self, now: float) -> None:
        # Caller holds the lock
        self._writes += 1
        if self._writes < self._purge_every:
            return
        self._writes = 0
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("memory_cache_purged", removed=len(expired), remaining=len(self._entries))

    def _live(self, key: str, now: float) -> Optional[Tuple[str, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if now >= entry[1]:
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key, self._clock())
            return entry[0] if entry else None

    def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            now = self._clock()
            self._entries[key] = (value, now + ttl)
            self._after_write(now)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self._clock()) is not None

    def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                return None
            return max(1, math.ceil(entry[1] - now))

    def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                # A new window opens; its expiry is fixed from here on
                expires_at = now + window_seconds
                count = 1
            else:
                expires_at = entry[1]
                count = int(entry[0]) + 1
            self._entries[key] = (str(count), expires_at)
            self._after_write(now)
            return count, max(1, math.ceil(expires_at - now))

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheStore:
    """Redis-backed store. Every client error surfaces as CacheUnavailable."""

    def __init__(self, client: "redis.Redis"):
        self._client = client

    @classmethod
    def from_url(cls, url: str, timeout_seconds: float = 0.5) -> "RedisCacheStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client)

    def get(self, key: str) -> Optional[str]:
        try:
            return self._client.get(key)
        except redis.RedisError as e:
            raise CacheUnavailable(str(e)) from e

    def set(self, key: str, value: str, ttl: int) -> None:
        try:
            self._client.set(key, value, ex=ttl)
        except redis.RedisError as e:
            raise CacheUnavailable(str(e)) from e

    def delete(self, key: str) -> None:
        try:
            self._client.delete(key)
        except redis.RedisError as e:
            raise CacheUnavailable(str(e)) from e

    def exists(self, key: str) -> bool:
        try:
            return self._client.exists(key) == 1
        except redis.RedisError as e:
            raise CacheUnavailable(str(e)) from e

    def ttl(self, key: str) -> Optional[int]:
        try:
            remaining = self._client.ttl(key)
        except redis.RedisError as e:
            raise CacheUnavailable(str(e)) from e
        # -2: missing key, -1: key without expiry
        if remaining is None or remaining < 0:
            return None
        return max(1, remaining)

    def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Atomically open-or-increment a fixed window counter.

        SET NX EX only succeeds for the first request of a window, so later
        increments never extend the window's expiry.
        """
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.set(key, 0, ex=window_seconds, nx=True)
            pipe.incr(key)
            pipe.ttl(key)
            _, count, remaining = pipe.execute()
            if remaining is None or remaining < 0:
                self._client.expire(key, window_seconds)
                remaining = window_seconds
            return int(count), max(1, int(remaining))
        except redis.RedisError as e:
            raise CacheUnavailable(str(e)) from e


def create_cache_store(redis_url: Optional[str] = None) -> CacheStore:
    """Pick the Redis store when a URL is configured, else the memory store."""
    if redis_url:
        logger.info("cache_store_selected", backend="redis")
        return RedisCacheStore.from_url(redis_url)
    logger.info("cache_store_selected", backend="memory")
    return MemoryCacheStore()


def fingerprint(prompt: str, model: str, max_tokens: int) -> str:
    """Deterministic SHA-256 fingerprint of a normalized request.

    Only depends on its arguments, so the same request maps to the same key
    across processes and restarts.
    """
    payload = f"{prompt}:{model}:{max_tokens}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


class ResponseCache:
    """Cache of provider responses with per-model-tier TTLs.

    get/exists report absence and set/delete do nothing when the store is
    unreachable, so callers degrade to calling the provider directly.
    """

    def __init__(self, store: CacheStore, ttl_by_tier: Dict[str, int], default_ttl: int = 24 * 60 * 60):
        self._store = store
        self._ttl_by_tier = dict(ttl_by_tier)
        self._default_ttl = default_ttl

    @property
    def store(self) -> CacheStore:
        return self._store

    def key_for(self, prompt: str, model: str, max_tokens: int) -> str:
        return CacheKeys.ai_response(fingerprint(prompt, model, max_tokens))

    def ttl_for(self, model_tier: str) -> int:
        """TTL in seconds for responses of a model tier."""
        return self._ttl_by_tier.get(model_tier, self._default_ttl)

    def get(self, key: str) -> Optional[str]:
        try:
            return self._store.get(key)
        except CacheUnavailable as e:
            logger.warning("cache_get_failed", key=key, error=str(e))
            return None

    def set(self, key: str, value: str, ttl: int) -> None:
        try:
            self._store.set(key, value, ttl)
        except CacheUnavailable as e:
            logger.warning("cache_set_failed", key=key, error=str(e))

    def delete(self, key: str) -> None:
        try:
            self._store.delete(key)
        except CacheUnavailable as e:
            logger.warning("cache_delete_failed", key=key, error=str(e))

    def exists(self, key: str) -> bool:
        try:
            return self._store.exists(key)
        except CacheUnavailable as e:
            logger.warning("cache_exists_failed", key=key, error=str(e))
            return False
