"""Unified caching interface with Redis / in-memory swap.

Holds Gemini responses and generated XO question batches. When REDIS_URL is
configured and the redis package is installed, uses Redis; otherwise falls
back to the in-memory TTLCache from ai_resilience.py.

Usage:
    from cache_backend import init_cache, get_cache
    init_cache(app)          # called once in create_app()
    cache = get_cache()      # module-level accessor
    cache.set(question_batch_key(...), questions, ttl=3600)
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)

KEY_PREFIX = "portal:"


def question_batch_key(principal_id: str, grade: str, subject: str, chapter: str, count: int, source_text: str) -> str:
    """Cache key for a generated XO question batch over ``source_text``."""
    digest = hashlib.sha256(source_text.encode("utf-8")).hexdigest()[:16]
    raw = f"{principal_id}|{grade}|{subject}|{chapter}|{count}|{digest}"
    return KEY_PREFIX + "xo:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ── Protocol ───────────────────────────────────────────────

class CacheBackend(Protocol):
    def get(self, key: str) -> Any | None: ...
    def set(self, key: str, value: Any, ttl: int = 300) -> None: ...
    def delete(self, key: str) -> None: ...
    def clear(self) -> None: ...
    def cleanup(self) -> int: ...


# ── In-Memory Implementation ──────────────────────────────

class InMemoryCache:
    """Wraps the TTLCache from ai_resilience.py, storing JSON text."""

    def __init__(self) -> None:
        from ai_resilience import TTLCache
        self._store = TTLCache()

    def get(self, key: str) -> Any | None:
        raw = self._store.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int = 300) -> None:
        self._store.set(key, json.dumps(value, ensure_ascii=False), ttl)

    def delete(self, key: str) -> None:
        self._store.delete(key)

    def clear(self) -> None:
        self._store.clear()

    def cleanup(self) -> int:
        return self._store.cleanup()


# ── Redis Implementation ──────────────────────────────────

class RedisCache:
    """Wraps redis.Redis; a Redis outage degrades to cache misses."""

    def __init__(self, redis_client) -> None:
        self._redis = redis_client

    def get(self, key: str) -> Any | None:
        try:
            raw = self._redis.get(key)
        except Exception as e:
            logger.warning("Redis GET error (key=%s): %s", key, e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    def set(self, key: str, value: Any, ttl: int = 300) -> None:
        try:
            self._redis.setex(key, ttl, json.dumps(value, ensure_ascii=False))
        except Exception as e:
            logger.warning("Redis SET error (key=%s): %s", key, e)

    def delete(self, key: str) -> None:
        try:
            self._redis.delete(key)
        except Exception as e:
            logger.warning("Redis DELETE error (key=%s): %s", key, e)

    def clear(self) -> None:
        try:
            for key in self._redis.scan_iter(f"{KEY_PREFIX}*"):
                self._redis.delete(key)
        except Exception as e:
            logger.warning("Redis CLEAR error: %s", e)

    def cleanup(self) -> int:
        # Redis handles expiry natively
        return 0


# ── Module-level singleton ────────────────────────────────

_cache: CacheBackend | None = None


def init_cache(app) -> None:
    """Initialize the cache backend. Call once from create_app()."""
    global _cache

    redis_url = app.config.get("REDIS_URL", "")
    if redis_url:
        import redis
        try:
            client = redis.Redis.from_url(redis_url, decode_responses=False)
            client.ping()
        except redis.RedisError as e:
            app.logger.warning("Redis connection failed (%s); using in-memory cache.", e)
        else:
            _cache = RedisCache(client)
            app.logger.info("Cache backend: Redis (%s)", redis_url)
            return

    _cache = InMemoryCache()
    app.logger.info("Cache backend: in-memory (TTLCache)")


def get_cache() -> CacheBackend:
    """Return the active cache backend. Lazily initializes if needed."""
    global _cache
    if _cache is None:
        _cache = InMemoryCache()
    return _cache
