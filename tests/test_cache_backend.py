"""Tests for cache_backend.py — InMemoryCache and RedisCache."""

from __future__ import annotations

import time

import pytest


class _FakeRedis:
    """The slice of redis.Redis that RedisCache touches."""

    def __init__(self):
        self.data: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value.encode("utf-8") if isinstance(value, str) else value
        self.ttls[key] = ttl

    def delete(self, key):
        self.data.pop(key, None)

    def scan_iter(self, pattern):
        prefix = pattern.rstrip("*")
        return [k for k in list(self.data) if k.startswith(prefix)]


class _BrokenRedis:
    def get(self, key):
        raise ConnectionError("redis down")

    def setex(self, key, ttl, value):
        raise ConnectionError("redis down")


@pytest.fixture
def fake_redis():
    return _FakeRedis()


class TestQuestionBatchKey:
    def test_stable_and_prefixed(self):
        from cache_backend import KEY_PREFIX, question_batch_key
        k1 = question_batch_key("p1", "الاول متوسط", "العلوم", "الفصل الأول", 10, "نص")
        k2 = question_batch_key("p1", "الاول متوسط", "العلوم", "الفصل الأول", 10, "نص")
        assert k1 == k2
        assert k1.startswith(KEY_PREFIX + "xo:")

    def test_varies_with_inputs(self):
        from cache_backend import question_batch_key
        base = question_batch_key("p1", "g", "s", "c", 10, "text")
        assert base != question_batch_key("p2", "g", "s", "c", 10, "text")
        assert base != question_batch_key("p1", "g", "s", "c", 5, "text")
        assert base != question_batch_key("p1", "g", "s", "c", 10, "other text")


class TestInMemoryCache:
    def test_set_and_get(self):
        from cache_backend import InMemoryCache
        cache = InMemoryCache()
        cache.set("key1", {"data": "value"}, ttl=60)
        assert cache.get("key1") == {"data": "value"}

    def test_get_missing_key(self):
        from cache_backend import InMemoryCache
        cache = InMemoryCache()
        assert cache.get("nonexistent") is None

    def test_ttl_expiry(self):
        from cache_backend import InMemoryCache
        cache = InMemoryCache()
        cache.set("expiring", "data", ttl=0)
        time.sleep(0.01)
        assert cache.get("expiring") is None

    def test_delete(self):
        from cache_backend import InMemoryCache
        cache = InMemoryCache()
        cache.set("to_delete", "value")
        cache.delete("to_delete")
        assert cache.get("to_delete") is None

    def test_clear(self):
        from cache_backend import InMemoryCache
        cache = InMemoryCache()
        cache.set("a", 1)
        cache.set("b", 2)
        cache.clear()
        assert cache.get("a") is None
        assert cache.get("b") is None

    def test_cleanup(self):
        from cache_backend import InMemoryCache
        cache = InMemoryCache()
        cache.set("fresh", "data", ttl=60)
        cache.set("expired", "old", ttl=0)
        time.sleep(0.01)
        assert cache.cleanup() >= 1
        assert cache.get("fresh") == "data"

    def test_arabic_question_batch(self):
        from cache_backend import InMemoryCache
        cache = InMemoryCache()
        questions = [{"question": "ما عاصمة العراق؟", "options": ["بغداد", "البصرة"], "correctAnswerIndex": 0}]
        cache.set("batch", questions, ttl=60)
        assert cache.get("batch") == questions


class TestRedisCache:
    def test_set_and_get(self, fake_redis):
        from cache_backend import RedisCache
        cache = RedisCache(fake_redis)
        cache.set("key1", {"data": "value"}, ttl=60)
        assert cache.get("key1") == {"data": "value"}
        assert fake_redis.ttls["key1"] == 60

    def test_get_missing_key(self, fake_redis):
        from cache_backend import RedisCache
        assert RedisCache(fake_redis).get("nonexistent") is None

    def test_undecodable_entry_is_a_miss(self, fake_redis):
        from cache_backend import RedisCache
        fake_redis.data["bad"] = b"{not json"
        assert RedisCache(fake_redis).get("bad") is None

    def test_delete(self, fake_redis):
        from cache_backend import RedisCache
        cache = RedisCache(fake_redis)
        cache.set("to_delete", "value", ttl=60)
        cache.delete("to_delete")
        assert cache.get("to_delete") is None

    def test_clear_only_touches_prefix(self, fake_redis):
        from cache_backend import KEY_PREFIX, RedisCache
        cache = RedisCache(fake_redis)
        cache.set(KEY_PREFIX + "a", 1, ttl=60)
        cache.set("foreign", 2, ttl=60)
        cache.clear()
        assert cache.get(KEY_PREFIX + "a") is None
        assert cache.get("foreign") == 2

    def test_clear_evicts_gemini_responses(self, fake_redis):
        from ai_resilience import TTLCache
        from cache_backend import RedisCache
        cache = RedisCache(fake_redis)
        key = TTLCache._make_key("prompt", "gemini-2.5-flash", "opts")
        cache.set(key, {"text": "cached"}, ttl=60)
        cache.clear()
        assert cache.get(key) is None

    def test_outage_degrades_to_miss(self):
        from cache_backend import RedisCache
        cache = RedisCache(_BrokenRedis())
        cache.set("k", "v", ttl=60)
        assert cache.get("k") is None

    def test_cleanup_returns_zero(self, fake_redis):
        from cache_backend import RedisCache
        assert RedisCache(fake_redis).cleanup() == 0


class TestInitCache:
    def test_init_without_redis(self, app):
        from cache_backend import InMemoryCache, get_cache, init_cache
        with app.app_context():
            init_cache(app)
            assert isinstance(get_cache(), InMemoryCache)

    def test_get_cache_lazy_init(self):
        import cache_backend
        cache_backend._cache = None
        assert cache_backend.get_cache() is not None
