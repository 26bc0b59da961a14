import time

from tikiti.model.tokens import new_cache
from tikiti.model.tokens._memory import TokenCache
from tikiti.model.tokens._redis import k_token


async def test_memory_cache_roundtrip():
    cache = TokenCache()
    assert await cache.get("ck") is None
    await cache.put("ck", "tok", 3600)
    assert await cache.get("ck") == "tok"
    await cache.drop("ck")
    assert await cache.get("ck") is None


async def test_memory_cache_expiry(monkeypatch):
    cache = TokenCache()
    await cache.put("ck", "tok", 10)
    later = time.time() + 11
    monkeypatch.setattr("tikiti.model.tokens._memory.now_ts", lambda: later)
    assert await cache.get("ck") is None


async def test_memory_cache_ignores_dead_tokens():
    cache = TokenCache()
    await cache.put("ck", "tok", 0)
    assert await cache.get("ck") is None


def test_default_backend_is_memory():
    assert isinstance(new_cache(), TokenCache)


def test_redis_key_layout():
    assert k_token("mpesa", "ck") == "token:mpesa:ck"
