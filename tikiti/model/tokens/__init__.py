# model/tokens/__init__.py
import os
from typing import Optional
import redis.asyncio as redis

BACKEND = os.getenv("TOKEN_BACKEND", "memory").lower()  # 'memory' | 'redis'

if BACKEND == "redis":
    from ._redis import TokenCache as _TokenCache
else:
    from ._memory import TokenCache as _TokenCache


# Factory keeps server.py simple and constructor-agnostic:
def new_cache(*, r: Optional[redis.Redis] = None,
              namespace: str = "mpesa"):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("TokenCache(redis) requires r=redis.Redis")
        return _TokenCache(r=r, namespace=namespace)
    return _TokenCache(namespace=namespace)


TokenCache = _TokenCache
__all__ = ["TokenCache", "new_cache", "BACKEND"]
