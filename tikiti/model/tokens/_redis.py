from __future__ import annotations
from typing import Optional
import redis.asyncio as redis


def k_token(namespace: str, key: str) -> str:
    return f"token:{namespace}:{key}"


class TokenCache:
    """Token cache shared by every worker pointed at the same Redis."""

    def __init__(self, r: redis.Redis, namespace: str = "mpesa") -> None:
        self.r = r
        self.namespace = namespace

    async def get(self, key: str) -> Optional[str]:
        # decode_responses=True on the client -> str
        return await self.r.get(k_token(self.namespace, key))

    async def put(self, key: str, token: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self.r.set(k_token(self.namespace, key), token, ex=ttl_seconds)

    async def drop(self, key: str) -> None:
        await self.r.delete(k_token(self.namespace, key))
