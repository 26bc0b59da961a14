from __future__ import annotations
from typing import Dict, Optional, Tuple

from ...helpers import now_ts


class TokenCache:
    """Per-process token cache; each worker fetches its own token."""

    def __init__(self, namespace: str = "mpesa") -> None:
        self.namespace = namespace
        self._tokens: Dict[str, Tuple[str, float]] = {}

    async def get(self, key: str) -> Optional[str]:
        hit = self._tokens.get(key)
        if hit is None:
            return None
        token, expires_at = hit
        if expires_at <= now_ts():
            self._tokens.pop(key, None)
            return None
        return token

    async def put(self, key: str, token: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        self._tokens[key] = (token, now_ts() + ttl_seconds)

    async def drop(self, key: str) -> None:
        self._tokens.pop(key, None)
