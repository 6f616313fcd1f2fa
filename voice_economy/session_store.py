"""Redis-backed key-value store for open presence sessions.

One flat JSON record per (guild, user) under ``{prefix}:{guild}:{user}``.
Every write refreshes the key's TTL. Errors propagate; callers decide how
a store outage degrades.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator


def _j(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def _unj(s: str | bytes | None) -> dict | None:
    if s is None:
        return None
    if isinstance(s, (bytes, bytearray)):
        s = s.decode("utf-8", errors="ignore")
    try:
        value = json.loads(s)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


class RedisSessionStore:
    """Thin wrapper over a ``redis.asyncio.Redis`` client."""

    def __init__(self, redis: Any, key_prefix: str = "vc_session") -> None:
        self._redis = redis
        self._prefix = key_prefix

    def key(self, guild_id: str, user_id: str) -> str:
        return f"{self._prefix}:{guild_id}:{user_id}"

    async def get(self, guild_id: str, user_id: str) -> dict | None:
        return _unj(await self._redis.get(self.key(guild_id, user_id)))

    async def set(self, guild_id: str, user_id: str, record: dict, ttl: int) -> None:
        await self._redis.setex(self.key(guild_id, user_id), ttl, _j(record))

    async def delete(self, guild_id: str, user_id: str) -> bool:
        return int(await self._redis.delete(self.key(guild_id, user_id))) > 0

    async def scan(self, guild_id: str | None = None) -> AsyncIterator[dict]:
        """Yield every stored record, optionally restricted to one guild."""
        pattern = f"{self._prefix}:{guild_id}:*" if guild_id else f"{self._prefix}:*"
        async for key in self._redis.scan_iter(match=pattern):
            record = _unj(await self._redis.get(key))
            if record is not None:
                yield record

    async def ping(self) -> bool:
        return bool(await self._redis.ping())
