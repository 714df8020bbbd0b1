from __future__ import annotations

from typing import List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ResponseError


class RedisCache:
    """Thin Redis wrapper implementing the session ledger primitives."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds
    SCAN_BATCH_SIZE = 200

    _INCR_WITH_TTL_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

    _POP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_with_ttl = self.client.register_script(self._INCR_WITH_TTL_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived synchronous client so the async pool is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def delete(self, key: str) -> int:
        return int(await self.client.delete(key))

    async def delete_many(self, keys: List[str]) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def scan_by_prefix(self, prefix: str) -> List[str]:
        """Collect keys under a prefix with SCAN; KEYS would block the server."""
        keys: List[str] = []
        async for key in self.client.scan_iter(
            match=f"{prefix}*", count=self.SCAN_BATCH_SIZE
        ):
            keys.append(key)
        return keys

    async def pop(self, key: str) -> Optional[str]:
        """Atomically get and delete a key so one-time records are consumed once.

        Uses GETDEL (Redis 6.2+) and falls back to a Lua script on servers
        that reject the command.
        """
        try:
            return await self.client.getdel(key)
        except ResponseError:
            return await self.client.eval(self._POP_SCRIPT, 1, key)

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        count = await self._incr_with_ttl(keys=[key], args=[max(1, int(ttl_seconds))])
        return int(count)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
