from __future__ import annotations

from typing import Optional, Set, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisKeyValueStore:
    """Redis backend for sessions, the token blacklist and rate-limit counters.

    Safe to share between several API instances; every multi-step write that
    matters for security runs as a single Lua script.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR then start the window on the first hit; a counter left without a TTL
    # (e.g. by a crash between the two calls in older deployments) is repaired.
    _INCR_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local window = tonumber(ARGV[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], window)
  return {count, window}
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], window)
  ttl = window
end
return {count, ttl}
"""

    # GET and DEL in one step so two callers cannot both consume the same value.
    _COMPARE_AND_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._incr_window = self.client.register_script(self._INCR_WINDOW_SCRIPT)
        self._compare_and_delete = self.client.register_script(self._COMPARE_AND_DELETE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived synchronous client keeps the async pool off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None:
            await self.client.set(key, value, ex=max(1, int(ttl_seconds)))
        else:
            await self.client.set(key, value)

    async def replace(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> bool:
        # XX: never recreate a key that was deleted in the meantime
        if ttl_seconds is not None:
            result = await self.client.set(key, value, ex=max(1, int(ttl_seconds)), xx=True)
        else:
            result = await self.client.set(key, value, xx=True)
        return bool(result)

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        return bool(await self._compare_and_delete(keys=[key], args=[expected]))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def ttl(self, key: str) -> Optional[int]:
        remaining = int(await self.client.ttl(key))
        # -2: missing key, -1: no expiry
        if remaining < 0:
            return None
        return remaining

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        count, ttl = await self._incr_window(keys=[key], args=[int(window_seconds)])
        return int(count), int(ttl)

    async def add_to_set(self, key: str, member: str, *, ttl_seconds: Optional[int] = None) -> None:
        pipe = self.client.pipeline()
        pipe.sadd(key, member)
        if ttl_seconds is not None:
            pipe.expire(key, max(1, int(ttl_seconds)))
        await pipe.execute()

    async def set_members(self, key: str) -> Set[str]:
        members = await self.client.smembers(key)
        return set(members or ())

    async def remove_from_set(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self.client.srem(key, *members))

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisKeyValueStore"]
