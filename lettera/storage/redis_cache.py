from __future__ import annotations

from typing import Optional, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from lettera.logging import get_logger

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed ephemeral store for verification codes, refresh tokens and presence."""

    # Atomic compare-and-delete: a code is consumed at most once
    _DELETE_IF_EQUALS_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    # Fixed-window counter; the window starts at the first hit
    _INCR_WITH_TTL_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return current
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._delete_if_equals = self.client.register_script(
            self._DELETE_IF_EQUALS_SCRIPT
        )
        self._incr_with_ttl = self.client.register_script(self._INCR_WITH_TTL_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic.

        Uses a short-lived synchronous client so the async client is not bound
        to a temporary event loop during startup.
        """
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

    async def open(self) -> None:
        await self.client.ping()
        logger.info("redis_cache_opened")

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, OSError) as exc:
            logger.warning("redis_ping_failed", error=str(exc))
            return False

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        return bool(await self.client.set(key, value, ex=ttl))

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def delete(self, key: str) -> bool:
        return bool(await self.client.delete(key))

    async def delete_if_equals(self, key: str, value: str) -> bool:
        return bool(await self._delete_if_equals(keys=[key], args=[value]))

    async def add_member(
        self, key: str, member: str, ttl: Optional[int] = None, *, replace: bool = False
    ) -> bool:
        pipe = self.client.pipeline(transaction=True)
        if replace:
            pipe.delete(key)
        pipe.sadd(key, member)
        if ttl is not None:
            pipe.expire(key, ttl)
        results = await pipe.execute()
        added = results[1] if replace else results[0]
        return bool(added)

    async def list_members(self, key: str) -> Set[str]:
        return set(await self.client.smembers(key))

    async def is_member(self, key: str, member: str) -> bool:
        return bool(await self.client.sismember(key, member))

    async def incr(self, key: str, ttl: int) -> int:
        return int(await self._incr_with_ttl(keys=[key], args=[ttl]))
