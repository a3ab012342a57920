from __future__ import annotations

from typing import Any, Awaitable, Optional, Protocol, Sequence

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from tessera.logging import get_logger
from tessera.storage.errors import StoreUnavailable
from tessera.storage.models import RateLimitRecord

logger = get_logger(__name__)


class KeyValueCache(Protocol):
    """TTL key-value operations shared by the Redis and in-process caches."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def getdel(self, key: str) -> Optional[str]: ...

    async def delete(self, *keys: str) -> int: ...

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int: ...

    async def supersede(
        self,
        pointer_key: str,
        pointer_value: str,
        value_key: str,
        value: str,
        ttl_seconds: int,
        stale_prefixes: Sequence[str] = (),
    ) -> Optional[str]: ...

    async def set_if_equal(
        self, guard_key: str, expected: str, key: str, value: str, ttl_seconds: int
    ) -> bool: ...

    async def throttle_hit(
        self, key: str, now_ms: int, window_ms: int, limit: int, block_duration_ms: int
    ) -> RateLimitRecord: ...

    async def close(self) -> None: ...


class RedisCache:
    """Thin Redis wrapper for rate limits, MFA challenges and one-time codes."""

    # Throttler hit: same transitions as RateLimitRecord.register_hit, applied atomically
    _THROTTLE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local block = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'total_hits', 'window_expire_at', 'is_blocked', 'block_expire_at')
local hits = tonumber(data[1]) or 0
local window_expire = tonumber(data[2]) or 0
local blocked = tonumber(data[3]) or 0
local block_expire = tonumber(data[4]) or 0

if blocked == 1 and block_expire > now then
  return {hits, window_expire, 1, block_expire}
end

if blocked == 1 then
  blocked = 0
  hits = 0
end

hits = hits + 1
local ttl = window
if hits > limit then
  blocked = 1
  block_expire = now + block
  window_expire = now + block
  ttl = block
else
  window_expire = now + window
end

redis.call('HSET', key, 'total_hits', hits, 'window_expire_at', window_expire,
  'is_blocked', blocked, 'block_expire_at', block_expire)
redis.call('PEXPIRE', key, math.max(ttl, 1))
return {hits, window_expire, blocked, block_expire}
"""

    _INCR_WITH_TTL_SCRIPT = """
local attempts = redis.call('INCR', KEYS[1])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return attempts
"""

    # Store a value and repoint KEYS[1] at it; keys derived from the old pointer go away
    _SUPERSEDE_SCRIPT = """
local previous = redis.call('GET', KEYS[1])
redis.call('SET', KEYS[2], ARGV[2], 'EX', ARGV[3])
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[3])
if previous and previous ~= ARGV[1] then
  for i = 4, #ARGV do
    redis.call('DEL', ARGV[i] .. previous)
  end
end
return previous
"""

    _SET_IF_EQUAL_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  redis.call('SET', KEYS[2], ARGV[2], 'EX', ARGV[3])
  return 1
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._throttle = self.client.register_script(self._THROTTLE_SCRIPT)
        self._incr_with_ttl = self.client.register_script(self._INCR_WITH_TTL_SCRIPT)
        self._supersede = self.client.register_script(self._SUPERSEDE_SCRIPT)
        self._set_if_equal = self.client.register_script(self._SET_IF_EQUAL_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _run(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except (RedisError, OSError) as exc:
            logger.warning("redis_operation_failed", operation=operation, error=str(exc))
            raise StoreUnavailable("redis", str(exc)) from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", self.client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._run("set", self.client.set(key, value, ex=max(1, int(ttl_seconds))))

    async def getdel(self, key: str) -> Optional[str]:
        """Atomically read and delete a key so a value is consumed at most once."""
        return await self._run("getdel", self.client.getdel(key))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._run("delete", self.client.delete(*keys)))

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter, starting its TTL on the first increment."""
        result = await self._run(
            "incr_with_ttl",
            self._incr_with_ttl(keys=[key], args=[max(1, int(ttl_seconds))]),
        )
        return int(result)

    async def supersede(
        self,
        pointer_key: str,
        pointer_value: str,
        value_key: str,
        value: str,
        ttl_seconds: int,
        stale_prefixes: Sequence[str] = (),
    ) -> Optional[str]:
        """Write ``value_key`` and swap ``pointer_key`` to ``pointer_value`` in one step.

        Each ``prefix + previous`` key is deleted when the pointer held another
        value. Returns the previous pointer value.
        """
        return await self._run(
            "supersede",
            self._supersede(
                keys=[pointer_key, value_key],
                args=[pointer_value, value, max(1, int(ttl_seconds)), *stale_prefixes],
            ),
        )

    async def set_if_equal(
        self, guard_key: str, expected: str, key: str, value: str, ttl_seconds: int
    ) -> bool:
        result = await self._run(
            "set_if_equal",
            self._set_if_equal(
                keys=[guard_key, key], args=[expected, value, max(1, int(ttl_seconds))]
            ),
        )
        return bool(int(result))

    async def throttle_hit(
        self, key: str, now_ms: int, window_ms: int, limit: int, block_duration_ms: int
    ) -> RateLimitRecord:
        hits, window_expire, blocked, block_expire = await self._run(
            "throttle_hit",
            self._throttle(
                keys=[key],
                args=[int(now_ms), int(window_ms), int(limit), int(block_duration_ms)],
            ),
        )
        return RateLimitRecord(
            total_hits=int(hits),
            window_expire_at=int(window_expire),
            is_blocked=bool(int(blocked)),
            block_expire_at=int(block_expire),
        )

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["KeyValueCache", "RedisCache"]
