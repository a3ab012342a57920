"""Unit tests for the Redis cache wrapper using mocked clients."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tessera.storage.errors import StoreUnavailable
from tessera.storage.redis_cache import RedisCache


@pytest.fixture
def cache():
    cache = RedisCache("redis://localhost:6379/15")
    cache.client = MagicMock()
    cache.client.get = AsyncMock(return_value=None)
    cache.client.set = AsyncMock(return_value=True)
    cache.client.getdel = AsyncMock(return_value=None)
    cache.client.delete = AsyncMock(return_value=0)
    cache.client.aclose = AsyncMock()
    cache._throttle = AsyncMock()
    cache._incr_with_ttl = AsyncMock()
    cache._supersede = AsyncMock(return_value=None)
    cache._set_if_equal = AsyncMock(return_value=1)
    return cache


async def test_set_uses_seconds_ttl_with_floor(cache):
    await cache.set("mfa_challenge:abc", "{}", 0)
    cache.client.set.assert_awaited_once_with("mfa_challenge:abc", "{}", ex=1)


async def test_getdel_returns_value_once(cache):
    cache.client.getdel = AsyncMock(side_effect=["payload", None])
    assert await cache.getdel("k") == "payload"
    assert await cache.getdel("k") is None


async def test_delete_without_keys_skips_round_trip(cache):
    assert await cache.delete() == 0
    cache.client.delete.assert_not_called()


async def test_throttle_hit_maps_script_reply_to_record(cache):
    cache._throttle.return_value = [6, 1_000_060_000, 1, 1_000_060_000]
    record = await cache.throttle_hit("throttler:login:rl:d:login:ip", 1_000_000_000, 900_000, 5, 60_000)

    assert record.total_hits == 6
    assert record.is_blocked is True
    assert record.retry_after_ms(1_000_000_000) == 60_000
    kwargs = cache._throttle.await_args.kwargs
    assert kwargs["keys"] == ["throttler:login:rl:d:login:ip"]
    assert kwargs["args"] == [1_000_000_000, 900_000, 5, 60_000]


async def test_incr_with_ttl_returns_int(cache):
    cache._incr_with_ttl.return_value = b"3"
    assert await cache.incr_with_ttl("attempts", 600) == 3


async def test_supersede_runs_one_script_with_stale_prefixes(cache):
    cache._supersede.return_value = "old-token"
    previous = await cache.supersede(
        "mfa_challenge_user:d:u",
        "new-token",
        "mfa_challenge:new-token",
        "{}",
        600,
        stale_prefixes=("mfa_challenge:", "mfa_challenge_attempts:"),
    )

    assert previous == "old-token"
    kwargs = cache._supersede.await_args.kwargs
    assert kwargs["keys"] == ["mfa_challenge_user:d:u", "mfa_challenge:new-token"]
    assert kwargs["args"] == ["new-token", "{}", 600, "mfa_challenge:", "mfa_challenge_attempts:"]
    cache.client.get.assert_not_called()


async def test_set_if_equal_reports_whether_written(cache):
    assert await cache.set_if_equal("ptr", "tok", "k", "v", 30) is True
    cache._set_if_equal.return_value = 0
    assert await cache.set_if_equal("ptr", "tok", "k", "v", 30) is False
    assert cache._set_if_equal.await_args.kwargs["args"] == ["tok", "v", 30]


async def test_connection_errors_become_store_unavailable(cache):
    cache.client.get = AsyncMock(side_effect=RedisConnectionError("refused"))
    with pytest.raises(StoreUnavailable) as excinfo:
        await cache.get("k")
    assert excinfo.value.backend == "redis"


async def test_close_releases_client(cache):
    await cache.close()
    cache.client.aclose.assert_awaited_once()
