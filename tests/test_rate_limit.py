"""Tests for the domain-scoped throttler and its block semantics."""

from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeClock
from tessera.config import Settings
from tessera.service.errors import RateLimitedError, StoreUnavailableError
from tessera.service.rate_limit import (
    RateLimiter,
    RateLimitProfile,
    build_profiles,
    rate_limit_key,
)
from tessera.storage.errors import StoreUnavailable
from tessera.storage.memory import MemoryCache

WINDOW_MS = 900_000


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    profiles = {
        "default": RateLimitProfile("default", WINDOW_MS, 5, WINDOW_MS),
        "login": RateLimitProfile("login", WINDOW_MS, 5, 60_000),
    }
    return RateLimiter(MemoryCache(clock=clock), profiles, clock=clock)


class TestCheckAndIncrement:
    async def test_sixth_hit_is_blocked_until_block_expires(self, limiter, clock):
        key = rate_limit_key("dom-1", "login", "10.0.0.1")
        for expected_hits in range(1, 6):
            decision = await limiter.check_and_increment(key, WINDOW_MS, 5, WINDOW_MS)
            assert decision.allowed is True
            assert decision.total_hits == expected_hits

        blocked = await limiter.check_and_increment(key, WINDOW_MS, 5, WINDOW_MS)
        assert blocked.allowed is False
        assert blocked.retry_after_ms > 0

        clock.advance(WINDOW_MS / 1000)
        after = await limiter.check_and_increment(key, WINDOW_MS, 5, WINDOW_MS)
        assert after.allowed is True
        assert after.total_hits == 1

    async def test_blocked_key_reports_remaining_block_time(self, limiter, clock):
        key = rate_limit_key(None, "register", "10.0.0.2")
        for _ in range(3):
            await limiter.check_and_increment(key, 60_000, 2, 120_000)
        clock.advance(30)
        decision = await limiter.check_and_increment(key, 60_000, 2, 120_000)
        assert decision.allowed is False
        assert decision.retry_after_ms == 90_000

    async def test_hits_while_blocked_do_not_extend_block(self, limiter, clock):
        key = "rl:dom:login:ip"
        for _ in range(6):
            await limiter.check_and_increment(key, WINDOW_MS, 5, 60_000)
        for _ in range(10):
            clock.advance(5)
            await limiter.check_and_increment(key, WINDOW_MS, 5, 60_000)
        clock.advance(10)
        decision = await limiter.check_and_increment(key, WINDOW_MS, 5, 60_000)
        assert decision.allowed is True

    async def test_keys_are_isolated_by_domain(self, limiter):
        for _ in range(6):
            await limiter.check_and_increment(
                rate_limit_key("dom-a", "login", "1.1.1.1"), WINDOW_MS, 5
            )
        decision = await limiter.check_and_increment(
            rate_limit_key("dom-b", "login", "1.1.1.1"), WINDOW_MS, 5
        )
        assert decision.allowed is True
        assert decision.total_hits == 1

    async def test_zero_limit_always_passes(self, limiter):
        assert (await limiter.check_and_increment("k", WINDOW_MS, 0)).allowed is True
        assert (await limiter.check_and_increment("k", WINDOW_MS, -1)).allowed is True

    async def test_invalid_window_logs_warning(self, limiter):
        with patch("tessera.service.rate_limit.logger") as mock_logger:
            decision = await limiter.check_and_increment("k", 0, 10)

        assert decision.allowed is True
        mock_logger.warning.assert_called_once()
        call_args = mock_logger.warning.call_args
        assert call_args[0][0] == "rate_limit_invalid_window"
        assert call_args[1]["window_ms"] == 0


class TestStoreUnavailable:
    def _failing_limiter(self, *, fail_open: bool) -> RateLimiter:
        cache = AsyncMock()
        cache.throttle_hit = AsyncMock(side_effect=StoreUnavailable("redis", "connection refused"))
        profiles = {"default": RateLimitProfile("default", 60_000, 5, 60_000)}
        return RateLimiter(cache, profiles, fail_open=fail_open)

    async def test_fail_open_allows_and_logs(self):
        limiter = self._failing_limiter(fail_open=True)
        with patch("tessera.service.rate_limit.logger") as mock_logger:
            decision = await limiter.check_and_increment("k", 60_000, 5)

        assert decision.allowed is True
        assert mock_logger.error.call_args[0][0] == "rate_limit_store_unavailable"

    async def test_fail_closed_raises_service_unavailable(self):
        limiter = self._failing_limiter(fail_open=False)
        with pytest.raises(StoreUnavailableError):
            await limiter.check_and_increment("k", 60_000, 5)


class TestProfiles:
    def test_default_profile_is_stricter_in_production(self):
        prod = build_profiles(Settings(app_env="production", jwt_secret="x" * 40))
        dev = build_profiles(Settings(app_env="development", jwt_secret="x" * 40))
        assert prod["default"].limit < dev["default"].limit
        assert prod["default"].limit == 5
        assert dev["default"].limit == 1000

    def test_block_duration_defaults_to_window(self):
        profiles = build_profiles(Settings(jwt_secret="x" * 40))
        for profile in profiles.values():
            assert profile.block_duration_ms == profile.window_ms

    def test_configured_block_duration_applies_to_all_profiles(self):
        profiles = build_profiles(
            Settings(jwt_secret="x" * 40, rate_limit_block_duration_ms=5_000)
        )
        assert {p.block_duration_ms for p in profiles.values()} == {5_000}


class TestEnforce:
    async def test_enforce_raises_with_retry_after(self, limiter):
        for _ in range(5):
            await limiter.enforce("login", domain_id="d", endpoint="login", client_ip="ip")
        with pytest.raises(RateLimitedError) as excinfo:
            await limiter.enforce("login", domain_id="d", endpoint="login", client_ip="ip")
        assert excinfo.value.retry_after_ms == 60_000
        assert excinfo.value.status_code == 429

    async def test_unknown_profile_falls_back_to_default(self, limiter):
        decision = await limiter.hit("missing", domain_id=None, endpoint="x", client_ip=None)
        assert decision.allowed is True
        assert decision.total_hits == 1
