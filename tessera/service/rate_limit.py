from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from tessera.config import Settings
from tessera.logging import get_logger
from tessera.service.errors import RateLimitedError, StoreUnavailableError
from tessera.storage.errors import StoreUnavailable
from tessera.storage.redis_cache import KeyValueCache

logger = get_logger(__name__)

DEFAULT_WINDOW_MS = 60_000


@dataclass(frozen=True)
class RateLimitProfile:
    name: str
    window_ms: int
    limit: int
    block_duration_ms: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int = 0
    total_hits: int = 0


def build_profiles(settings: Settings) -> Dict[str, RateLimitProfile]:
    """Named throttler profiles; block duration equals the window unless configured."""

    def profile(name: str, window_ms: int, limit: int) -> RateLimitProfile:
        block = settings.rate_limit_block_duration_ms or window_ms
        return RateLimitProfile(name=name, window_ms=window_ms, limit=limit, block_duration_ms=block)

    default_limit = (
        settings.rate_limit_max_requests_dev
        if settings.is_development
        else settings.rate_limit_max_requests
    )
    return {
        "default": profile("default", settings.rate_limit_window_ms, default_limit),
        "login": profile("login", settings.login_rate_limit_window_ms, settings.login_rate_limit),
        "register": profile(
            "register", settings.register_rate_limit_window_ms, settings.register_rate_limit
        ),
        "mfa_challenge": profile(
            "mfa_challenge", settings.mfa_rate_limit_window_ms, settings.mfa_rate_limit
        ),
        "domains": profile(
            "domains", settings.domains_rate_limit_window_ms, settings.domains_rate_limit
        ),
    }


def rate_limit_key(domain_id: Optional[str], endpoint: str, client_ip: Optional[str]) -> str:
    return f"rl:{domain_id or 'global'}:{endpoint}:{client_ip or 'unknown'}"


class RateLimiter:
    """Domain-scoped fixed-window throttler with block semantics.

    The counter itself lives in the key-value cache (Lua script on Redis, a
    lock in-process). When the cache is unreachable the outcome is decided
    here and only here: allow and log when ``fail_open`` is set, otherwise
    refuse with a 503.
    """

    def __init__(
        self,
        cache: KeyValueCache,
        profiles: Dict[str, RateLimitProfile],
        *,
        fail_open: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.profiles = profiles
        self.fail_open = fail_open
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def check_and_increment(
        self,
        key: str,
        window_ms: int,
        limit: int,
        block_duration_ms: Optional[int] = None,
        *,
        profile: str = "default",
    ) -> RateLimitDecision:
        if limit <= 0:
            return RateLimitDecision(allowed=True)
        if window_ms <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_ms=window_ms,
                message="Invalid rate limit window; defaulting to 60 seconds",
            )
            window_ms = DEFAULT_WINDOW_MS
        if not block_duration_ms or block_duration_ms <= 0:
            block_duration_ms = window_ms
        now_ms = self._now_ms()
        try:
            record = await self.cache.throttle_hit(
                f"throttler:{profile}:{key}", now_ms, window_ms, limit, block_duration_ms
            )
        except StoreUnavailable as exc:
            logger.error(
                "rate_limit_store_unavailable",
                key=key,
                profile=profile,
                fail_open=self.fail_open,
                error=str(exc),
            )
            if self.fail_open:
                return RateLimitDecision(allowed=True)
            raise StoreUnavailableError() from exc
        if record.is_blocked:
            return RateLimitDecision(
                allowed=False,
                retry_after_ms=max(1, record.retry_after_ms(now_ms)),
                total_hits=record.total_hits,
            )
        return RateLimitDecision(allowed=True, total_hits=record.total_hits)

    async def hit(
        self,
        profile_name: str,
        *,
        domain_id: Optional[str],
        endpoint: str,
        client_ip: Optional[str],
    ) -> RateLimitDecision:
        profile = self.profiles.get(profile_name) or self.profiles["default"]
        return await self.check_and_increment(
            rate_limit_key(domain_id, endpoint, client_ip),
            profile.window_ms,
            profile.limit,
            profile.block_duration_ms,
            profile=profile.name,
        )

    async def enforce(
        self,
        profile_name: str,
        *,
        domain_id: Optional[str],
        endpoint: str,
        client_ip: Optional[str],
    ) -> RateLimitDecision:
        """Count a hit and raise ``RateLimitedError`` when the key is blocked."""
        decision = await self.hit(
            profile_name, domain_id=domain_id, endpoint=endpoint, client_ip=client_ip
        )
        if not decision.allowed:
            logger.warning(
                "rate_limited",
                profile=profile_name,
                domain_id=domain_id,
                endpoint=endpoint,
                retry_after_ms=decision.retry_after_ms,
            )
            raise RateLimitedError(retry_after_ms=decision.retry_after_ms)
        return decision
