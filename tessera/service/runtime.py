from __future__ import annotations

import asyncio
import threading
import time
from typing import Callable, Optional, Union
from urllib.parse import urlparse, urlunparse

from tessera.config import Settings, get_settings, reset_settings_cache
from tessera.logging import get_logger
from tessera.service.auth import AuthService
from tessera.service.credentials import CredentialVerifier, PasswordHashing
from tessera.service.domains import DomainService
from tessera.service.email import EmailService
from tessera.service.mfa import MfaService
from tessera.service.password_recovery import PasswordRecoveryService
from tessera.service.rate_limit import RateLimiter, build_profiles
from tessera.service.rbac import RbacService
from tessera.service.sms import SmsService
from tessera.service.tokens import TokenService
from tessera.storage.common import SecretCipher
from tessera.storage.memory import MemoryCache, MemoryStore
from tessera.storage.postgres import PostgresStore
from tessera.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Builds the store, cache and services once and hands them to the API layer."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            app_env=self.settings.app_env.value,
        )
        cipher = SecretCipher(self.settings.mfa_key_material)

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(cipher)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, cipher)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits, MFA challenges and one-time codes; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and MFA "
                    "challenges are process-local."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache(clock=clock)

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.sms = SmsService(
            account_sid=self.settings.twilio_account_sid,
            auth_token=self.settings.twilio_auth_token,
            from_number=self.settings.twilio_phone_number,
            api_base_url=self.settings.twilio_api_base_url,
        )
        self.limiter = RateLimiter(
            self.cache,
            build_profiles(self.settings),
            fail_open=self.settings.rate_limit_fail_open,
            clock=clock,
        )
        self.hashing = PasswordHashing()
        self.credentials = CredentialVerifier(self.store, self.hashing)
        self.tokens = TokenService(self.store, self.settings, clock=clock)
        self.mfa = MfaService(
            self.store,
            self.cache,
            self.settings,
            email=self.email,
            sms=self.sms,
            clock=clock,
        )
        self.auth = AuthService(
            self.store,
            credentials=self.credentials,
            hashing=self.hashing,
            mfa=self.mfa,
            tokens=self.tokens,
            limiter=self.limiter,
            clock=clock,
        )
        self.password_recovery = PasswordRecoveryService(
            self.store,
            hashing=self.hashing,
            tokens=self.tokens,
            email=self.email,
            ttl_minutes=self.settings.password_reset_ttl_minutes,
            clock=clock,
        )
        self.rbac = RbacService(self.store)
        self.domains = DomainService(self.store)
        logger.info("runtime_init_completed")

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(clock: Callable[[], float] = time.time) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, clock=clock)
        return runtime
