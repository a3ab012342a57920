from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tessera.logging import get_logger

logger = get_logger(__name__)


class AppEnvironment(str, Enum):
    """Deployment environment; drives the default rate-limit profile."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity service."""

    app_env: AppEnvironment = env_field(AppEnvironment.PRODUCTION, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/tessera", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows in-process fallbacks.",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tessera", "JWT_ISSUER")
    jwt_audience: str = env_field("tessera-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    token_clock_skew_seconds: int = env_field(30, "TOKEN_CLOCK_SKEW_SECONDS")
    session_sweep_interval_seconds: int = env_field(
        3600, "SESSION_SWEEP_INTERVAL_SECONDS"
    )

    # MFA
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting factor secrets and hashing backup codes; falls back to JWT_SECRET.",
    )
    mfa_issuer: str = env_field("Tessera", "MFA_ISSUER")
    mfa_challenge_ttl_seconds: int = env_field(600, "MFA_CHALLENGE_TTL_SECONDS")
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS")
    mfa_code_ttl_seconds: int = env_field(300, "MFA_CODE_TTL_SECONDS")
    mfa_backup_code_count: int = env_field(10, "MFA_BACKUP_CODE_COUNT")

    # Password recovery
    password_reset_ttl_minutes: int = env_field(30, "PASSWORD_RESET_TTL_MINUTES")

    # Rate limits (milliseconds, mirroring the throttler profiles)
    rate_limit_window_ms: int = env_field(900_000, "RATE_LIMIT_WINDOW_MS")
    rate_limit_max_requests: int = env_field(5, "RATE_LIMIT_MAX_REQUESTS")
    rate_limit_max_requests_dev: int = env_field(1000, "RATE_LIMIT_MAX_REQUESTS_DEV")
    rate_limit_block_duration_ms: int | None = env_field(
        None,
        "RATE_LIMIT_BLOCK_DURATION_MS",
        description="Block duration once a limit is exceeded; defaults to each profile's window.",
    )
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_limit_window_ms: int = env_field(15 * 60 * 1000, "LOGIN_RATE_LIMIT_WINDOW_MS")
    register_rate_limit: int = env_field(3, "REGISTER_RATE_LIMIT")
    register_rate_limit_window_ms: int = env_field(
        60 * 60 * 1000, "REGISTER_RATE_LIMIT_WINDOW_MS"
    )
    mfa_rate_limit: int = env_field(5, "MFA_RATE_LIMIT")
    mfa_rate_limit_window_ms: int = env_field(15 * 60 * 1000, "MFA_RATE_LIMIT_WINDOW_MS")
    domains_rate_limit: int = env_field(100, "DOMAINS_RATE_LIMIT")
    domains_rate_limit_window_ms: int = env_field(60 * 1000, "DOMAINS_RATE_LIMIT_WINDOW_MS")
    rate_limit_fail_open: bool = env_field(
        True,
        "RATE_LIMIT_FAIL_OPEN",
        description="Allow requests when the rate-limit store is unreachable.",
    )

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Tessera", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # SMS (Twilio REST API)
    twilio_account_sid: str | None = env_field(None, "TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = env_field(None, "TWILIO_AUTH_TOKEN")
    twilio_phone_number: str | None = env_field(None, "TWILIO_PHONE_NUMBER")
    twilio_api_base_url: str = env_field(
        "https://api.twilio.com/2010-04-01", "TWILIO_API_BASE_URL"
    )

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    trust_forwarded_for: bool = env_field(False, "TRUST_FORWARDED_FOR")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_development(self) -> bool:
        return self.app_env == AppEnvironment.DEVELOPMENT

    @field_validator("app_env", mode="before")
    @classmethod
    def _normalize_env(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("rate_limit_block_duration_ms", mode="before")
    @classmethod
    def _blank_block_duration(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < 32 and not self.test_mode:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required outside TEST_MODE")
        # Test runs without a configured secret get an ephemeral one
        self.jwt_secret = secrets.token_urlsafe(64)
        logger.warning("jwt_secret_ephemeral", message="Generated a per-process JWT secret")
        return self

    @property
    def mfa_key_material(self) -> str:
        return self.mfa_secret_key or self.jwt_secret


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
