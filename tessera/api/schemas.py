from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tessera.logging import get_correlation_id
from tessera.storage.models import MfaMethod, MfaType, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "mfa_challenge_invalid",
    "token_invalid",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "duplicate_email",
    "server_error",
    "delivery_failed",
    "service_unavailable",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then apply NFKC."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    compact = re.sub(r"[\s().-]", "", value)
    if not _PHONE_PATTERN.match(compact):
        raise ValueError("phone must be in E.164 format, e.g. +15551234567")
    return compact


# requests


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    full_name: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)
    domain_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_register_phone(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    domain_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class MfaChallengeRequest(BaseModel):
    mfa_token: str = Field(..., max_length=128)
    code: str = Field(..., min_length=6, max_length=16)
    method: MfaMethod = MfaMethod.TOTP
    domain_id: Optional[str] = Field(default=None, max_length=64)


class SendMfaCodeRequest(BaseModel):
    mfa_token: str = Field(..., max_length=128)
    method: MfaMethod
    domain_id: Optional[str] = Field(default=None, max_length=64)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)
    domain_id: Optional[str] = Field(default=None, max_length=64)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
    domain_id: Optional[str] = Field(default=None, max_length=64)


class MfaSetupRequest(BaseModel):
    type: MfaType = MfaType.TOTP


class MfaEnableRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=16)
    type: MfaType = MfaType.TOTP


class ForgotPasswordRequest(BaseModel):
    email: str
    domain_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str = Field(..., max_length=128)
    domain_id: Optional[str] = Field(default=None, max_length=64)


# responses


class UserResponse(BaseModel):
    id: str
    domain_id: str
    email: str
    full_name: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool
    is_verified: bool
    mfa_enabled: bool
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            domain_id=user.domain_id,
            email=user.email,
            full_name=user.full_name,
            phone=user.phone,
            is_active=user.is_active,
            is_verified=user.is_verified,
            mfa_enabled=user.mfa_enabled,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class LoginResponse(BaseModel):
    mfa_required: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None
    mfa_token: Optional[str] = None
    available_methods: Optional[List[str]] = None


class MfaSetupResponse(BaseModel):
    type: MfaType
    secret: Optional[str] = None
    provisioning_uri: Optional[str] = None
    qr_code: Optional[str] = None
    backup_codes: List[str] = Field(default_factory=list)
    delivered_to: Optional[str] = None


class SendCodeResponse(BaseModel):
    sent: bool = True
    destination: str


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class LogoutResponse(BaseModel):
    revoked: int


class MessageResponse(BaseModel):
    message: str


class RolesResponse(BaseModel):
    user_id: str
    roles: List[str]
    permissions: List[str]
