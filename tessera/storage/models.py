from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MfaType(str, Enum):
    TOTP = "totp"
    SMS = "sms"
    EMAIL = "email"


class MfaMethod(str, Enum):
    """Ways a pending challenge can be answered."""

    TOTP = "totp"
    SMS = "sms"
    EMAIL = "email"
    BACKUP_CODE = "backup_code"


# Order in which primary factors are offered to the client
MFA_TYPE_ORDER = (MfaType.TOTP, MfaType.SMS, MfaType.EMAIL)


@dataclass
class Domain:
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class DomainRole:
    id: str
    domain_id: str
    name: str
    permissions: List[str] = field(default_factory=list)
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    domain_id: str
    email: str
    password_hash: Optional[str] = None
    full_name: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False
    mfa_enabled: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class UserPatch:
    """Mutable user fields; ``None`` leaves a field untouched.

    Identity fields (id, domain_id, email) are not patchable.
    """

    full_name: Optional[str] = None
    phone: Optional[str] = None
    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None
    mfa_enabled: Optional[bool] = None
    password_hash: Optional[str] = None
    last_login_at: Optional[datetime] = None

    def changes(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    def apply(self, user: User) -> User:
        for name, value in self.changes().items():
            setattr(user, name, value)
        user.updated_at = utcnow()
        return user


@dataclass
class MfaFactor:
    id: str
    domain_id: str
    user_id: str
    type: MfaType
    secret: Optional[str] = None
    backup_codes: List[str] = field(default_factory=list)
    is_primary: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        domain_id: str,
        user_id: str,
        mfa_type: MfaType,
        *,
        secret: Optional[str] = None,
        backup_codes: Optional[List[str]] = None,
    ) -> "MfaFactor":
        return cls(
            id=str(uuid.uuid4()),
            domain_id=domain_id,
            user_id=user_id,
            type=MfaType(mfa_type),
            secret=secret,
            backup_codes=list(backup_codes or []),
            is_primary=False,
        )


@dataclass
class Session:
    """One issued refresh token; only the SHA-256 of the token is kept."""

    id: str
    domain_id: str
    user_id: str
    token_hash: str
    family_id: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    @classmethod
    def new(
        cls,
        domain_id: str,
        user_id: str,
        token_hash: str,
        *,
        ttl: timedelta,
        now: Optional[datetime] = None,
        family_id: Optional[str] = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = now or utcnow()
        session_id = str(uuid.uuid4())
        return cls(
            id=session_id,
            domain_id=domain_id,
            user_id=user_id,
            token_hash=token_hash,
            family_id=family_id or session_id,
            created_at=now,
            expires_at=now + ttl,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class PasswordResetToken:
    id: str
    domain_id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RateLimitRecord:
    """Throttler state for one key; times are epoch milliseconds."""

    total_hits: int = 0
    window_expire_at: int = 0
    is_blocked: bool = False
    block_expire_at: int = 0

    def register_hit(
        self, now_ms: int, window_ms: int, limit: int, block_duration_ms: int
    ) -> int:
        """Apply one hit and return the TTL (ms) the record should be stored with.

        A still-blocked record is returned untouched with its remaining block time.
        """
        if self.is_blocked and self.block_expire_at > now_ms:
            return self.block_expire_at - now_ms
        if self.is_blocked:
            self.is_blocked = False
            self.total_hits = 0
        self.total_hits += 1
        if self.total_hits > limit:
            self.is_blocked = True
            self.block_expire_at = now_ms + block_duration_ms
            self.window_expire_at = now_ms + block_duration_ms
            return block_duration_ms
        self.window_expire_at = now_ms + window_ms
        return window_ms

    def retry_after_ms(self, now_ms: int) -> int:
        if not self.is_blocked:
            return 0
        return max(0, self.block_expire_at - now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_hits": self.total_hits,
            "window_expire_at": self.window_expire_at,
            "is_blocked": self.is_blocked,
            "block_expire_at": self.block_expire_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RateLimitRecord":
        return cls(
            total_hits=int(data.get("total_hits", 0)),
            window_expire_at=int(data.get("window_expire_at", 0)),
            is_blocked=bool(data.get("is_blocked", False)),
            block_expire_at=int(data.get("block_expire_at", 0)),
        )
