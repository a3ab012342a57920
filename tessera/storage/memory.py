from __future__ import annotations

import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from tessera.logging import get_logger
from tessera.storage.common import SecretCipher, normalize_email
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import (
    Domain,
    DomainRole,
    MfaFactor,
    MfaType,
    PasswordResetToken,
    RateLimitRecord,
    Session,
    User,
    UserPatch,
    utcnow,
)

# Expired cache entries are dropped at most this often, on writes
SWEEP_INTERVAL_SECONDS = 60


class MemoryStore:
    """In-process backing store used in tests and single-node development.

    Every mutation happens under one re-entrant lock so multi-step operations
    (session rotation, backup code consumption, factor promotion) are atomic
    with respect to concurrent requests in the same process.
    """

    def __init__(self, cipher: SecretCipher) -> None:
        self.logger = get_logger(__name__)
        self.domains: Dict[str, Domain] = {}
        self.users: Dict[str, User] = {}
        self.factors: Dict[str, MfaFactor] = {}
        self.sessions: Dict[str, Session] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.roles: Dict[str, DomainRole] = {}
        self.user_roles: Dict[Tuple[str, str], Set[str]] = {}
        self._cipher = cipher
        self._data_lock = threading.RLock()

    # domains
    def create_domain(
        self,
        name: str,
        slug: str,
        *,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> Domain:
        with self._data_lock:
            if any(d.slug == slug for d in self.domains.values()):
                raise ConstraintViolation("domain slug already exists", {"field": "slug"})
            domain = Domain(
                id=str(uuid.uuid4()),
                name=name,
                slug=slug,
                description=description,
                is_active=is_active,
            )
            self.domains[domain.id] = domain
            return replace(domain)

    def get_domain(self, domain_id: str) -> Optional[Domain]:
        with self._data_lock:
            domain = self.domains.get(domain_id)
            return replace(domain) if domain else None

    def get_domain_by_slug(self, slug: str) -> Optional[Domain]:
        with self._data_lock:
            for domain in self.domains.values():
                if domain.slug == slug:
                    return replace(domain)
        return None

    # users
    def create_user(
        self,
        domain_id: str,
        email: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
        is_active: bool = True,
        is_verified: bool = False,
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if self._find_user(domain_id, email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                domain_id=domain_id,
                email=email,
                password_hash=password_hash,
                full_name=full_name,
                phone=phone,
                is_active=is_active,
                is_verified=is_verified,
            )
            self.users[user.id] = user
            return replace(user)

    def _find_user(self, domain_id: str, email: str) -> Optional[User]:
        for user in self.users.values():
            if user.domain_id == domain_id and user.email == email:
                return user
        return None

    def find_user_by_email(self, domain_id: str, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user(domain_id, normalize_email(email))
            return replace(user) if user else None

    def find_user_by_id(self, domain_id: str, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.domain_id != domain_id:
                return None
            return replace(user)

    def exists_by_email(self, domain_id: str, email: str) -> bool:
        with self._data_lock:
            return self._find_user(domain_id, normalize_email(email)) is not None

    def update_user(self, domain_id: str, user_id: str, patch: UserPatch) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.domain_id != domain_id:
                return None
            patch.apply(user)
            return replace(user)

    def update_last_login(self, domain_id: str, user_id: str, at: datetime) -> None:
        self.update_user(domain_id, user_id, UserPatch(last_login_at=at))

    # mfa factors
    def _export_factor(self, factor: MfaFactor) -> MfaFactor:
        return replace(
            factor,
            secret=self._cipher.decrypt(factor.secret),
            backup_codes=list(factor.backup_codes),
        )

    def create_factor(self, factor: MfaFactor) -> MfaFactor:
        with self._data_lock:
            user = self.users.get(factor.user_id)
            if not user or user.domain_id != factor.domain_id:
                raise ConstraintViolation("user not found for mfa", {"user_id": factor.user_id})
            stored = replace(
                factor,
                secret=self._cipher.encrypt(factor.secret),
                backup_codes=list(factor.backup_codes),
            )
            self.factors[stored.id] = stored
            return self._export_factor(stored)

    def list_factors(
        self,
        domain_id: str,
        user_id: str,
        *,
        mfa_type: Optional[MfaType] = None,
        primary: Optional[bool] = None,
    ) -> List[MfaFactor]:
        with self._data_lock:
            matches = [
                f
                for f in self.factors.values()
                if f.domain_id == domain_id
                and f.user_id == user_id
                and (mfa_type is None or f.type == mfa_type)
                and (primary is None or f.is_primary == primary)
            ]
            matches.sort(key=lambda f: f.created_at)
            return [self._export_factor(f) for f in matches]

    def get_pending_factor(
        self, domain_id: str, user_id: str, mfa_type: MfaType
    ) -> Optional[MfaFactor]:
        pending = self.list_factors(domain_id, user_id, mfa_type=mfa_type, primary=False)
        return pending[-1] if pending else None

    def promote_factor(self, domain_id: str, user_id: str, factor_id: str) -> None:
        with self._data_lock:
            target = self.factors.get(factor_id)
            if not target or target.domain_id != domain_id or target.user_id != user_id:
                raise ConstraintViolation("mfa factor not found", {"factor_id": factor_id})
            for factor in self.factors.values():
                if (
                    factor.user_id == user_id
                    and factor.type == target.type
                    and factor.id != factor_id
                ):
                    factor.is_primary = False
            target.is_primary = True

    def replace_backup_codes(
        self, domain_id: str, user_id: str, factor_id: str, code_hashes: List[str]
    ) -> None:
        with self._data_lock:
            for factor in self.factors.values():
                if factor.domain_id == domain_id and factor.user_id == user_id:
                    factor.backup_codes = []
            target = self.factors.get(factor_id)
            if not target or target.user_id != user_id:
                raise ConstraintViolation("mfa factor not found", {"factor_id": factor_id})
            target.backup_codes = list(code_hashes)

    def consume_backup_code(self, domain_id: str, user_id: str, code_hash: str) -> bool:
        with self._data_lock:
            for factor in self.factors.values():
                if (
                    factor.domain_id == domain_id
                    and factor.user_id == user_id
                    and factor.is_primary
                    and code_hash in factor.backup_codes
                ):
                    factor.backup_codes.remove(code_hash)
                    return True
        return False

    def delete_factors(self, domain_id: str, user_id: str) -> int:
        with self._data_lock:
            doomed = [
                fid
                for fid, f in self.factors.items()
                if f.domain_id == domain_id and f.user_id == user_id
            ]
            for fid in doomed:
                self.factors.pop(fid, None)
            return len(doomed)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if any(s.token_hash == session.token_hash for s in self.sessions.values()):
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            self.sessions[session.id] = replace(session)
            return replace(session)

    def find_session_by_token(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            for session in self.sessions.values():
                if session.token_hash == token_hash:
                    return replace(session)
        return None

    def rotate_session(self, old_session_id: str, new_session: Session, *, now: datetime) -> bool:
        """Revoke ``old_session_id`` and insert ``new_session`` in one step.

        Returns False (and inserts nothing) when the old session was already revoked.
        """
        with self._data_lock:
            old = self.sessions.get(old_session_id)
            if not old or old.revoked_at is not None:
                return False
            old.revoked_at = now
            old.replaced_by = new_session.id
            self.sessions[new_session.id] = replace(new_session)
            return True

    def revoke_session(self, session_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.revoked_at is not None:
                return False
            session.revoked_at = now
            return True

    def _revoke_where(self, predicate: Callable[[Session], bool], now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for session in self.sessions.values():
                if session.revoked_at is None and predicate(session):
                    session.revoked_at = now
                    revoked += 1
            return revoked

    def revoke_session_family(self, domain_id: str, family_id: str, *, now: datetime) -> int:
        return self._revoke_where(
            lambda s: s.domain_id == domain_id and s.family_id == family_id, now
        )

    def revoke_user_sessions(self, domain_id: str, user_id: str, *, now: datetime) -> int:
        return self._revoke_where(
            lambda s: s.domain_id == domain_id and s.user_id == user_id, now
        )

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [sid for sid, s in self.sessions.items() if s.expires_at <= now]
            for sid in expired:
                self.sessions.pop(sid, None)
            return len(expired)

    # password reset tokens
    def create_reset_token(self, record: PasswordResetToken) -> PasswordResetToken:
        with self._data_lock:
            self.reset_tokens[record.id] = replace(record)
            return replace(record)

    def find_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            for record in self.reset_tokens.values():
                if record.token_hash == token_hash:
                    return replace(record)
        return None

    def mark_reset_token_used(self, token_id: str, used_at: datetime) -> bool:
        with self._data_lock:
            record = self.reset_tokens.get(token_id)
            if not record or record.used_at is not None:
                return False
            record.used_at = used_at
            return True

    # roles
    def create_role(
        self,
        domain_id: str,
        name: str,
        permissions: List[str],
        *,
        description: Optional[str] = None,
    ) -> DomainRole:
        with self._data_lock:
            if any(r.domain_id == domain_id and r.name == name for r in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = DomainRole(
                id=str(uuid.uuid4()),
                domain_id=domain_id,
                name=name,
                permissions=list(permissions),
                description=description,
            )
            self.roles[role.id] = role
            return replace(role)

    def get_role(self, domain_id: str, role_id: str) -> Optional[DomainRole]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role or role.domain_id != domain_id:
                return None
            return replace(role)

    def assign_role(self, domain_id: str, user_id: str, role_id: str) -> None:
        with self._data_lock:
            assigned = self.user_roles.setdefault((domain_id, user_id), set())
            if role_id in assigned:
                raise ConstraintViolation("role already assigned", {"role_id": role_id})
            assigned.add(role_id)

    def remove_role(self, domain_id: str, user_id: str, role_id: str) -> bool:
        with self._data_lock:
            assigned = self.user_roles.get((domain_id, user_id), set())
            if role_id not in assigned:
                return False
            assigned.discard(role_id)
            return True

    def list_user_roles(self, domain_id: str, user_id: str) -> List[DomainRole]:
        with self._data_lock:
            role_ids = self.user_roles.get((domain_id, user_id), set())
            roles = [self.roles[rid] for rid in role_ids if rid in self.roles]
            roles.sort(key=lambda r: r.name)
            return [replace(r) for r in roles]

    def close(self) -> None:
        return None


class MemoryCache:
    """In-process stand-in for Redis used under TEST_MODE or dev fallback.

    ``clock`` returns epoch seconds and drives TTL expiry, so tests can
    advance time without sleeping.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._records: Dict[str, Tuple[RateLimitRecord, float]] = {}
        self._lock = threading.Lock()
        self._next_value_sweep = 0.0
        self._next_record_sweep_ms = 0

    def _live(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    def _sweep_values(self, now: float) -> None:
        if now < self._next_value_sweep:
            return
        self._next_value_sweep = now + SWEEP_INTERVAL_SECONDS
        expired = [
            key
            for key, (_, expires_at) in self._values.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            del self._values[key]

    def _sweep_records(self, now_ms: int) -> None:
        if now_ms < self._next_record_sweep_ms:
            return
        self._next_record_sweep_ms = now_ms + SWEEP_INTERVAL_SECONDS * 1000
        expired = [key for key, (_, expires_ms) in self._records.items() if expires_ms <= now_ms]
        for key in expired:
            del self._records[key]

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            self._sweep_values(now)
            self._values[key] = (value, now + max(1, int(ttl_seconds)))

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._values.pop(key, None)
            return value

    async def delete(self, *keys: str) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._values.pop(key, None)
                self._records.pop(key, None)
            return removed

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            current = self._live(key)
            if current is None:
                self._values[key] = ("1", self._clock() + max(1, int(ttl_seconds)))
                return 1
            count = int(current) + 1
            self._values[key] = (str(count), self._values[key][1])
            return count

    async def supersede(
        self,
        pointer_key: str,
        pointer_value: str,
        value_key: str,
        value: str,
        ttl_seconds: int,
        stale_prefixes: Sequence[str] = (),
    ) -> Optional[str]:
        with self._lock:
            now = self._clock()
            self._sweep_values(now)
            previous = self._live(pointer_key)
            expires_at = now + max(1, int(ttl_seconds))
            self._values[value_key] = (value, expires_at)
            self._values[pointer_key] = (pointer_value, expires_at)
            if previous is not None and previous != pointer_value:
                for prefix in stale_prefixes:
                    self._values.pop(prefix + previous, None)
            return previous

    async def set_if_equal(
        self, guard_key: str, expected: str, key: str, value: str, ttl_seconds: int
    ) -> bool:
        with self._lock:
            if self._live(guard_key) != expected:
                return False
            self._values[key] = (value, self._clock() + max(1, int(ttl_seconds)))
            return True

    async def throttle_hit(
        self, key: str, now_ms: int, window_ms: int, limit: int, block_duration_ms: int
    ) -> RateLimitRecord:
        with self._lock:
            self._sweep_records(now_ms)
            entry = self._records.get(key)
            if entry is None or entry[1] <= now_ms:
                record = RateLimitRecord()
            else:
                record = replace(entry[0])
            ttl_ms = record.register_hit(now_ms, window_ms, limit, block_duration_ms)
            self._records[key] = (record, now_ms + ttl_ms)
            return replace(record)

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._records.clear()


__all__ = ["MemoryStore", "MemoryCache", "utcnow"]
