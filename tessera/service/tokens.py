from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from tessera.config import Settings
from tessera.logging import get_logger
from tessera.service.errors import ForbiddenError, TokenInvalidError
from tessera.storage.common import hash_token
from tessera.storage.models import DomainRole, Session, User

logger = get_logger(__name__)


class SessionStore(Protocol):
    def find_user_by_id(self, domain_id: str, user_id: str) -> Optional[User]: ...

    def list_user_roles(self, domain_id: str, user_id: str) -> List[DomainRole]: ...

    def create_session(self, session: Session) -> Session: ...

    def find_session_by_token(self, token_hash: str) -> Optional[Session]: ...

    def rotate_session(self, old_session_id: str, new_session: Session, *, now: datetime) -> bool: ...

    def revoke_session(self, session_id: str, *, now: datetime) -> bool: ...

    def revoke_session_family(self, domain_id: str, family_id: str, *, now: datetime) -> int: ...

    def revoke_user_sessions(self, domain_id: str, user_id: str, *, now: datetime) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }


class TokenService:
    """HS256 access tokens plus opaque, rotating refresh tokens.

    Each refresh token is one ``Session`` row. Rotation revokes the presented
    row and inserts its successor in the same family; presenting a revoked
    token again revokes the whole family.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._leeway = settings.token_clock_skew_seconds

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_ttl_days)

    # JWT
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[Dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None
        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode("utf-8", "replace")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self._leeway:
            return None
        return payload

    def _access_token(self, user: User, roles: Sequence[str]) -> str:
        issued_at = int(self._clock())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "domain_id": user.domain_id,
            "email": user.email,
            "roles": list(roles),
            "iat": issued_at,
            "exp": issued_at + self.settings.access_token_ttl_seconds,
            "jti": str(uuid.uuid4()),
            "token_type": "access",
        }
        return self._encode_jwt(payload)

    def _role_names(self, user: User) -> List[str]:
        return [role.name for role in self.store.list_user_roles(user.domain_id, user.id)]

    def _pair(self, user: User, refresh_token: str) -> TokenPair:
        return TokenPair(
            access_token=self._access_token(user, self._role_names(user)),
            refresh_token=refresh_token,
            expires_in=self.settings.access_token_ttl_seconds,
        )

    # lifecycle
    def issue(
        self,
        domain_id: str,
        user: User,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        """Start a new session family for ``user`` and return its first token pair."""
        if user.domain_id != domain_id:
            raise TokenInvalidError(reason="domain_mismatch")
        refresh_token = secrets.token_urlsafe(48)
        session = Session.new(
            domain_id,
            user.id,
            hash_token(refresh_token),
            ttl=self.refresh_ttl,
            now=self._now(),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.store.create_session(session)
        logger.info("session_issued", domain_id=domain_id, user_id=user.id, session_id=session.id)
        return self._pair(user, refresh_token)

    def _revoke_family(self, session: Session, reason: str) -> None:
        revoked = self.store.revoke_session_family(
            session.domain_id, session.family_id, now=self._now()
        )
        logger.warning(
            "refresh_token_family_revoked",
            domain_id=session.domain_id,
            user_id=session.user_id,
            family_id=session.family_id,
            reason=reason,
            revoked=revoked,
        )

    def refresh(
        self,
        domain_id: str,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        session = self.store.find_session_by_token(hash_token(refresh_token or ""))
        if not session:
            raise TokenInvalidError(reason="unknown")
        if session.domain_id != domain_id:
            logger.warning(
                "refresh_token_domain_mismatch",
                token_domain_id=session.domain_id,
                domain_id=domain_id,
            )
            raise TokenInvalidError(reason="domain_mismatch")
        if session.revoked_at is not None:
            self._revoke_family(session, "reuse")
            raise TokenInvalidError(reason="reuse")
        now = self._now()
        if session.expires_at <= now:
            raise TokenInvalidError(reason="expired")
        user = self.store.find_user_by_id(domain_id, session.user_id)
        if not user or not user.is_active:
            self._revoke_family(session, "user_inactive")
            raise TokenInvalidError(reason="user_inactive")
        new_token = secrets.token_urlsafe(48)
        successor = Session.new(
            domain_id,
            user.id,
            hash_token(new_token),
            ttl=self.refresh_ttl,
            now=now,
            family_id=session.family_id,
            ip_address=ip_address or session.ip_address,
            user_agent=user_agent or session.user_agent,
        )
        if not self.store.rotate_session(session.id, successor, now=now):
            # Another request rotated this token first
            self._revoke_family(session, "rotation_race")
            raise TokenInvalidError(reason="reuse")
        logger.info(
            "session_rotated",
            domain_id=domain_id,
            user_id=user.id,
            family_id=session.family_id,
            session_id=successor.id,
        )
        return self._pair(user, new_token)

    def revoke(self, domain_id: str, user_id: str, refresh_token: Optional[str] = None) -> int:
        """Revoke one session (by token) or, without a token, every session of the user."""
        now = self._now()
        if refresh_token is None:
            revoked = self.store.revoke_user_sessions(domain_id, user_id, now=now)
            logger.info("sessions_revoked", domain_id=domain_id, user_id=user_id, revoked=revoked)
            return revoked
        session = self.store.find_session_by_token(hash_token(refresh_token))
        if not session or session.domain_id != domain_id or session.user_id != user_id:
            raise TokenInvalidError(reason="unknown")
        revoked = 1 if self.store.revoke_session(session.id, now=now) else 0
        logger.info(
            "session_revoked", domain_id=domain_id, user_id=user_id, session_id=session.id
        )
        return revoked

    def decode_access_token(self, token: str, domain_id: Optional[str] = None) -> Dict[str, Any]:
        payload = self._decode_jwt(token or "")
        if not payload or payload.get("token_type") != "access" or not payload.get("sub"):
            raise TokenInvalidError()
        if domain_id is not None and payload.get("domain_id") != domain_id:
            logger.warning(
                "access_token_domain_mismatch",
                token_domain_id=payload.get("domain_id"),
                domain_id=domain_id,
            )
            raise ForbiddenError("Token does not belong to this domain")
        return payload

    def sweep_expired_sessions(self) -> int:
        return self.store.delete_expired_sessions(self._now())
