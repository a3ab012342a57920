from __future__ import annotations

import asyncio
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from tessera.logging import get_logger
from tessera.service.credentials import PasswordHashing, validate_password_strength
from tessera.service.email import EmailService
from tessera.service.errors import ValidationError
from tessera.service.tokens import TokenService
from tessera.storage.common import hash_token
from tessera.storage.models import PasswordResetToken, User, UserPatch

logger = get_logger(__name__)

GENERIC_RESET_MESSAGE = "If the email exists, a password reset link has been sent"


class ResetStore(Protocol):
    def find_user_by_email(self, domain_id: str, email: str) -> Optional[User]: ...

    def find_user_by_id(self, domain_id: str, user_id: str) -> Optional[User]: ...

    def update_user(self, domain_id: str, user_id: str, patch: UserPatch) -> Optional[User]: ...

    def create_reset_token(self, record: PasswordResetToken) -> PasswordResetToken: ...

    def find_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]: ...

    def mark_reset_token_used(self, token_id: str, used_at: datetime) -> bool: ...


class PasswordRecoveryService:
    def __init__(
        self,
        store: ResetStore,
        *,
        hashing: PasswordHashing,
        tokens: TokenService,
        email: EmailService,
        ttl_minutes: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.hashing = hashing
        self.tokens = tokens
        self.email = email
        self.ttl_minutes = ttl_minutes
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def request_reset(self, domain_id: str, email: str) -> str:
        """Mail a reset link when the account exists; the reply never says whether it does."""
        user = self.store.find_user_by_email(domain_id, email)
        if not user or not user.is_active:
            logger.info("password_reset_requested", domain_id=domain_id, matched=False)
            return GENERIC_RESET_MESSAGE
        token = secrets.token_hex(32)
        now = self._now()
        self.store.create_reset_token(
            PasswordResetToken(
                id=str(uuid.uuid4()),
                domain_id=domain_id,
                user_id=user.id,
                token_hash=hash_token(token),
                expires_at=now + timedelta(minutes=self.ttl_minutes),
                created_at=now,
            )
        )
        sent = await asyncio.to_thread(
            self.email.send_password_reset, user.email, token, ttl_minutes=self.ttl_minutes
        )
        if not sent:
            logger.error("password_reset_email_failed", domain_id=domain_id, user_id=user.id)
        logger.info("password_reset_requested", domain_id=domain_id, matched=True)
        return GENERIC_RESET_MESSAGE

    async def reset_password(self, domain_id: str, token: str, new_password: str) -> None:
        record = self.store.find_reset_token(hash_token(token or ""))
        if not record or record.domain_id != domain_id:
            raise ValidationError("Invalid or expired reset token")
        if record.used_at is not None:
            raise ValidationError("Reset token already used")
        if record.expires_at <= self._now():
            raise ValidationError("Invalid or expired reset token")
        validate_password_strength(new_password)
        if not self.store.mark_reset_token_used(record.id, self._now()):
            raise ValidationError("Reset token already used")
        user = self.store.update_user(
            domain_id, record.user_id, UserPatch(password_hash=self.hashing.hash(new_password))
        )
        if not user:
            raise ValidationError("Invalid or expired reset token")
        revoked = self.tokens.revoke(domain_id, user.id)
        logger.info(
            "password_reset_completed", domain_id=domain_id, user_id=user.id, sessions_revoked=revoked
        )
