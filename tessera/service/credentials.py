from __future__ import annotations

import re
from typing import List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tessera.logging import get_logger
from tessera.service.errors import InvalidCredentialsError, ValidationError
from tessera.storage.models import User, UserPatch

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 12
PASSWORD_SPECIAL_CHARS = "@$!%*?&#^()-_=+"


class CredentialStore(Protocol):
    def find_user_by_email(self, domain_id: str, email: str) -> Optional[User]: ...

    def update_user(self, domain_id: str, user_id: str, patch: UserPatch) -> Optional[User]: ...


def password_problems(password: str) -> List[str]:
    problems: List[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        problems.append(f"must be at least {PASSWORD_MIN_LENGTH} characters")
    if not re.search(r"[a-z]", password):
        problems.append("must contain a lowercase letter")
    if not re.search(r"[A-Z]", password):
        problems.append("must contain an uppercase letter")
    if not re.search(r"\d", password):
        problems.append("must contain a digit")
    if not any(ch in PASSWORD_SPECIAL_CHARS for ch in password):
        problems.append(f"must contain one of {PASSWORD_SPECIAL_CHARS}")
    return problems


def validate_password_strength(password: str) -> None:
    problems = password_problems(password)
    if problems:
        raise ValidationError(
            "Password does not meet strength requirements",
            detail={"field": "password", "problems": problems},
        )


class PasswordHashing:
    """argon2id hashing with a dummy verification for unknown accounts."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified when no user matches so both paths cost one argon2 run
        self._dummy_hash = self._hasher.hash("tessera-dummy-password")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: Optional[str], password: str) -> bool:
        if not password_hash:
            self.burn(password)
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def burn(self, password: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return False


class CredentialVerifier:
    def __init__(self, store: CredentialStore, hashing: PasswordHashing) -> None:
        self.store = store
        self.hashing = hashing

    def verify(self, domain_id: str, email: str, password: str) -> User:
        """Return the user owning ``(domain_id, email)`` if ``password`` matches.

        Unknown email, wrong password and inactive account all raise the same
        ``InvalidCredentialsError``; the distinction only reaches the logs.
        """
        user = self.store.find_user_by_email(domain_id, email)
        if not user:
            self.hashing.burn(password)
            logger.warning("login_failed", domain_id=domain_id, reason="unknown_user")
            raise InvalidCredentialsError()
        if not self.hashing.verify(user.password_hash, password):
            logger.warning(
                "login_failed", domain_id=domain_id, user_id=user.id, reason="bad_password"
            )
            raise InvalidCredentialsError()
        if not user.is_active:
            logger.warning(
                "login_failed", domain_id=domain_id, user_id=user.id, reason="user_inactive"
            )
            raise InvalidCredentialsError()
        if user.password_hash and self.hashing.needs_rehash(user.password_hash):
            updated = self.store.update_user(
                domain_id, user.id, UserPatch(password_hash=self.hashing.hash(password))
            )
            logger.info("password_rehashed", domain_id=domain_id, user_id=user.id)
            if updated:
                user = updated
        return user
