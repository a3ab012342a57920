from __future__ import annotations

import functools
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

from tessera.logging import get_logger
from tessera.service.credentials import (
    CredentialVerifier,
    PasswordHashing,
    validate_password_strength,
)
from tessera.service.errors import (
    ConflictError,
    DuplicateEmailError,
    MfaChallengeInvalidError,
    StoreUnavailableError,
)
from tessera.service.mfa import MfaService, MfaSetup
from tessera.service.rate_limit import RateLimiter
from tessera.service.tokens import TokenPair, TokenService
from tessera.storage.errors import ConstraintViolation, StoreUnavailable
from tessera.storage.models import MfaMethod, MfaType, User

logger = get_logger(__name__)

T = TypeVar("T")


class AuthStore(Protocol):
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
    ) -> User: ...

    def exists_by_email(self, domain_id: str, email: str) -> bool: ...

    def find_user_by_id(self, domain_id: str, user_id: str) -> Optional[User]: ...

    def update_last_login(self, domain_id: str, user_id: str, at: datetime) -> None: ...


def translate_storage_errors(
    func: Callable[..., Awaitable[T]],
) -> Callable[..., Awaitable[T]]:
    """Map storage exceptions onto service errors without exposing backend text."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await func(*args, **kwargs)
        except ConstraintViolation as exc:
            logger.warning("storage_constraint_violation", operation=func.__name__, detail=exc.detail)
            raise ConflictError() from exc
        except StoreUnavailable as exc:
            logger.error("storage_unavailable", operation=func.__name__, backend=exc.backend)
            raise StoreUnavailableError() from exc

    return wrapper


@dataclass
class LoginResult:
    user: User
    tokens: Optional[TokenPair] = None
    mfa_token: Optional[str] = None
    available_methods: List[str] = field(default_factory=list)

    @property
    def mfa_required(self) -> bool:
        return self.mfa_token is not None

    def as_dict(self) -> Dict[str, Any]:
        if self.mfa_required:
            return {
                "mfa_required": True,
                "mfa_token": self.mfa_token,
                "available_methods": list(self.available_methods),
            }
        payload: Dict[str, Any] = {"mfa_required": False}
        if self.tokens:
            payload.update(self.tokens.as_dict())
        return payload


class AuthService:
    """Register, login, MFA challenge and token refresh/logout flows for one domain at a time."""

    def __init__(
        self,
        store: AuthStore,
        *,
        credentials: CredentialVerifier,
        hashing: PasswordHashing,
        mfa: MfaService,
        tokens: TokenService,
        limiter: RateLimiter,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.hashing = hashing
        self.mfa = mfa
        self.tokens = tokens
        self.limiter = limiter
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def _gate(self, profile: str, domain_id: str, endpoint: str, client_ip: Optional[str]) -> None:
        await self.limiter.enforce(
            profile, domain_id=domain_id, endpoint=endpoint, client_ip=client_ip
        )

    def _complete_login(
        self,
        domain_id: str,
        user: User,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> LoginResult:
        tokens = self.tokens.issue(
            domain_id, user, ip_address=ip_address, user_agent=user_agent
        )
        self.store.update_last_login(domain_id, user.id, self._now())
        logger.info("login_succeeded", domain_id=domain_id, user_id=user.id)
        return LoginResult(user=user, tokens=tokens)

    @translate_storage_errors
    async def register(
        self,
        domain_id: str,
        email: str,
        password: str,
        *,
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> User:
        await self._gate("register", domain_id, "register", client_ip)
        validate_password_strength(password)
        if self.store.exists_by_email(domain_id, email):
            raise DuplicateEmailError()
        try:
            user = self.store.create_user(
                domain_id,
                email,
                self.hashing.hash(password),
                full_name=full_name,
                phone=phone,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same email
            raise DuplicateEmailError() from exc
        logger.info("user_registered", domain_id=domain_id, user_id=user.id)
        return user

    @translate_storage_errors
    async def login(
        self,
        domain_id: str,
        email: str,
        password: str,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        await self._gate("login", domain_id, "login", client_ip)
        user = self.credentials.verify(domain_id, email, password)
        methods = self.mfa.available_methods(domain_id, user.id)
        if not methods:
            return self._complete_login(
                domain_id, user, ip_address=client_ip, user_agent=user_agent
            )
        challenge = await self.mfa.issue_challenge(domain_id, user.id)
        return LoginResult(
            user=user, mfa_token=challenge.mfa_token, available_methods=methods
        )

    @translate_storage_errors
    async def verify_mfa_challenge(
        self,
        domain_id: str,
        mfa_token: str,
        code: str,
        method: MfaMethod = MfaMethod.TOTP,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        await self._gate("mfa_challenge", domain_id, "mfa_challenge", client_ip)
        challenge = await self.mfa.verify_challenge(domain_id, mfa_token, code, method)
        user = self.store.find_user_by_id(domain_id, challenge.user_id)
        if not user or not user.is_active:
            raise MfaChallengeInvalidError(reason="user_inactive")
        return self._complete_login(
            domain_id, user, ip_address=client_ip, user_agent=user_agent
        )

    @translate_storage_errors
    async def send_mfa_code(
        self,
        domain_id: str,
        mfa_token: str,
        method: MfaMethod,
        *,
        client_ip: Optional[str] = None,
    ) -> str:
        await self._gate("mfa_challenge", domain_id, "mfa_send_code", client_ip)
        return await self.mfa.send_challenge_code(domain_id, mfa_token, method)

    @translate_storage_errors
    async def refresh_token(
        self,
        domain_id: str,
        refresh_token: str,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        return self.tokens.refresh(
            domain_id, refresh_token, ip_address=client_ip, user_agent=user_agent
        )

    @translate_storage_errors
    async def logout(
        self, domain_id: str, user_id: str, refresh_token: Optional[str] = None
    ) -> int:
        return self.tokens.revoke(domain_id, user_id, refresh_token)

    @translate_storage_errors
    async def setup_mfa(self, domain_id: str, user_id: str, mfa_type: MfaType) -> MfaSetup:
        return await self.mfa.setup(domain_id, user_id, mfa_type)

    @translate_storage_errors
    async def enable_mfa(
        self, domain_id: str, user_id: str, code: str, mfa_type: MfaType
    ) -> User:
        return await self.mfa.enable(domain_id, user_id, code, mfa_type)

    @translate_storage_errors
    async def disable_mfa(self, domain_id: str, user_id: str) -> User:
        return await self.mfa.disable(domain_id, user_id)

    @translate_storage_errors
    async def generate_backup_codes(self, domain_id: str, user_id: str) -> List[str]:
        return await self.mfa.generate_backup_codes(domain_id, user_id)
