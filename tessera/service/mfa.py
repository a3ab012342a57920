from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import secrets
import string
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, List, Optional, Protocol

from tessera.config import Settings
from tessera.logging import get_logger
from tessera.service import totp
from tessera.service.email import EmailService
from tessera.service.errors import (
    DeliveryFailedError,
    MfaChallengeExpiredError,
    MfaChallengeInvalidError,
    NotFoundError,
    ValidationError,
)
from tessera.service.sms import SmsService
from tessera.storage.models import (
    MFA_TYPE_ORDER,
    MfaFactor,
    MfaMethod,
    MfaType,
    User,
    UserPatch,
)
from tessera.storage.redis_cache import KeyValueCache

logger = get_logger(__name__)

ONE_TIME_CODE_DIGITS = 6
BACKUP_CODE_DIGITS = 8


class MfaStore(Protocol):
    def find_user_by_id(self, domain_id: str, user_id: str) -> Optional[User]: ...

    def update_user(self, domain_id: str, user_id: str, patch: UserPatch) -> Optional[User]: ...

    def create_factor(self, factor: MfaFactor) -> MfaFactor: ...

    def list_factors(
        self,
        domain_id: str,
        user_id: str,
        *,
        mfa_type: Optional[MfaType] = None,
        primary: Optional[bool] = None,
    ) -> List[MfaFactor]: ...

    def get_pending_factor(
        self, domain_id: str, user_id: str, mfa_type: MfaType
    ) -> Optional[MfaFactor]: ...

    def promote_factor(self, domain_id: str, user_id: str, factor_id: str) -> None: ...

    def replace_backup_codes(
        self, domain_id: str, user_id: str, factor_id: str, code_hashes: List[str]
    ) -> None: ...

    def consume_backup_code(self, domain_id: str, user_id: str, code_hash: str) -> bool: ...

    def delete_factors(self, domain_id: str, user_id: str) -> int: ...


@dataclass
class MfaChallenge:
    mfa_token: str
    user_id: str
    domain_id: str
    issued_at: float
    expires_at: float

    def to_json(self) -> str:
        data = asdict(self)
        data.pop("mfa_token")
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def from_json(cls, mfa_token: str, raw: str) -> "MfaChallenge":
        data = json.loads(raw)
        return cls(
            mfa_token=mfa_token,
            user_id=str(data["user_id"]),
            domain_id=str(data["domain_id"]),
            issued_at=float(data["issued_at"]),
            expires_at=float(data["expires_at"]),
        )


@dataclass
class MfaSetup:
    mfa_type: MfaType
    secret: Optional[str] = None
    provisioning_uri: Optional[str] = None
    qr_code: Optional[str] = None
    backup_codes: List[str] = field(default_factory=list)
    delivered_to: Optional[str] = None


def challenge_key(mfa_token: str) -> str:
    return f"mfa_challenge:{mfa_token}"


def challenge_user_key(domain_id: str, user_id: str) -> str:
    return f"mfa_challenge_user:{domain_id}:{user_id}"


def challenge_attempts_key(mfa_token: str) -> str:
    return f"mfa_challenge_attempts:{mfa_token}"


def code_key(method: MfaType, domain_id: str, user_id: str, code: str) -> str:
    return f"mfa_code:{method.value}:{domain_id}:{user_id}:{code}"


def generate_numeric_code(digits: int) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(digits))


def _mask(destination: str) -> str:
    if "@" in destination:
        local, domain = destination.split("@", 1)
        return f"{local[:2]}***@{domain}"
    return f"***{destination[-4:]}"


class MfaService:
    """Second-factor challenges, one-time codes and factor management."""

    def __init__(
        self,
        store: MfaStore,
        cache: KeyValueCache,
        settings: Settings,
        *,
        email: EmailService,
        sms: SmsService,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.email = email
        self.sms = sms
        self._clock = clock
        self._backup_key = hashlib.sha256(
            f"backup-codes:{settings.mfa_key_material}".encode()
        ).digest()

    # helpers
    def hash_backup_code(self, code: str) -> str:
        normalized = code.strip().replace("-", "").replace(" ", "")
        return hmac.new(self._backup_key, normalized.encode(), hashlib.sha256).hexdigest()

    def _new_backup_codes(self) -> List[str]:
        return [
            generate_numeric_code(BACKUP_CODE_DIGITS)
            for _ in range(self.settings.mfa_backup_code_count)
        ]

    def _require_user(self, domain_id: str, user_id: str) -> User:
        user = self.store.find_user_by_id(domain_id, user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def primary_factors(self, domain_id: str, user_id: str) -> List[MfaFactor]:
        factors = self.store.list_factors(domain_id, user_id, primary=True)
        return sorted(factors, key=lambda f: MFA_TYPE_ORDER.index(f.type))

    def available_methods(self, domain_id: str, user_id: str) -> List[str]:
        seen: List[str] = []
        for factor in self.primary_factors(domain_id, user_id):
            if factor.type.value not in seen:
                seen.append(factor.type.value)
        return seen

    # challenges
    async def issue_challenge(self, domain_id: str, user_id: str) -> MfaChallenge:
        """Store a fresh challenge and drop the user's previous one, if any."""
        now = self._clock()
        ttl = self.settings.mfa_challenge_ttl_seconds
        challenge = MfaChallenge(
            mfa_token=secrets.token_urlsafe(32),
            user_id=user_id,
            domain_id=domain_id,
            issued_at=now,
            expires_at=now + ttl,
        )
        previous = await self.cache.supersede(
            challenge_user_key(domain_id, user_id),
            challenge.mfa_token,
            challenge_key(challenge.mfa_token),
            challenge.to_json(),
            ttl,
            stale_prefixes=(challenge_key(""), challenge_attempts_key("")),
        )
        if previous:
            logger.info("mfa_challenge_superseded", domain_id=domain_id, user_id=user_id)
        logger.info("mfa_challenge_issued", domain_id=domain_id, user_id=user_id)
        return challenge

    async def _parse_challenge(self, mfa_token: str, raw: Optional[str]) -> MfaChallenge:
        if not raw:
            raise MfaChallengeInvalidError(reason="unknown_or_consumed")
        try:
            challenge = MfaChallenge.from_json(mfa_token, raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("mfa_challenge_corrupt", error=str(exc))
            await self.cache.delete(challenge_key(mfa_token))
            raise MfaChallengeInvalidError(reason="corrupt") from exc
        if challenge.expires_at <= self._clock():
            await self._discard_challenge(challenge)
            raise MfaChallengeExpiredError()
        return challenge

    async def _load_challenge(self, domain_id: str, mfa_token: str) -> MfaChallenge:
        raw = await self.cache.get(challenge_key(mfa_token))
        challenge = await self._parse_challenge(mfa_token, raw)
        if challenge.domain_id != domain_id:
            raise MfaChallengeInvalidError(reason="domain_mismatch")
        return challenge

    async def _discard_challenge(self, challenge: MfaChallenge) -> None:
        keys = [challenge_key(challenge.mfa_token), challenge_attempts_key(challenge.mfa_token)]
        pointer = challenge_user_key(challenge.domain_id, challenge.user_id)
        if await self.cache.get(pointer) == challenge.mfa_token:
            keys.append(pointer)
        await self.cache.delete(*keys)

    async def _release_challenge(self, challenge: MfaChallenge, raw: str) -> None:
        """Put a claimed challenge back unless a newer login superseded it meanwhile."""
        remaining = int(challenge.expires_at - self._clock())
        if remaining <= 0:
            await self._discard_challenge(challenge)
            return
        await self.cache.set_if_equal(
            challenge_user_key(challenge.domain_id, challenge.user_id),
            challenge.mfa_token,
            challenge_key(challenge.mfa_token),
            raw,
            remaining,
        )

    async def verify_challenge(
        self, domain_id: str, mfa_token: str, code: str, method: MfaMethod
    ) -> MfaChallenge:
        """Check ``code`` against a challenge this caller has claimed.

        The challenge is taken out of the cache before any code is checked, so
        concurrent callers cannot both pass and a losing caller never consumes
        a backup or one-time code. A bad code puts the challenge back until the
        attempt cap is reached.
        """
        method = MfaMethod(method)
        raw = await self.cache.getdel(challenge_key(mfa_token))
        challenge = await self._parse_challenge(mfa_token, raw)
        if challenge.domain_id != domain_id:
            await self._release_challenge(challenge, raw)
            raise MfaChallengeInvalidError(reason="domain_mismatch")
        if not await self._check_code(challenge.domain_id, challenge.user_id, method, code):
            attempts = await self.cache.incr_with_ttl(
                challenge_attempts_key(mfa_token), self.settings.mfa_challenge_ttl_seconds
            )
            logger.warning(
                "mfa_challenge_failed",
                domain_id=domain_id,
                user_id=challenge.user_id,
                method=method.value,
                attempts=attempts,
            )
            if attempts >= self.settings.mfa_max_attempts:
                await self._discard_challenge(challenge)
                raise MfaChallengeExpiredError(reason="too_many_attempts")
            await self._release_challenge(challenge, raw)
            raise MfaChallengeInvalidError(reason="bad_code")
        await self._discard_challenge(challenge)
        logger.info(
            "mfa_challenge_verified",
            domain_id=domain_id,
            user_id=challenge.user_id,
            method=method.value,
        )
        return challenge

    async def _check_code(
        self, domain_id: str, user_id: str, method: MfaMethod, code: str
    ) -> bool:
        code = (code or "").strip()
        if not code:
            return False
        if method == MfaMethod.BACKUP_CODE:
            return self.store.consume_backup_code(domain_id, user_id, self.hash_backup_code(code))
        mfa_type = MfaType(method.value)
        factors = self.store.list_factors(domain_id, user_id, mfa_type=mfa_type, primary=True)
        if not factors:
            return False
        if mfa_type == MfaType.TOTP:
            now = self._clock()
            return any(totp.verify_totp(f.secret, code, now=now) for f in factors)
        return await self.cache.getdel(code_key(mfa_type, domain_id, user_id, code)) is not None

    async def send_challenge_code(
        self, domain_id: str, mfa_token: str, method: MfaMethod
    ) -> str:
        """Deliver a login-time code for an SMS or email factor; returns the masked destination."""
        challenge = await self._load_challenge(domain_id, mfa_token)
        method = MfaMethod(method)
        if method not in (MfaMethod.SMS, MfaMethod.EMAIL):
            raise ValidationError(
                "Codes can only be sent for sms or email", detail={"field": "method"}
            )
        mfa_type = MfaType(method.value)
        if not self.store.list_factors(domain_id, challenge.user_id, mfa_type=mfa_type, primary=True):
            raise ValidationError("MFA method not available", detail={"field": "method"})
        user = self._require_user(domain_id, challenge.user_id)
        return await self._deliver_code(user, mfa_type)

    async def _deliver_code(self, user: User, mfa_type: MfaType) -> str:
        destination = user.phone if mfa_type == MfaType.SMS else user.email
        if not destination:
            raise ValidationError(
                f"No destination on file for {mfa_type.value}", detail={"field": "method"}
            )
        code = generate_numeric_code(ONE_TIME_CODE_DIGITS)
        ttl = self.settings.mfa_code_ttl_seconds
        await self.cache.set(code_key(mfa_type, user.domain_id, user.id, code), "1", ttl)
        ttl_minutes = max(1, ttl // 60)
        if mfa_type == MfaType.SMS:
            delivered = await self.sms.send_mfa_code(destination, code, ttl_minutes=ttl_minutes)
        else:
            delivered = await asyncio.to_thread(
                self.email.send_mfa_code, destination, code, ttl_minutes=ttl_minutes
            )
        if not delivered:
            logger.error(
                "mfa_code_delivery_failed",
                domain_id=user.domain_id,
                user_id=user.id,
                method=mfa_type.value,
            )
            raise DeliveryFailedError()
        logger.info(
            "mfa_code_sent", domain_id=user.domain_id, user_id=user.id, method=mfa_type.value
        )
        return _mask(destination)

    # factor management
    async def setup(self, domain_id: str, user_id: str, mfa_type: MfaType) -> MfaSetup:
        """Create a pending factor; MFA stays off until ``enable`` proves possession."""
        mfa_type = MfaType(mfa_type)
        user = self._require_user(domain_id, user_id)
        if mfa_type == MfaType.TOTP:
            secret = totp.generate_secret()
            uri = totp.provisioning_uri(secret, user.email, self.settings.mfa_issuer)
            backup_codes = self._new_backup_codes()
            self.store.create_factor(
                MfaFactor.new(
                    domain_id,
                    user_id,
                    mfa_type,
                    secret=secret,
                    backup_codes=[self.hash_backup_code(c) for c in backup_codes],
                )
            )
            logger.info("mfa_setup_started", domain_id=domain_id, user_id=user_id, type=mfa_type.value)
            return MfaSetup(
                mfa_type=mfa_type,
                secret=secret,
                provisioning_uri=uri,
                qr_code=totp.qr_code_data_url(uri),
                backup_codes=backup_codes,
            )
        if mfa_type == MfaType.SMS and not user.phone:
            raise ValidationError("Phone number required for SMS", detail={"field": "phone"})
        self.store.create_factor(MfaFactor.new(domain_id, user_id, mfa_type))
        delivered_to = await self._deliver_code(user, mfa_type)
        logger.info("mfa_setup_started", domain_id=domain_id, user_id=user_id, type=mfa_type.value)
        return MfaSetup(mfa_type=mfa_type, delivered_to=delivered_to)

    async def enable(self, domain_id: str, user_id: str, code: str, mfa_type: MfaType) -> User:
        mfa_type = MfaType(mfa_type)
        self._require_user(domain_id, user_id)
        pending = self.store.get_pending_factor(domain_id, user_id, mfa_type)
        if not pending:
            raise ValidationError("No pending MFA setup", detail={"field": "type"})
        code = (code or "").strip()
        if mfa_type == MfaType.TOTP:
            valid = totp.verify_totp(pending.secret, code, now=self._clock())
        else:
            valid = bool(code) and (
                await self.cache.getdel(code_key(mfa_type, domain_id, user_id, code)) is not None
            )
        if not valid:
            logger.warning("mfa_enable_failed", domain_id=domain_id, user_id=user_id, type=mfa_type.value)
            raise ValidationError("Invalid verification code", detail={"field": "code"})
        self.store.promote_factor(domain_id, user_id, pending.id)
        if pending.backup_codes:
            self.store.replace_backup_codes(domain_id, user_id, pending.id, pending.backup_codes)
        user = self.store.update_user(domain_id, user_id, UserPatch(mfa_enabled=True))
        logger.info("mfa_enabled", domain_id=domain_id, user_id=user_id, type=mfa_type.value)
        if user and not await asyncio.to_thread(self.email.send_mfa_enabled_notice, user.email):
            logger.warning("mfa_enabled_notice_failed", domain_id=domain_id, user_id=user_id)
        return user

    async def disable(self, domain_id: str, user_id: str) -> User:
        self._require_user(domain_id, user_id)
        removed = self.store.delete_factors(domain_id, user_id)
        await self.cache.delete(challenge_user_key(domain_id, user_id))
        user = self.store.update_user(domain_id, user_id, UserPatch(mfa_enabled=False))
        logger.info("mfa_disabled", domain_id=domain_id, user_id=user_id, factors_removed=removed)
        return user

    async def generate_backup_codes(self, domain_id: str, user_id: str) -> List[str]:
        """Replace every stored backup code with a fresh set; returns the plaintext codes once."""
        user = self._require_user(domain_id, user_id)
        primaries = self.primary_factors(domain_id, user_id)
        if not user.mfa_enabled or not primaries:
            raise ValidationError("MFA is not enabled")
        codes = self._new_backup_codes()
        self.store.replace_backup_codes(
            domain_id, user_id, primaries[0].id, [self.hash_backup_code(c) for c in codes]
        )
        logger.info("mfa_backup_codes_regenerated", domain_id=domain_id, user_id=user_id)
        return codes
