"""Tests for MFA setup, login challenges, one-time codes and backup codes."""

from unittest.mock import AsyncMock

import pytest

from tessera.service import mfa as mfa_module
from tessera.service import totp
from tessera.service.errors import (
    DeliveryFailedError,
    MfaChallengeExpiredError,
    MfaChallengeInvalidError,
    ValidationError,
)
from tessera.storage.models import MfaMethod, MfaType


async def _enable_totp(runtime, domain, user):
    setup = await runtime.mfa.setup(domain.id, user.id, MfaType.TOTP)
    code = totp.generate_totp(setup.secret, runtime.clock())
    await runtime.mfa.enable(domain.id, user.id, code, MfaType.TOTP)
    return setup


@pytest.fixture
def fixed_codes(monkeypatch):
    monkeypatch.setattr(mfa_module, "generate_numeric_code", lambda digits: "123456")


class TestTotp:
    def test_rfc6238_reference_vector(self):
        # RFC 6238 appendix B, SHA-1 seed "12345678901234567890"
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        assert totp.generate_totp(secret, 59, digits=8) == "94287082"
        assert totp.generate_totp(secret, 1111111109, digits=8) == "07081804"

    def test_adjacent_step_is_accepted(self):
        secret = totp.generate_secret()
        previous = totp.generate_totp(secret, 1_000_000 - 30)
        assert totp.verify_totp(secret, previous, now=1_000_000)
        stale = totp.generate_totp(secret, 1_000_000 - 90)
        assert not totp.verify_totp(secret, stale, now=1_000_000)

    def test_provisioning_uri_and_qr(self):
        uri = totp.provisioning_uri("ABCDEF", "alice@example.com", "Tessera")
        assert uri.startswith("otpauth://totp/Tessera%3Aalice%40example.com?")
        assert "secret=ABCDEF" in uri
        assert totp.qr_code_data_url(uri).startswith("data:image/svg+xml;base64,")


class TestSetupAndEnable:
    async def test_setup_does_not_enable_until_verified(self, runtime, domain, user):
        setup = await runtime.mfa.setup(domain.id, user.id, MfaType.TOTP)

        assert setup.secret and setup.provisioning_uri and setup.qr_code
        assert len(setup.backup_codes) == runtime.settings.mfa_backup_code_count
        assert runtime.mfa.available_methods(domain.id, user.id) == []
        assert runtime.store.find_user_by_id(domain.id, user.id).mfa_enabled is False

    async def test_enable_with_wrong_code_fails(self, runtime, domain, user):
        await runtime.mfa.setup(domain.id, user.id, MfaType.TOTP)
        with pytest.raises(ValidationError):
            await runtime.mfa.enable(domain.id, user.id, "000000", MfaType.TOTP)

    async def test_enable_without_setup_fails(self, runtime, domain, user):
        with pytest.raises(ValidationError):
            await runtime.mfa.enable(domain.id, user.id, "123456", MfaType.TOTP)

    async def test_enable_promotes_factor(self, runtime, domain, user):
        await _enable_totp(runtime, domain, user)

        assert runtime.mfa.available_methods(domain.id, user.id) == ["totp"]
        assert runtime.store.find_user_by_id(domain.id, user.id).mfa_enabled is True

    async def test_factor_secret_is_encrypted_at_rest(self, runtime, domain, user):
        setup = await runtime.mfa.setup(domain.id, user.id, MfaType.TOTP)
        stored = next(iter(runtime.store.factors.values()))
        assert stored.secret != setup.secret

    async def test_methods_follow_totp_sms_email_order(self, runtime, domain, user, fixed_codes):
        await runtime.mfa.setup(domain.id, user.id, MfaType.EMAIL)
        await runtime.mfa.enable(domain.id, user.id, "123456", MfaType.EMAIL)
        await runtime.mfa.setup(domain.id, user.id, MfaType.SMS)
        await runtime.mfa.enable(domain.id, user.id, "123456", MfaType.SMS)
        await _enable_totp(runtime, domain, user)

        assert runtime.mfa.available_methods(domain.id, user.id) == ["totp", "sms", "email"]

    async def test_sms_setup_requires_phone(self, runtime, domain):
        no_phone = runtime.store.create_user(domain.id, "nophone@example.com", "x")
        with pytest.raises(ValidationError):
            await runtime.mfa.setup(domain.id, no_phone.id, MfaType.SMS)

    async def test_disable_removes_factors(self, runtime, domain, user):
        await _enable_totp(runtime, domain, user)
        updated = await runtime.mfa.disable(domain.id, user.id)

        assert updated.mfa_enabled is False
        assert runtime.mfa.available_methods(domain.id, user.id) == []


class TestChallenge:
    async def test_challenge_is_single_use(self, runtime, clock, domain, user):
        setup = await _enable_totp(runtime, domain, user)
        challenge = await runtime.mfa.issue_challenge(domain.id, user.id)

        code = totp.generate_totp(setup.secret, clock())
        verified = await runtime.mfa.verify_challenge(
            domain.id, challenge.mfa_token, code, MfaMethod.TOTP
        )
        assert verified.user_id == user.id

        clock.advance(30)
        fresh_code = totp.generate_totp(setup.secret, clock())
        with pytest.raises(MfaChallengeInvalidError):
            await runtime.mfa.verify_challenge(
                domain.id, challenge.mfa_token, fresh_code, MfaMethod.TOTP
            )

    async def test_challenge_expires(self, runtime, clock, domain, user):
        setup = await _enable_totp(runtime, domain, user)
        challenge = await runtime.mfa.issue_challenge(domain.id, user.id)

        clock.advance(runtime.settings.mfa_challenge_ttl_seconds + 1)
        code = totp.generate_totp(setup.secret, clock())
        with pytest.raises(MfaChallengeInvalidError) as excinfo:
            await runtime.mfa.verify_challenge(domain.id, challenge.mfa_token, code, MfaMethod.TOTP)
        assert excinfo.value.message == MfaChallengeInvalidError.default_message

    async def test_too_many_attempts_burns_challenge(self, runtime, clock, domain, user):
        setup = await _enable_totp(runtime, domain, user)
        challenge = await runtime.mfa.issue_challenge(domain.id, user.id)

        for _ in range(runtime.settings.mfa_max_attempts - 1):
            with pytest.raises(MfaChallengeInvalidError) as excinfo:
                await runtime.mfa.verify_challenge(
                    domain.id, challenge.mfa_token, "000000", MfaMethod.TOTP
                )
            assert excinfo.value.reason == "bad_code"
        with pytest.raises(MfaChallengeExpiredError) as excinfo:
            await runtime.mfa.verify_challenge(
                domain.id, challenge.mfa_token, "000000", MfaMethod.TOTP
            )
        assert excinfo.value.reason == "too_many_attempts"

        code = totp.generate_totp(setup.secret, clock())
        with pytest.raises(MfaChallengeInvalidError):
            await runtime.mfa.verify_challenge(domain.id, challenge.mfa_token, code, MfaMethod.TOTP)

    async def test_new_challenge_supersedes_previous(self, runtime, clock, domain, user):
        setup = await _enable_totp(runtime, domain, user)
        first = await runtime.mfa.issue_challenge(domain.id, user.id)
        second = await runtime.mfa.issue_challenge(domain.id, user.id)

        code = totp.generate_totp(setup.secret, clock())
        with pytest.raises(MfaChallengeInvalidError):
            await runtime.mfa.verify_challenge(domain.id, first.mfa_token, code, MfaMethod.TOTP)
        await runtime.mfa.verify_challenge(domain.id, second.mfa_token, code, MfaMethod.TOTP)

    async def test_challenge_is_bound_to_domain(self, runtime, clock, domain, other_domain, user):
        setup = await _enable_totp(runtime, domain, user)
        challenge = await runtime.mfa.issue_challenge(domain.id, user.id)

        code = totp.generate_totp(setup.secret, clock())
        with pytest.raises(MfaChallengeInvalidError) as excinfo:
            await runtime.mfa.verify_challenge(
                other_domain.id, challenge.mfa_token, code, MfaMethod.TOTP
            )
        assert excinfo.value.reason == "domain_mismatch"

    async def test_method_without_factor_is_rejected(self, runtime, domain, user):
        await _enable_totp(runtime, domain, user)
        challenge = await runtime.mfa.issue_challenge(domain.id, user.id)
        with pytest.raises(MfaChallengeInvalidError):
            await runtime.mfa.verify_challenge(
                domain.id, challenge.mfa_token, "123456", MfaMethod.SMS
            )


class TestOneTimeCodes:
    async def test_email_code_round_trip(self, runtime, domain, user, fixed_codes):
        await runtime.mfa.setup(domain.id, user.id, MfaType.EMAIL)
        await runtime.mfa.enable(domain.id, user.id, "123456", MfaType.EMAIL)
        challenge = await runtime.mfa.issue_challenge(domain.id, user.id)

        destination = await runtime.mfa.send_challenge_code(
            domain.id, challenge.mfa_token, MfaMethod.EMAIL
        )
        assert destination == "al***@example.com"
        await runtime.mfa.verify_challenge(domain.id, challenge.mfa_token, "123456", MfaMethod.EMAIL)

    async def test_sms_code_expires(self, runtime, clock, domain, user, fixed_codes):
        await runtime.mfa.setup(domain.id, user.id, MfaType.SMS)
        await runtime.mfa.enable(domain.id, user.id, "123456", MfaType.SMS)
        challenge = await runtime.mfa.issue_challenge(domain.id, user.id)

        destination = await runtime.mfa.send_challenge_code(
            domain.id, challenge.mfa_token, MfaMethod.SMS
        )
        assert destination == "***4567"
        clock.advance(runtime.settings.mfa_code_ttl_seconds + 1)
        with pytest.raises(MfaChallengeInvalidError):
            await runtime.mfa.verify_challenge(domain.id, challenge.mfa_token, "123456", MfaMethod.SMS)

    async def test_send_code_rejects_totp(self, runtime, domain, user):
        await _enable_totp(runtime, domain, user)
        challenge = await runtime.mfa.issue_challenge(domain.id, user.id)
        with pytest.raises(ValidationError):
            await runtime.mfa.send_challenge_code(domain.id, challenge.mfa_token, MfaMethod.TOTP)

    async def test_delivery_failure_is_reported(self, runtime, domain, user, fixed_codes):
        await runtime.mfa.setup(domain.id, user.id, MfaType.SMS)
        await runtime.mfa.enable(domain.id, user.id, "123456", MfaType.SMS)
        challenge = await runtime.mfa.issue_challenge(domain.id, user.id)
        runtime.sms.send_mfa_code = AsyncMock(return_value=False)

        with pytest.raises(DeliveryFailedError):
            await runtime.mfa.send_challenge_code(domain.id, challenge.mfa_token, MfaMethod.SMS)


class TestBackupCodes:
    async def test_backup_code_is_consumed_once(self, runtime, domain, user):
        await _enable_totp(runtime, domain, user)
        factor = runtime.mfa.primary_factors(domain.id, user.id)[0]
        codes = ["11111111", "22222222", "33333333", "44444444", "55555555"]
        runtime.store.replace_backup_codes(
            domain.id, user.id, factor.id, [runtime.mfa.hash_backup_code(c) for c in codes]
        )

        challenge = await runtime.mfa.issue_challenge(domain.id, user.id)
        await runtime.mfa.verify_challenge(
            domain.id, challenge.mfa_token, "33333333", MfaMethod.BACKUP_CODE
        )
        remaining = runtime.mfa.primary_factors(domain.id, user.id)[0].backup_codes
        assert len(remaining) == 4

        retry = await runtime.mfa.issue_challenge(domain.id, user.id)
        with pytest.raises(MfaChallengeInvalidError):
            await runtime.mfa.verify_challenge(
                domain.id, retry.mfa_token, "33333333", MfaMethod.BACKUP_CODE
            )
        assert len(runtime.mfa.primary_factors(domain.id, user.id)[0].backup_codes) == 4

    async def test_setup_codes_work_after_enable(self, runtime, domain, user):
        setup = await _enable_totp(runtime, domain, user)
        challenge = await runtime.mfa.issue_challenge(domain.id, user.id)
        await runtime.mfa.verify_challenge(
            domain.id, challenge.mfa_token, setup.backup_codes[0], MfaMethod.BACKUP_CODE
        )

    async def test_regenerate_invalidates_old_codes(self, runtime, domain, user):
        setup = await _enable_totp(runtime, domain, user)
        fresh = await runtime.mfa.generate_backup_codes(domain.id, user.id)
        assert len(fresh) == runtime.settings.mfa_backup_code_count
        assert all(len(code) == 8 and code.isdigit() for code in fresh)

        challenge = await runtime.mfa.issue_challenge(domain.id, user.id)
        with pytest.raises(MfaChallengeInvalidError):
            await runtime.mfa.verify_challenge(
                domain.id, challenge.mfa_token, setup.backup_codes[0], MfaMethod.BACKUP_CODE
            )
        await runtime.mfa.verify_challenge(
            domain.id, challenge.mfa_token, fresh[0], MfaMethod.BACKUP_CODE
        )

    async def test_regenerate_requires_enabled_mfa(self, runtime, domain, user):
        with pytest.raises(ValidationError):
            await runtime.mfa.generate_backup_codes(domain.id, user.id)
