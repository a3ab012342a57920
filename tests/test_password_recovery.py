"""Tests for the forgot-password / reset-password flow."""

from unittest.mock import MagicMock

import pytest

from conftest import STRONG_PASSWORD
from tessera.service.errors import InvalidCredentialsError, TokenInvalidError, ValidationError
from tessera.service.password_recovery import GENERIC_RESET_MESSAGE

NEW_PASSWORD = "Brand-New-Pass-7"


@pytest.fixture
def mailer(runtime):
    runtime.email.send_password_reset = MagicMock(return_value=True)
    return runtime.email.send_password_reset


def _sent_token(mailer) -> str:
    return mailer.call_args[0][1]


async def test_unknown_email_gets_same_reply(runtime, domain, mailer):
    message = await runtime.password_recovery.request_reset(domain.id, "ghost@example.com")
    assert message == GENERIC_RESET_MESSAGE
    mailer.assert_not_called()


async def test_reset_changes_password_and_revokes_sessions(runtime, domain, user, mailer):
    pair = runtime.tokens.issue(domain.id, user)
    message = await runtime.password_recovery.request_reset(domain.id, user.email)
    assert message == GENERIC_RESET_MESSAGE
    token = _sent_token(mailer)
    assert runtime.store.find_reset_token(token) is None

    await runtime.password_recovery.reset_password(domain.id, token, NEW_PASSWORD)

    assert runtime.credentials.verify(domain.id, user.email, NEW_PASSWORD).id == user.id
    with pytest.raises(InvalidCredentialsError):
        runtime.credentials.verify(domain.id, user.email, STRONG_PASSWORD)
    with pytest.raises(TokenInvalidError):
        runtime.tokens.refresh(domain.id, pair.refresh_token)


async def test_token_is_single_use(runtime, domain, user, mailer):
    await runtime.password_recovery.request_reset(domain.id, user.email)
    token = _sent_token(mailer)
    await runtime.password_recovery.reset_password(domain.id, token, NEW_PASSWORD)
    with pytest.raises(ValidationError):
        await runtime.password_recovery.reset_password(domain.id, token, "Another-Pass-88")


async def test_token_expires(runtime, clock, domain, user, mailer):
    await runtime.password_recovery.request_reset(domain.id, user.email)
    clock.advance(runtime.settings.password_reset_ttl_minutes * 60 + 1)
    with pytest.raises(ValidationError):
        await runtime.password_recovery.reset_password(domain.id, _sent_token(mailer), NEW_PASSWORD)


async def test_token_is_bound_to_domain(runtime, domain, other_domain, user, mailer):
    await runtime.password_recovery.request_reset(domain.id, user.email)
    with pytest.raises(ValidationError):
        await runtime.password_recovery.reset_password(
            other_domain.id, _sent_token(mailer), NEW_PASSWORD
        )


async def test_weak_new_password_keeps_token_usable(runtime, domain, user, mailer):
    await runtime.password_recovery.request_reset(domain.id, user.email)
    token = _sent_token(mailer)
    with pytest.raises(ValidationError) as excinfo:
        await runtime.password_recovery.reset_password(domain.id, token, "weak")
    assert excinfo.value.detail["field"] == "password"

    await runtime.password_recovery.reset_password(domain.id, token, NEW_PASSWORD)
