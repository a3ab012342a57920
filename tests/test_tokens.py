"""Tests for access token signing and refresh token rotation/revocation."""

import pytest

from tessera.service.errors import ForbiddenError, TokenInvalidError
from tessera.storage.common import hash_token
from tessera.storage.models import UserPatch


class TestAccessTokens:
    def test_claims_carry_domain_and_roles(self, runtime, domain, user):
        role = runtime.rbac.create_role(domain.id, "editor", ["posts:write"])
        runtime.rbac.assign_role(domain.id, user.id, role.id)

        pair = runtime.tokens.issue(domain.id, user)
        claims = runtime.tokens.decode_access_token(pair.access_token, domain.id)

        assert claims["sub"] == user.id
        assert claims["domain_id"] == domain.id
        assert claims["roles"] == ["editor"]
        assert claims["token_type"] == "access"
        assert pair.expires_in == runtime.settings.access_token_ttl_seconds

    def test_expired_access_token_is_rejected(self, runtime, clock, domain, user):
        pair = runtime.tokens.issue(domain.id, user)
        clock.advance(
            runtime.settings.access_token_ttl_seconds
            + runtime.settings.token_clock_skew_seconds
            + 1
        )
        with pytest.raises(TokenInvalidError):
            runtime.tokens.decode_access_token(pair.access_token)

    def test_tampered_token_is_rejected(self, runtime, domain, user):
        pair = runtime.tokens.issue(domain.id, user)
        token = pair.access_token
        forged = token[:-1] + ("B" if token[-1] == "A" else "A")
        with pytest.raises(TokenInvalidError):
            runtime.tokens.decode_access_token(forged)

    def test_non_ascii_signature_is_rejected(self, runtime, domain, user):
        header, payload, _ = runtime.tokens.issue(domain.id, user).access_token.split(".")
        with pytest.raises(TokenInvalidError):
            runtime.tokens.decode_access_token(f"{header}.{payload}.\u00e9", domain.id)

    def test_other_domain_is_forbidden(self, runtime, domain, other_domain, user):
        pair = runtime.tokens.issue(domain.id, user)
        with pytest.raises(ForbiddenError):
            runtime.tokens.decode_access_token(pair.access_token, other_domain.id)

    def test_refresh_token_is_not_an_access_token(self, runtime, domain, user):
        pair = runtime.tokens.issue(domain.id, user)
        with pytest.raises(TokenInvalidError):
            runtime.tokens.decode_access_token(pair.refresh_token)


class TestRefreshRotation:
    def test_only_hash_of_refresh_token_is_stored(self, runtime, domain, user):
        pair = runtime.tokens.issue(domain.id, user)
        stored = runtime.store.find_session_by_token(hash_token(pair.refresh_token))
        assert stored is not None
        assert all(s.token_hash != pair.refresh_token for s in runtime.store.sessions.values())

    def test_rotation_issues_new_token_and_rejects_old(self, runtime, domain, user):
        original = runtime.tokens.issue(domain.id, user)
        rotated = runtime.tokens.refresh(domain.id, original.refresh_token)
        assert rotated.refresh_token != original.refresh_token

        with pytest.raises(TokenInvalidError) as excinfo:
            runtime.tokens.refresh(domain.id, original.refresh_token)
        assert excinfo.value.reason == "reuse"

    def test_reuse_revokes_whole_family(self, runtime, domain, user):
        original = runtime.tokens.issue(domain.id, user)
        second = runtime.tokens.refresh(domain.id, original.refresh_token)
        third = runtime.tokens.refresh(domain.id, second.refresh_token)

        with pytest.raises(TokenInvalidError):
            runtime.tokens.refresh(domain.id, original.refresh_token)
        with pytest.raises(TokenInvalidError) as excinfo:
            runtime.tokens.refresh(domain.id, third.refresh_token)
        assert excinfo.value.reason == "reuse"

    def test_reuse_leaves_other_logins_alone(self, runtime, domain, user):
        laptop = runtime.tokens.issue(domain.id, user)
        phone = runtime.tokens.issue(domain.id, user)
        runtime.tokens.refresh(domain.id, laptop.refresh_token)
        with pytest.raises(TokenInvalidError):
            runtime.tokens.refresh(domain.id, laptop.refresh_token)

        assert runtime.tokens.refresh(domain.id, phone.refresh_token).refresh_token

    def test_domain_mismatch_fails_without_revoking(self, runtime, domain, other_domain, user):
        pair = runtime.tokens.issue(domain.id, user)
        with pytest.raises(TokenInvalidError) as excinfo:
            runtime.tokens.refresh(other_domain.id, pair.refresh_token)
        assert excinfo.value.reason == "domain_mismatch"
        assert runtime.tokens.refresh(domain.id, pair.refresh_token)

    def test_expired_refresh_token_is_rejected(self, runtime, clock, domain, user):
        pair = runtime.tokens.issue(domain.id, user)
        clock.advance(runtime.tokens.refresh_ttl.total_seconds() + 1)
        with pytest.raises(TokenInvalidError) as excinfo:
            runtime.tokens.refresh(domain.id, pair.refresh_token)
        assert excinfo.value.reason == "expired"

    def test_deactivated_user_cannot_refresh(self, runtime, domain, user):
        pair = runtime.tokens.issue(domain.id, user)
        runtime.store.update_user(domain.id, user.id, UserPatch(is_active=False))
        with pytest.raises(TokenInvalidError):
            runtime.tokens.refresh(domain.id, pair.refresh_token)

    def test_unknown_token_is_rejected(self, runtime, domain):
        with pytest.raises(TokenInvalidError) as excinfo:
            runtime.tokens.refresh(domain.id, "not-a-real-token")
        assert excinfo.value.reason == "unknown"


class TestRevocation:
    def test_revoke_single_session(self, runtime, domain, user):
        first = runtime.tokens.issue(domain.id, user)
        second = runtime.tokens.issue(domain.id, user)

        assert runtime.tokens.revoke(domain.id, user.id, first.refresh_token) == 1
        with pytest.raises(TokenInvalidError):
            runtime.tokens.refresh(domain.id, first.refresh_token)
        assert runtime.tokens.refresh(domain.id, second.refresh_token)

    def test_revoke_all_sessions(self, runtime, domain, user):
        pairs = [runtime.tokens.issue(domain.id, user) for _ in range(3)]
        assert runtime.tokens.revoke(domain.id, user.id) == 3
        for pair in pairs:
            with pytest.raises(TokenInvalidError):
                runtime.tokens.refresh(domain.id, pair.refresh_token)

    def test_cannot_revoke_someone_elses_token(self, runtime, domain, user):
        other = runtime.store.create_user(domain.id, "bob@example.com", "x")
        pair = runtime.tokens.issue(domain.id, user)
        with pytest.raises(TokenInvalidError):
            runtime.tokens.revoke(domain.id, other.id, pair.refresh_token)

    def test_sweep_removes_expired_sessions(self, runtime, clock, domain, user):
        runtime.tokens.issue(domain.id, user)
        clock.advance(runtime.tokens.refresh_ttl.total_seconds() + 1)
        fresh = runtime.tokens.issue(domain.id, user)

        assert runtime.tokens.sweep_expired_sessions() == 1
        assert runtime.tokens.refresh(domain.id, fresh.refresh_token)
