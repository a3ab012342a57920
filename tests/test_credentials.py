"""Tests for password strength, argon2 hashing and credential verification."""

import pytest
from argon2 import PasswordHasher, Type

from conftest import STRONG_PASSWORD
from tessera.service.credentials import (
    CredentialVerifier,
    PasswordHashing,
    password_problems,
    validate_password_strength,
)
from tessera.service.errors import InvalidCredentialsError, ValidationError
from tessera.storage.models import UserPatch


def _mutations(password: str):
    for index, char in enumerate(password):
        replacement = "x" if char != "x" else "y"
        yield password[:index] + replacement + password[index + 1:]


class TestPasswordStrength:
    def test_strong_password_has_no_problems(self):
        assert password_problems("GoodPass123!@#") == []

    @pytest.mark.parametrize(
        "password, fragment",
        [
            ("Sh0rt!", "at least 12"),
            ("alllowercase123!", "uppercase"),
            ("ALLUPPERCASE123!", "lowercase"),
            ("NoDigitsHere!!!", "digit"),
            ("NoSpecials12345", "must contain one of"),
        ],
    )
    def test_weak_passwords_are_reported(self, password, fragment):
        assert any(fragment in problem for problem in password_problems(password))

    def test_validate_raises_with_problem_list(self):
        with pytest.raises(ValidationError) as excinfo:
            validate_password_strength("weak")
        assert excinfo.value.detail["field"] == "password"
        assert len(excinfo.value.detail["problems"]) >= 3


class TestPasswordHashing:
    def test_hash_is_salted_argon2id(self):
        hashing = PasswordHashing()
        first = hashing.hash(STRONG_PASSWORD)
        second = hashing.hash(STRONG_PASSWORD)
        assert first != second
        assert first.startswith("$argon2id$")
        assert STRONG_PASSWORD not in first

    def test_verify_rejects_missing_or_garbage_hash(self):
        hashing = PasswordHashing()
        assert hashing.verify(None, STRONG_PASSWORD) is False
        assert hashing.verify("not-a-hash", STRONG_PASSWORD) is False


class TestCredentialVerifier:
    def test_correct_password_returns_user(self, runtime, domain, user):
        verified = runtime.credentials.verify(domain.id, "alice@example.com", STRONG_PASSWORD)
        assert verified.id == user.id

    def test_email_lookup_is_case_insensitive(self, runtime, domain, user):
        verified = runtime.credentials.verify(domain.id, "  ALICE@Example.com ", STRONG_PASSWORD)
        assert verified.id == user.id

    def test_every_single_character_mutation_fails(self, runtime, domain, user):
        for mutated in _mutations(STRONG_PASSWORD):
            with pytest.raises(InvalidCredentialsError):
                runtime.credentials.verify(domain.id, user.email, mutated)

    def test_unknown_user_and_wrong_password_look_identical(self, runtime, domain, user):
        with pytest.raises(InvalidCredentialsError) as unknown:
            runtime.credentials.verify(domain.id, "nobody@example.com", STRONG_PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            runtime.credentials.verify(domain.id, user.email, STRONG_PASSWORD + "!")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.error_code == wrong.value.error_code == "invalid_credentials"

    def test_user_from_other_domain_is_unknown(self, runtime, domain, other_domain, user):
        with pytest.raises(InvalidCredentialsError):
            runtime.credentials.verify(other_domain.id, user.email, STRONG_PASSWORD)

    def test_inactive_user_is_rejected(self, runtime, domain, user):
        runtime.store.update_user(domain.id, user.id, UserPatch(is_active=False))
        with pytest.raises(InvalidCredentialsError):
            runtime.credentials.verify(domain.id, user.email, STRONG_PASSWORD)

    def test_outdated_hash_is_upgraded_on_login(self, runtime, domain):
        weak = PasswordHasher(type=Type.ID, time_cost=1, memory_cost=8192, parallelism=1)
        created = runtime.store.create_user(domain.id, "bob@example.com", weak.hash(STRONG_PASSWORD))
        verifier = CredentialVerifier(runtime.store, PasswordHashing())

        verifier.verify(domain.id, "bob@example.com", STRONG_PASSWORD)

        stored = runtime.store.find_user_by_id(domain.id, created.id)
        assert stored.password_hash != created.password_hash
        assert PasswordHashing().verify(stored.password_hash, STRONG_PASSWORD)
