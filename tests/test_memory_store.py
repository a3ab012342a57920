"""Tests for the in-process store and cache."""

from datetime import timedelta

import pytest

from conftest import FakeClock
from tessera.storage.common import SecretCipher
from tessera.storage.errors import ConstraintViolation
from tessera.storage.memory import SWEEP_INTERVAL_SECONDS, MemoryCache, MemoryStore
from tessera.storage.models import MfaFactor, MfaType, Session, UserPatch, utcnow


@pytest.fixture
def store():
    return MemoryStore(SecretCipher("unit-test-key-material"))


@pytest.fixture
def tenant(store):
    return store.create_domain("Acme", "acme")


def test_user_patch_cannot_touch_identity(store, tenant):
    user = store.create_user(tenant.id, "a@x.com", "hash")
    updated = store.update_user(tenant.id, user.id, UserPatch(full_name="Ann", is_verified=True))

    assert updated.full_name == "Ann"
    assert updated.is_verified is True
    assert (updated.id, updated.domain_id, updated.email) == (user.id, tenant.id, "a@x.com")
    assert updated.updated_at is not None


def test_update_in_wrong_domain_is_noop(store, tenant):
    other = store.create_domain("Globex", "globex")
    user = store.create_user(tenant.id, "a@x.com", "hash")
    assert store.update_user(other.id, user.id, UserPatch(full_name="Mallory")) is None
    assert store.find_user_by_id(tenant.id, user.id).full_name is None


def test_returned_objects_are_copies(store, tenant):
    user = store.create_user(tenant.id, "a@x.com", "hash")
    user.is_active = False
    assert store.find_user_by_id(tenant.id, user.id).is_active is True


def test_duplicate_slug_and_email_raise(store, tenant):
    with pytest.raises(ConstraintViolation):
        store.create_domain("Acme again", "acme")
    store.create_user(tenant.id, "a@x.com", "hash")
    with pytest.raises(ConstraintViolation):
        store.create_user(tenant.id, "A@x.com", "hash")


def test_promote_demotes_previous_primary(store, tenant):
    user = store.create_user(tenant.id, "a@x.com", "hash")
    first = store.create_factor(MfaFactor.new(tenant.id, user.id, MfaType.TOTP, secret="AAAA"))
    store.promote_factor(tenant.id, user.id, first.id)
    second = store.create_factor(MfaFactor.new(tenant.id, user.id, MfaType.TOTP, secret="BBBB"))
    store.promote_factor(tenant.id, user.id, second.id)

    primaries = store.list_factors(tenant.id, user.id, primary=True)
    assert [f.id for f in primaries] == [second.id]
    assert primaries[0].secret == "BBBB"


def test_backup_codes_only_consumed_from_primary(store, tenant):
    user = store.create_user(tenant.id, "a@x.com", "hash")
    pending = store.create_factor(
        MfaFactor.new(tenant.id, user.id, MfaType.TOTP, secret="AAAA", backup_codes=["h1"])
    )
    assert store.consume_backup_code(tenant.id, user.id, "h1") is False
    store.promote_factor(tenant.id, user.id, pending.id)
    assert store.consume_backup_code(tenant.id, user.id, "h1") is True
    assert store.consume_backup_code(tenant.id, user.id, "h1") is False


def test_rotate_session_succeeds_once(store, tenant):
    user = store.create_user(tenant.id, "a@x.com", "hash")
    now = utcnow()
    old = store.create_session(Session.new(tenant.id, user.id, "h-old", ttl=timedelta(days=1), now=now))
    first = Session.new(tenant.id, user.id, "h-1", ttl=timedelta(days=1), now=now, family_id=old.family_id)
    second = Session.new(tenant.id, user.id, "h-2", ttl=timedelta(days=1), now=now, family_id=old.family_id)

    assert store.rotate_session(old.id, first, now=now) is True
    assert store.rotate_session(old.id, second, now=now) is False
    assert store.find_session_by_token("h-2") is None
    assert store.find_session_by_token("h-old").replaced_by == first.id


def test_revoke_family_only_touches_that_family(store, tenant):
    user = store.create_user(tenant.id, "a@x.com", "hash")
    now = utcnow()
    a = store.create_session(Session.new(tenant.id, user.id, "a", ttl=timedelta(days=1), now=now))
    b = store.create_session(Session.new(tenant.id, user.id, "b", ttl=timedelta(days=1), now=now))

    assert store.revoke_session_family(tenant.id, a.family_id, now=now) == 1
    assert store.find_session_by_token("a").revoked_at is not None
    assert store.find_session_by_token("b").is_active(now)
    assert b.family_id != a.family_id


async def test_cache_values_expire_with_clock():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    await cache.set("k", "v", 10)
    assert await cache.get("k") == "v"
    clock.advance(10)
    assert await cache.get("k") is None


async def test_cache_getdel_consumes_once():
    cache = MemoryCache()
    await cache.set("k", "v", 60)
    assert await cache.getdel("k") == "v"
    assert await cache.getdel("k") is None


async def test_incr_with_ttl_keeps_first_expiry():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    assert await cache.incr_with_ttl("n", 10) == 1
    clock.advance(6)
    assert await cache.incr_with_ttl("n", 10) == 2
    clock.advance(5)
    assert await cache.incr_with_ttl("n", 10) == 1


async def test_expired_values_are_swept_on_write():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    await cache.set("mfa_code:email:d:u:111111", "1", 10)
    clock.advance(SWEEP_INTERVAL_SECONDS + 1)
    await cache.set("mfa_code:email:d:u:222222", "1", 10)

    assert "mfa_code:email:d:u:111111" not in cache._values
    assert "mfa_code:email:d:u:222222" in cache._values


async def test_expired_throttle_records_are_swept_on_hit():
    cache = MemoryCache()
    await cache.throttle_hit("throttler:default:rl:d:login:10.0.0.1", 1_000, 1_000, 5, 1_000)
    await cache.throttle_hit(
        "throttler:default:rl:d:login:10.0.0.2", 1_000 + SWEEP_INTERVAL_SECONDS * 1000, 1_000, 5, 1_000
    )

    assert list(cache._records) == ["throttler:default:rl:d:login:10.0.0.2"]


async def test_supersede_replaces_pointer_and_drops_stale_keys():
    cache = MemoryCache()
    assert await cache.supersede("ptr", "a", "val:a", "A", 60, stale_prefixes=("val:", "n:")) is None
    await cache.incr_with_ttl("n:a", 60)

    assert await cache.supersede("ptr", "b", "val:b", "B", 60, stale_prefixes=("val:", "n:")) == "a"
    assert await cache.get("ptr") == "b"
    assert await cache.get("val:a") is None
    assert await cache.get("n:a") is None
    assert await cache.get("val:b") == "B"


async def test_set_if_equal_checks_guard():
    cache = MemoryCache()
    await cache.set("ptr", "a", 60)
    assert await cache.set_if_equal("ptr", "b", "k", "v", 60) is False
    assert await cache.get("k") is None
    assert await cache.set_if_equal("ptr", "a", "k", "v", 60) is True
    assert await cache.get("k") == "v"
