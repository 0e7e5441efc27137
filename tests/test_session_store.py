"""Session store behaviour, run against the memory store and, when reachable, Redis."""

import os
import uuid
from datetime import timedelta

import pytest
from redis import Redis
from redis.exceptions import RedisError

from tessera.storage.models import SessionRecord
from tessera.storage.redis_cache import RedisSessionStore
from tessera.storage.sessions import (
    REVOKED_ADMIN,
    REVOKED_LOGOUT,
    REVOKED_ROTATED,
    MemorySessionStore,
    ttl_until,
)

from conftest import APP_A, APP_B, ManualClock

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/1")


def _redis_available() -> bool:
    client = Redis.from_url(REDIS_URL, socket_connect_timeout=0.5, socket_timeout=0.5)
    try:
        client.ping()
        return True
    except (RedisError, OSError):
        return False
    finally:
        client.close()


@pytest.fixture(params=["memory", "redis"])
def store_factory(request):
    def build():
        if request.param == "memory":
            return MemorySessionStore(clock=ManualClock())
        if not _redis_available():
            pytest.skip("redis not reachable")
        # Unique prefix per test so runs never see each other's keys
        return RedisSessionStore(REDIS_URL, prefix=f"tessera-test-{uuid.uuid4().hex}")

    return build


def _record(user_id="user-1", app_id=APP_A, family_id=None):
    clock = ManualClock()
    now = clock.now()
    return SessionRecord.new(user_id, app_id, now, now + timedelta(hours=1), family_id=family_id)


class TestSessionRecords:
    async def test_put_get_delete(self, store_factory):
        store = store_factory()
        await store.open()
        try:
            record = _record()
            assert await store.put_session(record, 3600)
            loaded = await store.get_session(APP_A, record.token_id)
            assert loaded.token_id == record.token_id
            assert loaded.family_id == record.family_id
            assert (await store.delete_session(APP_A, record.token_id)).token_id == record.token_id
            assert await store.delete_session(APP_A, record.token_id) is None
        finally:
            await store.close()

    async def test_put_is_set_if_absent(self, store_factory):
        store = store_factory()
        await store.open()
        try:
            record = _record()
            assert await store.put_session(record, 3600)
            assert not await store.put_session(record, 3600)
        finally:
            await store.close()

    async def test_keys_are_tenant_scoped(self, store_factory):
        store = store_factory()
        await store.open()
        try:
            record = _record(app_id=APP_A)
            await store.put_session(record, 3600)
            assert await store.get_session(APP_B, record.token_id) is None
        finally:
            await store.close()


class TestRotation:
    async def test_rotate_replaces_record_and_marks_old(self, store_factory):
        store = store_factory()
        await store.open()
        try:
            old = _record()
            await store.put_session(old, 3600)
            new = _record(family_id=old.family_id)
            assert await store.rotate_session(APP_A, old.token_id, new, 3600, 600)
            assert await store.get_session(APP_A, old.token_id) is None
            assert (await store.get_session(APP_A, new.token_id)).token_id == new.token_id
            assert await store.get_revocation(APP_A, old.token_id) == REVOKED_ROTATED
        finally:
            await store.close()

    async def test_second_rotation_of_same_token_fails(self, store_factory):
        store = store_factory()
        await store.open()
        try:
            old = _record()
            await store.put_session(old, 3600)
            first = _record(family_id=old.family_id)
            second = _record(family_id=old.family_id)
            assert await store.rotate_session(APP_A, old.token_id, first, 3600, 600)
            assert not await store.rotate_session(APP_A, old.token_id, second, 3600, 600)
            assert await store.get_session(APP_A, second.token_id) is None
        finally:
            await store.close()

    async def test_rotation_refused_for_revoked_family(self, store_factory):
        store = store_factory()
        await store.open()
        try:
            old = _record()
            await store.put_session(old, 3600)
            assert await store.revoke_family(APP_A, old.family_id, 3600) == 1
            assert await store.is_family_revoked(APP_A, old.family_id)
            new = _record(family_id=old.family_id)
            assert not await store.rotate_session(APP_A, old.token_id, new, 3600, 600)
        finally:
            await store.close()


class TestRevocation:
    async def test_revoke_token_records_reason(self, store_factory):
        store = store_factory()
        await store.open()
        try:
            await store.revoke_token(APP_A, "token-1", 60, REVOKED_LOGOUT)
            assert await store.get_revocation(APP_A, "token-1") == REVOKED_LOGOUT
            assert await store.get_revocation(APP_B, "token-1") is None
        finally:
            await store.close()

    async def test_revoke_user_sessions(self, store_factory):
        store = store_factory()
        await store.open()
        try:
            first = _record(user_id="user-9")
            second = _record(user_id="user-9")
            other = _record(user_id="user-10")
            for record in (first, second, other):
                await store.put_session(record, 3600)
            assert await store.revoke_user_sessions(APP_A, "user-9", 3600) == 2
            assert await store.get_session(APP_A, first.token_id) is None
            assert await store.get_session(APP_A, second.token_id) is None
            assert await store.is_family_revoked(APP_A, first.family_id)
            assert await store.get_revocation(APP_A, second.token_id) == REVOKED_ADMIN
            assert await store.get_session(APP_A, other.token_id) is not None
        finally:
            await store.close()


class TestSecondFactorState:
    async def test_pending_secret_is_single_read(self, store_factory):
        store = store_factory()
        await store.open()
        try:
            await store.set_pending_secret(APP_A, "user-1", "SECRET", 600)
            assert await store.pop_pending_secret(APP_A, "user-1") == "SECRET"
            assert await store.pop_pending_secret(APP_A, "user-1") is None
        finally:
            await store.close()

    async def test_pending_auth_lifecycle(self, store_factory):
        store = store_factory()
        await store.open()
        try:
            assert await store.put_pending_auth(APP_A, "p-1", "user-1", 300)
            assert not await store.put_pending_auth(APP_A, "p-1", "user-2", 300)
            assert await store.get_pending_auth(APP_A, "p-1") == "user-1"
            assert await store.pop_pending_auth(APP_A, "p-1") == "user-1"
            assert await store.pop_pending_auth(APP_A, "p-1") is None
        finally:
            await store.close()

    async def test_email_code_compare_and_delete(self, store_factory):
        store = store_factory()
        await store.open()
        try:
            await store.set_email_code(APP_A, "user-1", "digest-1", 300)
            assert not await store.consume_email_code(APP_A, "user-1", "digest-2")
            assert not await store.consume_email_code(APP_B, "user-1", "digest-1")
            assert await store.consume_email_code(APP_A, "user-1", "digest-1")
            assert not await store.consume_email_code(APP_A, "user-1", "digest-1")
        finally:
            await store.close()

    async def test_claim_once(self, store_factory):
        store = store_factory()
        await store.open()
        try:
            assert await store.claim_once(APP_A, "totp:user-1:42", 90)
            assert not await store.claim_once(APP_A, "totp:user-1:42", 90)
            assert await store.claim_once(APP_B, "totp:user-1:42", 90)
        finally:
            await store.close()

    async def test_lockout_after_max_attempts(self, store_factory):
        store = store_factory()
        await store.open()
        try:
            for attempt in range(1, 3):
                assert await store.record_failed_attempt(APP_A, "user-1", 3, 300) == (
                    False,
                    attempt,
                )
            assert await store.record_failed_attempt(APP_A, "user-1", 3, 300) == (True, 3)
            assert await store.is_locked_out(APP_A, "user-1")
            assert await store.record_failed_attempt(APP_A, "user-1", 3, 300) == (True, -1)
        finally:
            await store.close()

    async def test_clear_failed_attempts(self, store_factory):
        store = store_factory()
        await store.open()
        try:
            await store.record_failed_attempt(APP_A, "user-1", 3, 300)
            await store.record_failed_attempt(APP_A, "user-1", 3, 300)
            await store.clear_failed_attempts(APP_A, "user-1")
            assert await store.record_failed_attempt(APP_A, "user-1", 3, 300) == (False, 1)
        finally:
            await store.close()


class TestMemoryExpiry:
    async def test_entries_expire_with_clock(self):
        clock = ManualClock()
        store = MemorySessionStore(clock=clock)
        record = _record()
        await store.put_session(record, 60)
        await store.revoke_token(APP_A, "token-1", 60, REVOKED_LOGOUT)
        clock.advance(seconds=61)
        assert await store.get_session(APP_A, record.token_id) is None
        assert await store.get_revocation(APP_A, "token-1") is None

    async def test_lockout_expires(self):
        clock = ManualClock()
        store = MemorySessionStore(clock=clock)
        for _ in range(3):
            await store.record_failed_attempt(APP_A, "user-1", 3, 300)
        assert await store.is_locked_out(APP_A, "user-1")
        clock.advance(seconds=301)
        assert not await store.is_locked_out(APP_A, "user-1")


def test_ttl_until_is_at_least_one_second():
    clock = ManualClock()
    now = clock.now()
    assert ttl_until(now + timedelta(minutes=2), now) == 120
    assert ttl_until(now - timedelta(minutes=2), now) == 1


def test_redis_keys_share_the_tenant_hash_tag():
    store = RedisSessionStore(REDIS_URL)
    prefix = store._tenant_prefix(APP_A)
    assert "{" + APP_A + "}" in prefix
    for kind in ("session", "revoked", "family", "family_revoked", "user_sessions"):
        assert store._key(APP_A, kind, "token-1").startswith(prefix + ":")
