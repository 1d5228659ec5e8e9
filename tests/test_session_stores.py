"""Session, refresh-token and blacklist stores over the in-memory KV backend."""

import json

import pytest

from gamcauth.storage.blacklist import BlacklistStore
from gamcauth.storage.memory_kv import MemoryKeyValueStore
from gamcauth.storage.models import Role, SessionRecord, User
from gamcauth.storage.sessions import RefreshTokenStore, SessionStore


class ManualClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def timed_kv(clock):
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def user():
    return User(
        id="u-1",
        email="carla.mendez@gamc.gov.bo",
        first_name="Carla",
        last_name="Méndez",
        role=Role.INPUT,
        org_unit_id=3,
    )


class TestSessionStore:
    async def test_create_and_get_round_trip(self, kv, user):
        sessions = SessionStore(kv)
        record = SessionRecord.new(user, ip_address="10.0.0.5", user_agent="pytest")
        await sessions.create(record.session_id, record, 3600)

        loaded = await sessions.get(record.session_id)
        assert loaded == record
        assert loaded.last_activity == loaded.created_at

    async def test_session_expires_with_ttl(self, timed_kv, clock, user):
        sessions = SessionStore(timed_kv)
        record = SessionRecord.new(user)
        await sessions.create(record.session_id, record, 60)

        clock.now += 60
        assert await sessions.get(record.session_id) is None

    async def test_save_refreshes_ttl(self, timed_kv, clock, user):
        sessions = SessionStore(timed_kv)
        record = SessionRecord.new(user)
        await sessions.create(record.session_id, record, 60)

        clock.now += 50
        await sessions.save(record.session_id, record, 60)
        clock.now += 50
        assert await sessions.get(record.session_id) is not None

    async def test_update_never_recreates_a_deleted_session(self, kv, user):
        sessions = SessionStore(kv)
        record = SessionRecord.new(user)
        await sessions.create(record.session_id, record, 600)
        assert await sessions.update(record.session_id, record, 600) is True

        await sessions.delete_all_for_user(user.id)

        assert await sessions.update(record.session_id, record, 600) is False
        assert await sessions.get(record.session_id) is None
        assert await sessions.list_for_user(user.id) == []

    async def test_corrupt_record_reads_as_missing(self, kv):
        await kv.set("session:broken", "{not json", ttl_seconds=60)
        assert await SessionStore(kv).get("broken") is None

        await kv.set("session:partial", json.dumps({"sessionId": "partial"}), ttl_seconds=60)
        assert await SessionStore(kv).get("partial") is None

    async def test_delete_removes_index_entry(self, kv, user):
        sessions = SessionStore(kv)
        record = SessionRecord.new(user)
        await sessions.create(record.session_id, record, 60)

        assert await sessions.delete(record.session_id, user_id=user.id) is True
        assert await sessions.list_for_user(user.id) == []
        assert await sessions.delete(record.session_id, user_id=user.id) is False

    async def test_delete_all_for_user(self, kv, user):
        sessions = SessionStore(kv)
        records = [SessionRecord.new(user) for _ in range(3)]
        for record in records:
            await sessions.create(record.session_id, record, 600)
        other = User(id="u-2", email="otro@gamc.gov.bo", first_name="O", last_name="T")
        other_record = SessionRecord.new(other)
        await sessions.create(other_record.session_id, other_record, 600)

        assert await sessions.delete_all_for_user(user.id) == 3
        for record in records:
            assert await sessions.get(record.session_id) is None
        assert await sessions.get(other_record.session_id) is not None

    async def test_delete_all_can_spare_current_session(self, kv, user):
        sessions = SessionStore(kv)
        keep, drop = SessionRecord.new(user), SessionRecord.new(user)
        for record in (keep, drop):
            await sessions.create(record.session_id, record, 600)

        removed = await sessions.delete_all_for_user(user.id, except_session_id=keep.session_id)

        assert removed == 1
        assert await sessions.get(keep.session_id) is not None
        assert [s.session_id for s in await sessions.list_for_user(user.id)] == [keep.session_id]

    async def test_delete_all_for_user_without_sessions(self, kv):
        assert await SessionStore(kv).delete_all_for_user("nobody") == 0


class TestRefreshTokenStore:
    async def test_only_latest_jti_matches(self, kv):
        refresh = RefreshTokenStore(kv)
        await refresh.store("u-1", "s-1", "jti-1", 600)
        await refresh.store("u-1", "s-1", "jti-2", 600)

        assert await refresh.current("u-1", "s-1") == "jti-2"
        assert await refresh.matches("u-1", "s-1", "jti-2")
        assert not await refresh.matches("u-1", "s-1", "jti-1")

    async def test_consume_succeeds_once_per_jti(self, kv):
        refresh = RefreshTokenStore(kv)
        await refresh.store("u-1", "s-1", "jti-1", 600)

        assert await refresh.consume("u-1", "s-1", "jti-0") is False
        assert await refresh.consume("u-1", "s-1", "jti-1") is True
        assert await refresh.consume("u-1", "s-1", "jti-1") is False
        assert await refresh.current("u-1", "s-1") is None
        assert await refresh.consume("u-1", "s-1", "") is False

    async def test_delete_all_for_user(self, kv):
        refresh = RefreshTokenStore(kv)
        await refresh.store("u-1", "s-1", "a", 600)
        await refresh.store("u-1", "s-2", "b", 600)
        await refresh.store("u-2", "s-3", "c", 600)

        assert await refresh.delete_all_for_user("u-1") == 2
        assert await refresh.current("u-1", "s-1") is None
        assert await refresh.current("u-2", "s-3") == "c"


class TestBlacklistStore:
    async def test_revoked_until_ttl_elapses(self, timed_kv, clock):
        blacklist = BlacklistStore(timed_kv)
        assert await blacklist.revoke("jti-1", 900) is True
        assert await blacklist.is_revoked("jti-1")

        clock.now += 899
        assert await blacklist.is_revoked("jti-1")
        clock.now += 1
        assert not await blacklist.is_revoked("jti-1")

    @pytest.mark.parametrize("ttl", [0, -5])
    async def test_expired_token_is_not_written(self, kv, ttl):
        blacklist = BlacklistStore(kv)
        assert await blacklist.revoke("jti-old", ttl) is False
        assert not await kv.exists("blacklist:jti-old")

    async def test_empty_jti_is_never_revoked(self, kv):
        blacklist = BlacklistStore(kv)
        assert await blacklist.revoke("", 60) is False
        assert await blacklist.is_revoked("") is False
