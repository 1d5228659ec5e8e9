"""Key-value backends: the in-memory store and the Redis client contract."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from gamcauth.storage.kv import KeyValueStore
from gamcauth.storage.memory_kv import MemoryKeyValueStore
from gamcauth.storage.redis_cache import RedisKeyValueStore


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def memory_kv(clock):
    return MemoryKeyValueStore(clock=clock)


class TestMemoryKeyValueStore:
    def test_satisfies_protocol(self, memory_kv):
        assert isinstance(memory_kv, KeyValueStore)

    async def test_values_expire_with_ttl(self, memory_kv, clock):
        await memory_kv.set("k", "v", ttl_seconds=10)
        assert await memory_kv.get("k") == "v"
        assert await memory_kv.ttl("k") == 10

        clock.now += 10
        assert await memory_kv.get("k") is None
        assert not await memory_kv.exists("k")

    async def test_value_without_ttl_persists(self, memory_kv, clock):
        await memory_kv.set("k", "v")
        clock.now += 10_000
        assert await memory_kv.get("k") == "v"
        assert await memory_kv.ttl("k") is None

    async def test_delete_counts_existing_keys(self, memory_kv):
        await memory_kv.set("a", "1")
        await memory_kv.add_to_set("b", "x")
        assert await memory_kv.delete("a", "b", "missing") == 2

    async def test_incr_window_starts_window_on_first_hit(self, memory_kv, clock):
        assert await memory_kv.incr_window("rate", 60) == (1, 60)
        clock.now += 20
        assert await memory_kv.incr_window("rate", 60) == (2, 40)

        clock.now += 40
        assert await memory_kv.incr_window("rate", 60) == (1, 60)

    async def test_sets_and_removal(self, memory_kv):
        await memory_kv.add_to_set("idx", "s1", ttl_seconds=30)
        await memory_kv.add_to_set("idx", "s2", ttl_seconds=30)
        assert await memory_kv.set_members("idx") == {"s1", "s2"}

        assert await memory_kv.remove_from_set("idx", "s1", "nope") == 1
        assert await memory_kv.set_members("idx") == {"s2"}
        await memory_kv.remove_from_set("idx", "s2")
        assert not await memory_kv.exists("idx")

    async def test_replace_only_overwrites_live_keys(self, memory_kv, clock):
        assert await memory_kv.replace("session:1", "v1", ttl_seconds=10) is False
        assert await memory_kv.get("session:1") is None

        await memory_kv.set("session:1", "v1", ttl_seconds=10)
        assert await memory_kv.replace("session:1", "v2", ttl_seconds=30) is True
        assert await memory_kv.get("session:1") == "v2"
        assert await memory_kv.ttl("session:1") == 30

        clock.now += 30
        assert await memory_kv.replace("session:1", "v3", ttl_seconds=30) is False

    async def test_compare_and_delete_consumes_once(self, memory_kv):
        await memory_kv.set("refresh:u:s", "jti-1", ttl_seconds=60)

        assert await memory_kv.compare_and_delete("refresh:u:s", "jti-0") is False
        assert await memory_kv.get("refresh:u:s") == "jti-1"
        assert await memory_kv.compare_and_delete("refresh:u:s", "jti-1") is True
        assert await memory_kv.compare_and_delete("refresh:u:s", "jti-1") is False
        assert not await memory_kv.exists("refresh:u:s")

    async def test_writes_sweep_keys_nobody_reads_again(self, memory_kv, clock):
        memory_kv.SWEEP_EVERY = 4
        await memory_kv.set("blacklist:old", "revoked", ttl_seconds=5)
        await memory_kv.incr_window("rate:login:10.0.0.1", 5)
        clock.now += 5

        for n in range(4):
            await memory_kv.set(f"fresh:{n}", "v", ttl_seconds=60)

        assert "blacklist:old" not in memory_kv._values
        assert "rate:login:10.0.0.1" not in memory_kv._values
        assert set(memory_kv._expiry) == {f"fresh:{n}" for n in range(4)}

    async def test_set_members_returns_a_copy(self, memory_kv):
        await memory_kv.add_to_set("idx", "s1")
        members = await memory_kv.set_members("idx")
        members.add("intruder")
        assert await memory_kv.set_members("idx") == {"s1"}


@pytest.fixture
def redis_kv():
    kv = RedisKeyValueStore("redis://localhost:6379/15")
    kv.client = AsyncMock()
    kv._incr_window = AsyncMock(return_value=[3, 42])
    kv._compare_and_delete = AsyncMock(return_value=1)
    return kv


class TestRedisKeyValueStore:
    """Redis calls issued by the backend, checked against a mocked client."""

    async def test_set_with_ttl_uses_ex(self, redis_kv):
        await redis_kv.set("session:1", "{}", ttl_seconds=0)
        redis_kv.client.set.assert_awaited_once_with("session:1", "{}", ex=1)

    async def test_set_without_ttl(self, redis_kv):
        await redis_kv.set("k", "v")
        redis_kv.client.set.assert_awaited_once_with("k", "v")

    async def test_ttl_maps_sentinels_to_none(self, redis_kv):
        redis_kv.client.ttl.return_value = -2
        assert await redis_kv.ttl("missing") is None
        redis_kv.client.ttl.return_value = -1
        assert await redis_kv.ttl("forever") is None
        redis_kv.client.ttl.return_value = 17
        assert await redis_kv.ttl("k") == 17

    async def test_incr_window_runs_script(self, redis_kv):
        assert await redis_kv.incr_window("rate:x", 300) == (3, 42)
        redis_kv._incr_window.assert_awaited_once_with(keys=["rate:x"], args=[300])

    async def test_add_to_set_pipelines_expire(self, redis_kv):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[1, True])
        redis_kv.client.pipeline = MagicMock(return_value=pipe)

        await redis_kv.add_to_set("user_sessions:u1", "s1", ttl_seconds=600)

        pipe.sadd.assert_called_once_with("user_sessions:u1", "s1")
        pipe.expire.assert_called_once_with("user_sessions:u1", 600)
        pipe.execute.assert_awaited_once()

    async def test_delete_without_keys_skips_round_trip(self, redis_kv):
        assert await redis_kv.delete() == 0
        redis_kv.client.delete.assert_not_awaited()

    async def test_set_members_and_exists(self, redis_kv):
        redis_kv.client.smembers.return_value = {"a", "b"}
        redis_kv.client.exists.return_value = 1
        assert await redis_kv.set_members("idx") == {"a", "b"}
        assert await redis_kv.exists("idx") is True

    async def test_replace_uses_xx(self, redis_kv):
        redis_kv.client.set.return_value = None
        assert await redis_kv.replace("session:1", "{}", ttl_seconds=600) is False
        redis_kv.client.set.assert_awaited_once_with("session:1", "{}", ex=600, xx=True)

        redis_kv.client.set.return_value = True
        assert await redis_kv.replace("session:1", "{}") is True

    async def test_compare_and_delete_runs_script(self, redis_kv):
        assert await redis_kv.compare_and_delete("refresh:u:s", "jti-1") is True
        redis_kv._compare_and_delete.assert_awaited_once_with(
            keys=["refresh:u:s"], args=["jti-1"]
        )

        redis_kv._compare_and_delete.return_value = 0
        assert await redis_kv.compare_and_delete("refresh:u:s", "jti-1") is False
