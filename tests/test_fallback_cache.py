"""Tests for the Redis-with-memory-fallback circuit breaker."""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from lettera.storage.fallback import FallbackCache
from lettera.storage.memory_cache import MemoryCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FlakyRemote(MemoryCache):
    """A MemoryCache standing in for Redis that can be switched off."""

    def __init__(self):
        super().__init__()
        self.down = False
        self.calls = 0

    def _check(self):
        self.calls += 1
        if self.down:
            raise RedisConnectionError("connection refused")

    async def open(self):
        self._check()

    async def ping(self):
        return not self.down

    async def set(self, key, value, ttl=None):
        self._check()
        return await super().set(key, value, ttl)

    async def get(self, key):
        self._check()
        return await super().get(key)

    async def delete(self, key):
        self._check()
        return await super().delete(key)

    async def delete_if_equals(self, key, value):
        self._check()
        return await super().delete_if_equals(key, value)

    async def add_member(self, key, member, ttl=None, *, replace=False):
        self._check()
        return await super().add_member(key, member, ttl, replace=replace)

    async def is_member(self, key, member):
        self._check()
        return await super().is_member(key, member)

    async def incr(self, key, ttl):
        self._check()
        return await super().incr(key, ttl)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote():
    return FlakyRemote()


@pytest.fixture
def cache(remote, clock):
    return FallbackCache(remote, MemoryCache(), retry_cooldown=30.0, clock=clock)


class TestHealthyRemote:
    @pytest.mark.asyncio
    async def test_calls_go_to_remote(self, cache, remote):
        await cache.set("k", "v", 60)
        assert await remote.get("k") == "v"
        assert await cache.fallback.get("k") is None
        assert cache.backend == "redis"
        assert cache.degraded is False


class TestDegradation:
    """A failing remote never surfaces an error to callers."""

    @pytest.mark.asyncio
    async def test_failure_replays_on_fallback(self, cache, remote):
        remote.down = True
        assert await cache.set("email:code:a@x.com", "123456", 600) is True
        assert await cache.get("email:code:a@x.com") == "123456"
        assert await cache.delete_if_equals("email:code:a@x.com", "123456") is True
        assert cache.degraded is True
        assert cache.backend == "memory"

    @pytest.mark.asyncio
    async def test_same_contract_in_both_modes(self, cache, remote):
        async def exercise():
            await cache.add_member("user:refresh_token:u1", "t1", 60)
            await cache.add_member("user:refresh_token:u1", "t2", 60, replace=True)
            return (
                await cache.is_member("user:refresh_token:u1", "t1"),
                await cache.is_member("user:refresh_token:u1", "t2"),
                await cache.incr("rate:verify:x", 60),
                await cache.incr("rate:verify:x", 60),
            )

        healthy = await exercise()
        await cache.delete("user:refresh_token:u1")
        await cache.delete("rate:verify:x")
        remote.down = True
        degraded = await exercise()
        assert healthy == degraded == (False, True, 1, 2)

    @pytest.mark.asyncio
    async def test_breaker_skips_remote_during_cooldown(self, cache, remote, clock):
        remote.down = True
        await cache.set("k", "v", 60)
        calls = remote.calls
        clock.now = 29.0
        await cache.get("k")
        assert remote.calls == calls

    @pytest.mark.asyncio
    async def test_remote_retried_after_cooldown(self, cache, remote, clock):
        remote.down = True
        await cache.set("k", "v", 60)
        remote.down = False
        clock.now = 30.0
        await cache.set("k2", "v2", 60)
        assert await remote.get("k2") == "v2"
        assert cache.degraded is False

    @pytest.mark.asyncio
    async def test_ping_does_not_change_breaker(self, cache, remote):
        remote.down = True
        assert await cache.ping() is False
        assert cache.degraded is False
        remote.down = False
        await cache.set("k", "v", 60)
        remote.down = True
        await cache.get("k")
        remote.down = False
        assert await cache.ping() is True
        assert cache.degraded is True

    @pytest.mark.asyncio
    async def test_open_failure_trips_breaker(self, cache, remote):
        remote.down = True
        await cache.open()
        assert cache.degraded is True


class TestMemoryOnly:
    @pytest.mark.asyncio
    async def test_no_remote_is_permanently_degraded(self):
        cache = FallbackCache(None)
        await cache.open()
        assert cache.degraded is True
        assert await cache.ping() is False
        await cache.set("k", "v", 60)
        assert await cache.get("k") == "v"
        await cache.close()


class TestRecovery:
    """Writes made during an outage reach the remote before it serves again."""

    @pytest.mark.asyncio
    async def test_delete_during_outage_removes_remote_copy(self, cache, remote, clock):
        await cache.add_member("user:refresh_token:u1", "t1", 600, replace=True)
        remote.down = True
        await cache.delete("user:refresh_token:u1")
        remote.down = False
        clock.now = 31.0
        assert await cache.is_member("user:refresh_token:u1", "t1") is False
        assert await remote.list_members("user:refresh_token:u1") == set()

    @pytest.mark.asyncio
    async def test_overwrite_during_outage_replaces_remote_value(self, cache, remote, clock):
        await cache.set("email:code:a@x.com", "111111", 600)
        remote.down = True
        await cache.set("email:code:a@x.com", "222222", 600)
        remote.down = False
        clock.now = 31.0
        assert await cache.get("email:code:a@x.com") == "222222"
        assert await cache.fallback.get("email:code:a@x.com") is None

    @pytest.mark.asyncio
    async def test_replaced_set_drops_remote_members(self, cache, remote, clock):
        await cache.add_member("user:refresh_token:u1", "old", 600, replace=True)
        remote.down = True
        await cache.add_member("user:refresh_token:u1", "new", 600, replace=True)
        remote.down = False
        clock.now = 31.0
        assert await cache.list_members("user:refresh_token:u1") == {"new"}

    @pytest.mark.asyncio
    async def test_failed_compare_and_delete_leaves_remote_alone(self, cache, remote, clock):
        await cache.set("email:code:a@x.com", "111111", 600)
        remote.down = True
        assert await cache.delete_if_equals("email:code:a@x.com", "111111") is False
        remote.down = False
        clock.now = 31.0
        assert await cache.get("email:code:a@x.com") == "111111"

    @pytest.mark.asyncio
    async def test_resync_failure_keeps_pending_writes(self, cache, remote, clock):
        await cache.set("k", "old", 600)
        remote.down = True
        await cache.delete("k")
        clock.now = 31.0
        # Still down at the retry: the tombstone survives for the next attempt
        assert await cache.get("k") is None
        assert cache.degraded is True
        remote.down = False
        clock.now = 62.0
        assert await cache.get("k") is None
        assert await remote.get("k") is None

    @pytest.mark.asyncio
    async def test_memory_only_mode_tracks_nothing(self):
        cache = FallbackCache(None)
        await cache.delete("k")
        await cache.set("k", "v", 60)
        assert cache._pending == {}
