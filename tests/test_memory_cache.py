"""Tests for the in-process ephemeral store."""

import pytest

from lettera.storage.memory_cache import MemoryCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


class TestStringKeys:
    """set/get/delete with TTLs."""

    @pytest.mark.asyncio
    async def test_set_get_delete(self, cache):
        assert await cache.set("k", "v", 10) is True
        assert await cache.get("k") == "v"
        assert await cache.delete("k") is True
        assert await cache.get("k") is None
        assert await cache.delete("k") is False

    @pytest.mark.asyncio
    async def test_value_expires_after_ttl(self, cache, clock):
        await cache.set("email:code:a@x.com", "123456", 600)
        clock.advance(599)
        assert await cache.get("email:code:a@x.com") == "123456"
        clock.advance(1)
        assert await cache.get("email:code:a@x.com") is None

    @pytest.mark.asyncio
    async def test_set_overwrites_and_resets_ttl(self, cache, clock):
        await cache.set("k", "old", 10)
        clock.advance(8)
        await cache.set("k", "new", 10)
        clock.advance(8)
        assert await cache.get("k") == "new"

    @pytest.mark.asyncio
    async def test_no_ttl_never_expires(self, cache, clock):
        await cache.set("k", "v")
        clock.advance(10**9)
        assert await cache.get("k") == "v"

    @pytest.mark.asyncio
    async def test_non_positive_ttl_rejected(self, cache):
        with pytest.raises(ValueError):
            await cache.set("k", "v", 0)

    @pytest.mark.asyncio
    async def test_delete_if_equals(self, cache):
        await cache.set("k", "123456", 60)
        assert await cache.delete_if_equals("k", "654321") is False
        assert await cache.get("k") == "123456"
        assert await cache.delete_if_equals("k", "123456") is True
        assert await cache.delete_if_equals("k", "123456") is False


class TestSetKeys:
    """Refresh-token sets."""

    @pytest.mark.asyncio
    async def test_add_and_list_members(self, cache):
        assert await cache.add_member("s", "a", 60) is True
        assert await cache.add_member("s", "b", 60) is True
        assert await cache.add_member("s", "a", 60) is False
        assert await cache.list_members("s") == {"a", "b"}
        assert await cache.is_member("s", "a") is True
        assert await cache.is_member("s", "c") is False

    @pytest.mark.asyncio
    async def test_replace_drops_previous_members(self, cache):
        await cache.add_member("s", "old", 60)
        await cache.add_member("s", "new", 60, replace=True)
        assert await cache.list_members("s") == {"new"}

    @pytest.mark.asyncio
    async def test_adding_member_resets_ttl(self, cache, clock):
        await cache.add_member("s", "a", 100)
        clock.advance(90)
        await cache.add_member("s", "b", 100)
        clock.advance(90)
        assert await cache.list_members("s") == {"a", "b"}
        clock.advance(10)
        assert await cache.list_members("s") == set()

    @pytest.mark.asyncio
    async def test_missing_set_is_empty(self, cache):
        assert await cache.list_members("nope") == set()
        assert await cache.is_member("nope", "x") is False

    @pytest.mark.asyncio
    async def test_type_mismatch(self, cache):
        await cache.set("k", "v")
        with pytest.raises(TypeError):
            await cache.add_member("k", "m")


class TestCounters:
    @pytest.mark.asyncio
    async def test_fixed_window(self, cache, clock):
        assert await cache.incr("rate:verify:x", 60) == 1
        clock.advance(30)
        assert await cache.incr("rate:verify:x", 60) == 2
        clock.advance(30)
        # Window started at the first hit, not the latest
        assert await cache.incr("rate:verify:x", 60) == 1


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_purge_expired(self, cache, clock):
        await cache.set("short", "v", 5)
        await cache.set("long", "v", 50)
        await cache.set("forever", "v")
        clock.advance(10)
        assert cache.purge_expired() == 1
        assert len(cache) == 2

    @pytest.mark.asyncio
    async def test_writes_sweep_keys_never_read_again(self, cache, clock):
        for i in range(1000):
            await cache.set(f"rate:verify:{i}", "1", 1)
        assert len(cache) == 1000
        clock.advance(cache.purge_interval)
        await cache.incr("rate:verify:fresh", 60)
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_sweep_waits_for_interval(self, cache, clock):
        await cache.set("short", "v", 1)
        clock.advance(5)
        await cache.set("other", "v", 60)
        assert len(cache) == 2

    @pytest.mark.asyncio
    async def test_snapshot_reports_remaining_ttl(self, cache, clock):
        await cache.set("k", "v", 60)
        await cache.add_member("s", "m")
        clock.advance(20.5)
        assert cache.snapshot("k") == ("v", 40)
        assert cache.snapshot("s") == ({"m"}, None)
        assert cache.snapshot("missing") is None
        cache.discard("k")
        assert cache.snapshot("k") is None

    @pytest.mark.asyncio
    async def test_lifecycle_is_noop(self, cache):
        await cache.open()
        assert await cache.ping() is True
        await cache.close()
