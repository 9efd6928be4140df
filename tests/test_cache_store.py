"""
Tests for the async in-memory cache.

Covers: get/set, lazy TTL expiry, tag invalidation, glob key listing,
batch operations, and pub/sub isolation of failing subscribers.
"""

from unittest.mock import MagicMock

import pytest

from village_guide.cache_store import CacheEntry, CacheStore


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return CacheStore(clock=clock)


# ---------------------------------------------------------------------------
# Key/value
# ---------------------------------------------------------------------------

class TestGetSet:
    @pytest.mark.asyncio
    async def test_missing_key_is_none(self, cache):
        assert await cache.get("nope") is None

    @pytest.mark.asyncio
    async def test_round_trip(self, cache):
        await cache.set("spot:red_001", {"name": "旌义状石碑"})
        assert await cache.get("spot:red_001") == {"name": "旌义状石碑"}

    @pytest.mark.asyncio
    async def test_set_replaces(self, cache):
        await cache.set("k", 1, tags=["a"])
        await cache.set("k", 2)
        assert await cache.get("k") == 2
        assert await cache.delete_by_tags(["a"]) == 0

    @pytest.mark.asyncio
    async def test_delete(self, cache):
        await cache.set("k", 1)
        await cache.delete("k")
        await cache.delete("never-existed")
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_mget_mset(self, cache):
        await cache.mset([("a", 1), ("b", 2)])
        assert await cache.mget(["a", "missing", "b"]) == [1, None, 2]


class TestExpiry:
    @pytest.mark.asyncio
    async def test_alive_until_deadline(self, cache, clock):
        await cache.set("k", "v", ttl=60)
        clock.advance(60)
        assert await cache.get("k") == "v"

    @pytest.mark.asyncio
    async def test_expired_read_evicts(self, cache, clock):
        await cache.set("k", "v", ttl=60)
        clock.advance(61)
        assert len(cache) == 1  # Lazy: still stored until read
        assert await cache.get("k") is None
        assert len(cache) == 0
        assert cache.get_stats()["expirations"] == 1

    @pytest.mark.asyncio
    async def test_no_ttl_never_expires(self, cache, clock):
        await cache.set("k", "v")
        clock.advance(10 ** 9)
        assert await cache.get("k") == "v"

    @pytest.mark.asyncio
    async def test_keys_skips_expired(self, cache, clock):
        await cache.set("query:a", 1, ttl=10)
        await cache.set("query:b", 2, ttl=100)
        clock.advance(50)
        assert await cache.keys("query:*") == ["query:b"]

    def test_entry_is_expired(self):
        entry = CacheEntry(key="k", value=1, expires_at=5.0)
        assert not entry.is_expired(5.0)
        assert entry.is_expired(5.1)
        assert not CacheEntry(key="k", value=1).is_expired(10 ** 9)


class TestTagsAndKeys:
    @pytest.mark.asyncio
    async def test_delete_by_tags_any_overlap(self, cache):
        await cache.set("spots:category:red", [], tags=["spots", "red"])
        await cache.set("spots:category:nature", [], tags=["spots", "nature"])
        await cache.set("search:郑玉指", [], tags=["search"])

        removed = await cache.delete_by_tags(["red", "search"])
        assert removed == 2
        assert await cache.keys() == ["spots:category:nature"]

    @pytest.mark.asyncio
    async def test_keys_glob(self, cache):
        await cache.set("hot:门票价格", 1)
        await cache.set("hot:开放时间", 2)
        await cache.set("query:abc", 3)
        assert sorted(await cache.keys("hot:*")) == ["hot:开放时间", "hot:门票价格"]
        assert len(await cache.keys()) == 3

    @pytest.mark.asyncio
    async def test_clear(self, cache):
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.clear()
        assert len(cache) == 0


# ---------------------------------------------------------------------------
# Pub/sub
# ---------------------------------------------------------------------------

class TestPubSub:
    @pytest.mark.asyncio
    async def test_publish_to_sync_and_async(self, cache):
        received = []

        async def async_handler(msg):
            received.append(("async", msg))

        await cache.subscribe("cache:updated", lambda msg: received.append(("sync", msg)))
        await cache.subscribe("cache:updated", async_handler)

        delivered = await cache.publish("cache:updated", {"type": "update"})
        assert delivered == 2
        assert ("sync", {"type": "update"}) in received
        assert ("async", {"type": "update"}) in received

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_stop_others(self, cache):
        good = MagicMock()
        await cache.subscribe("ch", MagicMock(side_effect=RuntimeError("boom")))
        await cache.subscribe("ch", good)

        delivered = await cache.publish("ch", "hello")
        assert delivered == 1
        good.assert_called_once_with("hello")

    @pytest.mark.asyncio
    async def test_no_subscribers(self, cache):
        assert await cache.publish("quiet", "x") == 0

    @pytest.mark.asyncio
    async def test_unsubscribe(self, cache):
        handler = MagicMock()
        await cache.subscribe("ch", handler)
        await cache.unsubscribe("ch", handler)
        await cache.publish("ch", "x")
        handler.assert_not_called()


class TestStats:
    @pytest.mark.asyncio
    async def test_hit_rate(self, cache):
        await cache.set("k", 1)
        await cache.get("k")
        await cache.get("missing")
        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["size"] == 1
