"""Tests for the single-flight keyed cache."""

import asyncio

import pytest

from topickeys.cache import SingleFlightCache
from topickeys.metrics import metrics


class Resolver:
    """Resolver that counts calls and can be told to fail."""

    def __init__(self, fail_times=0):
        self.calls = 0
        self.fail_times = fail_times

    async def __call__(self, raw):
        self.calls += 1
        await asyncio.sleep(0.01)
        if self.calls <= self.fail_times:
            raise RuntimeError("resolution failed")
        return raw.upper()


class TestPut:
    def test_first_write_wins(self):
        cache = SingleFlightCache("test")
        assert cache.put("t", "a")
        assert not cache.put("t", "b")
        assert not cache.put_resolved("t", "B")

    @pytest.mark.asyncio
    async def test_value_derives_from_first_put(self):
        cache = SingleFlightCache("test")
        cache.put("t", "a")
        cache.put("t", "b")
        assert await cache.get("t", Resolver()) == "A"

    @pytest.mark.asyncio
    async def test_put_resolved_skips_resolution(self):
        cache = SingleFlightCache("test")
        resolver = Resolver()
        cache.put_resolved("t", "ready")
        assert await cache.get("t", resolver) == "ready"
        assert resolver.calls == 0


class TestGet:
    @pytest.mark.asyncio
    async def test_missing_key(self):
        with pytest.raises(KeyError):
            await SingleFlightCache("test").get("nope", Resolver())

    @pytest.mark.asyncio
    async def test_concurrent_gets_resolve_once(self):
        cache = SingleFlightCache("test")
        resolver = Resolver()
        cache.put("t", "a")

        results = await asyncio.gather(*(cache.get("t", resolver) for _ in range(5)))

        assert results == ["A"] * 5
        assert resolver.calls == 1
        assert cache.is_resolved("t")

    @pytest.mark.asyncio
    async def test_pending_while_resolving(self):
        cache = SingleFlightCache("test")
        cache.put("t", "a")
        task = asyncio.ensure_future(cache.get("t", Resolver()))
        await asyncio.sleep(0)
        assert cache.is_pending("t")
        await task
        assert not cache.is_pending("t")

    @pytest.mark.asyncio
    async def test_failure_keeps_raw_for_retry(self):
        cache = SingleFlightCache("test")
        resolver = Resolver(fail_times=1)
        cache.put("t", "a")

        with pytest.raises(RuntimeError):
            await cache.get("t", resolver)
        assert not cache.is_resolved("t")

        assert await cache.get("t", resolver) == "A"
        assert resolver.calls == 2

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_resolution(self):
        cache = SingleFlightCache("test")
        resolver = Resolver()
        cache.put("t", "a")

        first = asyncio.ensure_future(cache.get("t", resolver))
        second = asyncio.ensure_future(cache.get("t", resolver))
        await asyncio.sleep(0)
        first.cancel()

        assert await second == "A"
        assert resolver.calls == 1

    @pytest.mark.asyncio
    async def test_records_hits_and_misses(self):
        cache = SingleFlightCache("metered")
        cache.put("t", "a")
        await cache.get("t", Resolver())
        await cache.get("t", Resolver())
        stats = metrics.cache_stats["metered"]
        assert stats.misses == 1
        assert stats.hits == 1


class TestMaintenance:
    def test_delete_and_clear(self):
        cache = SingleFlightCache("test")
        cache.put("a", 1)
        cache.put("b", 2)
        assert cache.delete("a")
        assert not cache.delete("a")
        assert len(cache) == 1
        cache.clear()
        assert "b" not in cache

    def test_stats(self):
        cache = SingleFlightCache("test")
        cache.put("a", 1)
        cache.put_resolved("b", 2)
        assert cache.stats() == {"size": 2, "resolved": 1, "pending": 0}
