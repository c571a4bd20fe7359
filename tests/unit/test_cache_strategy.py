"""CacheStrategy: cache-aside reads, background population, bypass and invalidation."""

import asyncio
from unittest.mock import AsyncMock

from boardcache.cache.guard import MemoryGuard
from boardcache.cache.policy import Priority, PriorityPolicy
from boardcache.cache.population import PopulationPool
from boardcache.cache.store import InMemoryCacheStore
from boardcache.cache.strategy import CacheStrategy
from boardcache.core.exceptions import CacheUnavailable


def _counting_loader(value):
    calls = []

    async def loader():
        calls.append(1)
        return value

    return loader, calls


class TestCacheAside:
    """Misses go to the loader; population happens off the caller's path."""

    async def test_miss_loads_then_populates_in_background(self, strategy, memory_store) -> None:
        loader, calls = _counting_loader({"columns": []})

        assert await strategy.get("p1:t1", "board", loader) == {"columns": []}
        assert len(calls) == 1

        await strategy.pool.join()
        assert await memory_store.exists("high:board:p1:t1")

        assert await strategy.get("p1:t1", "board", loader) == {"columns": []}
        assert len(calls) == 1
        assert strategy.stats["hits"] == 1
        assert strategy.stats["misses"] == 1

    async def test_expired_entry_goes_back_to_the_loader(self, strategy, clock) -> None:
        """A board cached for 300s is served from the loader again at 301s."""
        loader, calls = _counting_loader({"columns": ["fresh"]})
        assert await strategy.set("p1:t1", {"columns": ["cached"]}, "board") is True

        assert await strategy.get("p1:t1", "board", loader) == {"columns": ["cached"]}
        assert calls == []

        clock.advance(301)

        assert await strategy.get("p1:t1", "board", loader) == {"columns": ["fresh"]}
        assert len(calls) == 1
        await strategy.pool.join()
        assert await strategy.get("p1:t1", "board", loader) == {"columns": ["fresh"]}
        assert len(calls) == 1

    async def test_miss_without_loader_returns_none(self, strategy) -> None:
        assert await strategy.get("missing", "board") is None

    async def test_none_from_loader_is_not_cached(self, strategy, memory_store) -> None:
        loader, _ = _counting_loader(None)
        assert await strategy.get("p9:t9", "board", loader) is None
        await strategy.pool.join()
        assert await memory_store.key_count() == 0

    async def test_concurrent_misses_share_one_load(self, strategy) -> None:
        release = asyncio.Event()
        calls = []

        async def slow_loader():
            calls.append(1)
            await release.wait()
            return {"id": "shared"}

        readers = [
            asyncio.create_task(strategy.get("shared", "project", slow_loader))
            for _ in range(5)
        ]
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(*readers)
        assert results == [{"id": "shared"}] * 5
        assert len(calls) == 1

    async def test_delete_during_load_skips_stale_population(self, strategy, memory_store) -> None:
        loader, _ = _counting_loader({"v": 1})
        await strategy.get("p1:t1", "board", loader)
        await strategy.delete("p1:t1", "board")

        await strategy.pool.join()

        assert not await memory_store.exists("high:board:p1:t1")
        assert strategy.stats["stale_populations"] == 1

    async def test_undecodable_entry_counts_as_miss(self, strategy, memory_store) -> None:
        await memory_store.set("medium:project:1", b"{not json", ttl=60)
        loader, calls = _counting_loader({"id": "1"})
        assert await strategy.get("1", "project", loader) == {"id": "1"}
        assert len(calls) == 1


class TestWrites:
    async def test_set_writes_through_with_tier_ttl(self, strategy, memory_store, clock) -> None:
        assert await strategy.set("weekly", {"hours": 12}, "analytics") is True

        [info] = await memory_store.entries()
        assert info.key == "low:analytics:weekly"
        assert info.priority is Priority.LOW
        assert info.expires_at == clock() + 60

    async def test_set_is_skipped_while_guard_rejects(self, strategy, memory_store) -> None:
        strategy.guard.rejecting = True
        assert await strategy.set("1", {"id": "1"}, "project") is False
        assert await memory_store.key_count() == 0
        assert strategy.stats["pressure_skips"] == 1

    async def test_delete_removes_every_tier(self, strategy, memory_store) -> None:
        for priority in ("high", "medium", "low"):
            await memory_store.set(f"{priority}:board:p1:t1", b"{}", ttl=60)

        await strategy.delete("p1:t1", "board")

        assert await memory_store.key_count() == 0

    async def test_usage_never_exceeds_the_limit(self, clock) -> None:
        """Writing far more than fits keeps usage under the hard cap at every step."""
        store = InMemoryCacheStore(max_bytes=4096, clock=clock)
        guard = MemoryGuard(store, threshold_bytes=3000, limit_bytes=4096)
        cache = CacheStrategy(store, PriorityPolicy(), guard, PopulationPool())
        try:
            for i in range(200):
                await cache.set(str(i), {"blob": "x" * 100}, "project")
                clock.advance(1)
                assert await store.used_bytes() <= 4096
            # oversize values are skipped, not fatal
            assert await cache.set("huge", {"blob": "x" * 10_000}, "project") is False
        finally:
            await cache.close()


class TestBypass:
    """Backend failures fall back to the loader; a successful probe flushes and re-enables."""

    async def test_get_bypasses_cache_when_backend_is_down(self, strategy, memory_store) -> None:
        memory_store.get = AsyncMock(side_effect=CacheUnavailable("connection refused"))
        loader, calls = _counting_loader({"id": "1"})

        assert await strategy.get("1", "project", loader) == {"id": "1"}
        assert strategy.available is False
        assert strategy.stats["errors"] == 1

        # while bypassing nothing is written
        await strategy.pool.join()
        assert await strategy.set("2", {"id": "2"}, "project") is False

    async def test_probe_recovers_and_flushes(self, strategy, memory_store) -> None:
        await memory_store.set("medium:project:stale", b"{}", ttl=60)
        strategy._enter_bypass(CacheUnavailable("down"))

        await strategy.probe()

        assert strategy.available is True
        assert await memory_store.key_count() == 0

    async def test_probe_stays_in_bypass_while_ping_fails(self, strategy, memory_store) -> None:
        memory_store.ping = AsyncMock(side_effect=CacheUnavailable("still down"))
        strategy._enter_bypass(CacheUnavailable("down"))

        await strategy.probe()

        assert strategy.available is False

    async def test_guard_tick_runs_the_probe(self, strategy) -> None:
        strategy._enter_bypass(CacheUnavailable("down"))
        await strategy.guard.tick()
        assert strategy.available is True

    async def test_health_reports_degraded_when_backend_is_down(self, strategy, memory_store) -> None:
        memory_store.used_bytes = AsyncMock(side_effect=CacheUnavailable("down"))
        health = await strategy.health()
        assert health["status"] == "degraded"
        assert health["maxMemoryMB"] == 20


class TestReporting:
    async def test_health_shape(self, strategy) -> None:
        await strategy.set("1", {"id": "1"}, "project")
        health = await strategy.health()
        assert health["status"] == "healthy"
        assert health["keyCount"] == 1
        assert health["usedMemoryMB"] >= 0
        assert health["maxMemoryMB"] == 20

    async def test_stats_include_hit_rate_and_memory(self, strategy) -> None:
        loader, _ = _counting_loader({"id": "1"})
        await strategy.get("1", "project", loader)
        await strategy.pool.join()
        await strategy.get("1", "project", loader)

        stats = await strategy.get_stats()
        assert stats["hit_rate"] == 0.5
        assert stats["memory"]["key_count"] == 1
        assert stats["population"]["completed"] == 1
        assert stats["recommendations"] == []
