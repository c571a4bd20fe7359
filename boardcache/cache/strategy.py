import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from cachetools import TTLCache

from boardcache.cache.guard import MB, MemoryGuard
from boardcache.cache.policy import PriorityPolicy
from boardcache.cache.population import PopulationPool
from boardcache.cache.store import CacheStore, entry_size
from boardcache.core.exceptions import CacheUnavailable, EvictionExhausted

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[Any]]


class CacheStrategy:
    """
    Cache-aside reads and write-through writes over a CacheStore.

    Features:
    - Priority-prefixed keys (`{priority}:{category}:{id}`) from PriorityPolicy
    - Misses return the loader's result immediately; population runs on a
      bounded background pool and is never awaited by the caller
    - Concurrent misses on one key share a single loader call
    - Pre-write capacity check through MemoryGuard
    - Bypass mode when the backend is unavailable: reads go straight to the
      loader, writes are skipped, and the guard's probe brings it back
    """

    def __init__(
        self,
        store: CacheStore,
        policy: PriorityPolicy,
        guard: MemoryGuard,
        pool: PopulationPool,
    ):
        self.store = store
        self.policy = policy
        self.guard = guard
        self.pool = pool
        self.available = True
        self._write_lock = asyncio.Lock()
        self._inflight: dict[str, asyncio.Future] = {}
        # bumped on every delete; population skips keys deleted while loading
        self._generations = TTLCache(maxsize=10_000, ttl=3600)

        guard.add_tick_hook(self.probe)

        # Stats tracking
        self.stats = {
            "hits": 0,
            "misses": 0,
            "errors": 0,
            "pressure_skips": 0,
            "stale_populations": 0,
        }

    def _serialize(self, value: Any) -> bytes:
        """Serialize value for storage."""
        if hasattr(value, "model_dump"):
            value = value.model_dump(mode="json")
        return json.dumps(value, default=str, separators=(",", ":")).encode("utf-8")

    def _deserialize(self, key: str, raw: bytes) -> Any:
        """Deserialize value from storage; unreadable bytes count as a miss."""
        try:
            return json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning(f"Discarding undecodable cache entry {key}")
            return None

    def _enter_bypass(self, error: CacheUnavailable):
        self.stats["errors"] += 1
        if self.available:
            logger.warning(f"Cache backend unavailable, bypassing cache: {error}")
        self.available = False

    async def probe(self):
        """Leave bypass mode once the backend answers again.

        Invalidations may have been missed while bypassing, so the cache is
        flushed before it is trusted again.
        """
        if self.available:
            return
        try:
            await self.store.ping()
            await self.store.flush()
        except CacheUnavailable as e:
            logger.debug(f"Cache backend still unavailable: {e}")
            return
        self.available = True
        logger.info("Cache backend recovered; cache re-enabled after flush")

    async def get(
        self,
        item_id: str,
        category: str,
        loader: Optional[Loader] = None,
    ):
        """
        Retrieve a value: cache first, then the loader.

        Args:
            item_id: Identifier within the category
            category: PriorityPolicy category (decides tier and TTL)
            loader: Async function to load the value on a miss

        Returns:
            Cached (JSON-decoded) value, loaded value, or None if not found
        """
        key = self.policy.key(category, item_id)

        if self.available:
            try:
                raw = await self.store.get(key)
            except CacheUnavailable as e:
                self._enter_bypass(e)
            else:
                if raw is not None:
                    value = self._deserialize(key, raw)
                    if value is not None:
                        self.stats["hits"] += 1
                        logger.debug(f"Cache hit {key}")
                        return value

        self.stats["misses"] += 1
        if loader is None:
            logger.debug(f"Cache miss, no loader {key}")
            return None

        generation = self._generations.get(self._base(category, item_id), 0)
        value = await self._load_once(key, loader)
        if value is not None and self.available:
            self.pool.submit(
                key, lambda: self._populate(item_id, value, category, generation)
            )
        return value

    async def _load_once(self, key: str, loader: Loader):
        inflight = self._inflight.get(key)
        if inflight is not None:
            return await asyncio.shield(inflight)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await loader()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            future.exception()  # mark retrieved when nobody else waits
            raise
        else:
            future.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)

    async def _populate(self, item_id: str, value: Any, category: str, generation: int):
        if self._generations.get(self._base(category, item_id), 0) != generation:
            self.stats["stale_populations"] += 1
            logger.debug(f"Skipping population of {category}:{item_id}, deleted while loading")
            return
        await self.set(item_id, value, category)

    async def set(self, item_id: str, value: Any, category: str) -> bool:
        """
        Write a value through to the cache.

        Returns True when the value was cached. False means the write was
        skipped (bypass mode, memory pressure); that never affects the data
        write the value came from.
        """
        key = self.policy.key(category, item_id)
        if not self.available:
            return False
        if self.guard.rejecting:
            self.stats["pressure_skips"] += 1
            logger.debug(f"Skipping cache write of {key}: writes rejected under pressure")
            return False

        tier = self.policy.for_category(category)
        data = self._serialize(value)
        async with self._write_lock:
            try:
                await self.guard.ensure_capacity(entry_size(key, data))
                await self.store.set(key, data, tier.ttl_seconds, tier.priority)
            except EvictionExhausted as e:
                self.stats["pressure_skips"] += 1
                logger.warning(f"Skipping cache write of {key}: {e}")
                return False
            except CacheUnavailable as e:
                self._enter_bypass(e)
                return False
        logger.debug(f"Cached {key} ttl={tier.ttl_seconds}")
        return True

    async def delete(self, item_id: str, category: str):
        """
        Delete an item under every priority tier.

        Attempted even in bypass mode; a failure keeps the strategy in bypass,
        and recovery flushes everything anyway.
        """
        base = self._base(category, item_id)
        self._generations[base] = self._generations.get(base, 0) + 1
        try:
            for key in self.policy.variants(category, item_id):
                await self.store.delete(key)
        except CacheUnavailable as e:
            self._enter_bypass(e)
            return
        logger.debug(f"Deleted {base} under all tiers")

    async def flush(self):
        """Drop every cache entry. Emergency recovery only."""
        await self.store.flush()
        logger.warning("Cache flushed by administrative request")

    async def health(self) -> dict:
        limit_mb = self.guard.limit_bytes / MB
        try:
            used = await self.store.used_bytes()
            keys = await self.store.key_count()
        except CacheUnavailable as e:
            self._enter_bypass(e)
            return {
                "status": "degraded",
                "usedMemoryMB": 0.0,
                "maxMemoryMB": limit_mb,
                "keyCount": 0,
            }
        healthy = (
            self.available
            and not self.guard.rejecting
            and used <= self.guard.threshold_bytes
        )
        return {
            "status": "healthy" if healthy else "degraded",
            "usedMemoryMB": round(used / MB, 3),
            "maxMemoryMB": limit_mb,
            "keyCount": keys,
        }

    async def get_stats(self) -> dict:
        """Get cache statistics including memory pressure."""
        total = self.stats["hits"] + self.stats["misses"]
        health = await self.health()
        used_mb = health["usedMemoryMB"]
        max_mb = health["maxMemoryMB"]
        percentage = used_mb / max_mb * 100 if max_mb else 0.0

        stats = {
            **self.stats,
            "hit_rate": self.stats["hits"] / total if total > 0 else 0,
            "available": self.available,
            "rejecting_writes": self.guard.rejecting,
            "memory": {
                "used_mb": used_mb,
                "max_mb": max_mb,
                "threshold_mb": self.guard.threshold_bytes / MB,
                "percentage": round(percentage, 1),
                "key_count": health["keyCount"],
            },
            "guard": dict(self.guard.stats),
            "population": {**self.pool.stats, "pending": self.pool.pending},
            "recommendations": self._recommendations(used_mb, percentage),
        }

        server_memory = getattr(self.store, "server_memory", None)
        if server_memory is not None and self.available:
            try:
                stats["server_memory"] = await server_memory()
            except CacheUnavailable as e:
                self._enter_bypass(e)
        return stats

    def _recommendations(self, used_mb: float, percentage: float) -> list[str]:
        recommendations = []
        if percentage > 90:
            recommendations.append("Memory usage critical - consider raising MEMORY_LIMIT_MB")
        elif percentage > 80:
            recommendations.append("Memory usage high - review cache TTLs and eviction policies")
        if used_mb > self.guard.threshold_bytes / MB:
            recommendations.append("Memory threshold exceeded - aggressive eviction active")
        if not self.available:
            recommendations.append("Cache backend unavailable - serving from source of truth")
        return recommendations

    async def on_aggregate_changed(self, aggregate_key):
        """CacheInvalidationBus handler: drop the cached board."""
        await self.delete(str(aggregate_key), "board")

    async def close(self):
        await self.pool.close()
        await self.store.close()

    @staticmethod
    def _base(category: str, item_id: str) -> str:
        return f"{category}:{item_id}"
