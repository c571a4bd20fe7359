import asyncio
import logging
import math
from typing import Awaitable, Callable

from boardcache.cache.store import CacheStore, EntryInfo
from boardcache.core.exceptions import CacheUnavailable, EvictionExhausted

logger = logging.getLogger(__name__)

MB = 1024 * 1024

INTERVAL_EVICTION_FRACTION = 0.15
PRE_WRITE_EVICTION_FRACTION = 0.20

_ORDERINGS: dict[str, Callable[[EntryInfo], float]] = {
    "created": lambda info: info.created_at,
    "ttl": lambda info: info.expires_at,
    "lru": lambda info: info.last_access,
}


class MemoryGuard:
    """
    Keeps cache usage under the eviction threshold.

    Two entry points:
    - `tick()`, run every `interval_seconds` by the background loop: evicts
      15% of entries when usage is above the threshold.
    - `ensure_capacity(size)`, called by CacheStrategy before every write:
      evicts 20% of entries when the write would cross the threshold, and
      raises EvictionExhausted when the write would still cross the hard cap.

    When a tick cannot get usage back under the threshold (everything left is
    pinned), `rejecting` flips on and CacheStrategy stops populating the cache
    until a later tick finds room again.

    Candidates are ordered low tier first, then by `order` within a tier:
    "created" (oldest first), "ttl" (soonest expiry first) or "lru" (least
    recently read first). Entries without TTL are never evicted.
    """

    def __init__(
        self,
        store: CacheStore,
        threshold_bytes: int,
        limit_bytes: int,
        interval_seconds: float = 300,
        order: str = "created",
    ):
        if threshold_bytes > limit_bytes:
            raise ValueError("eviction threshold must not exceed the memory limit")
        if order not in _ORDERINGS:
            raise ValueError(f"Unknown eviction order {order!r}")
        self.store = store
        self.threshold_bytes = threshold_bytes
        self.limit_bytes = limit_bytes
        self.interval_seconds = interval_seconds
        self.order = order
        self.rejecting = False
        self._tick_hooks: list[Callable[[], Awaitable[None]]] = []
        self._task: asyncio.Task | None = None

        self.stats = {
            "ticks": 0,
            "eviction_runs": 0,
            "evicted_keys": 0,
            "evicted_bytes": 0,
            "exhausted": 0,
        }

    def add_tick_hook(self, hook: Callable[[], Awaitable[None]]):
        """Run `hook` at the start of every tick (used for availability probes)."""
        self._tick_hooks.append(hook)

    async def tick(self) -> int:
        """One guard cycle. Returns bytes in use afterwards."""
        self.stats["ticks"] += 1
        for hook in self._tick_hooks:
            try:
                await hook()
            except Exception:
                logger.exception("Memory guard tick hook failed")

        used = await self.store.used_bytes()
        if used > self.threshold_bytes:
            await self.evict_fraction(INTERVAL_EVICTION_FRACTION, reason="interval")
            used = await self.store.used_bytes()

        over = used > self.threshold_bytes
        if over and not self.rejecting:
            self.stats["exhausted"] += 1
            logger.warning(
                f"Eviction could not bring cache usage below threshold "
                f"({used / MB:.2f}MB > {self.threshold_bytes / MB:.2f}MB); "
                f"rejecting new cache writes"
            )
        elif not over and self.rejecting:
            logger.info(f"Cache usage back to {used / MB:.2f}MB; accepting cache writes")
        self.rejecting = over
        return used

    async def ensure_capacity(self, incoming_bytes: int):
        """Make room for a write of `incoming_bytes` or raise EvictionExhausted."""
        used = await self.store.used_bytes()
        if used + incoming_bytes > self.threshold_bytes:
            await self.evict_fraction(PRE_WRITE_EVICTION_FRACTION, reason="pre-write")
            used = await self.store.used_bytes()
        if used + incoming_bytes > self.limit_bytes:
            self.stats["exhausted"] += 1
            raise EvictionExhausted(
                f"Write of {incoming_bytes} bytes would exceed the "
                f"{self.limit_bytes / MB:.2f}MB cache limit ({used / MB:.2f}MB in use)"
            )

    async def evict_fraction(self, fraction: float, reason: str = "") -> int:
        """Evict `fraction` of all entries (at least one). Returns keys evicted."""
        entries = await self.store.entries()
        candidates = [info for info in entries if not info.pinned]
        if not candidates:
            logger.warning(f"No evictable cache entries ({len(entries)} pinned)")
            return 0

        count = min(len(candidates), max(1, math.ceil(len(entries) * fraction)))
        ordering = _ORDERINGS[self.order]
        candidates.sort(key=lambda info: (info.priority.rank, ordering(info)))
        victims = [info.key for info in candidates[:count]]
        freed = await self.store.evict(victims)

        self.stats["eviction_runs"] += 1
        self.stats["evicted_keys"] += len(victims)
        self.stats["evicted_bytes"] += freed
        logger.info(
            f"Evicted {len(victims)} cache entries ({freed / MB:.2f}MB) [{reason}]"
        )
        return len(victims)

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="memory-guard")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.tick()
            except CacheUnavailable as e:
                logger.warning(f"Memory guard skipped tick: {e}")
            except Exception:
                logger.exception("Memory guard tick failed")
