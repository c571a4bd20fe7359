"""
The explicit handle that owns every long-lived component.

Built once at startup (or once per test) and passed to whatever needs it;
nothing in boardcache is a module-level singleton.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncEngine

from boardcache.cache.guard import MB, MemoryGuard
from boardcache.cache.invalidation import CacheInvalidationBus
from boardcache.cache.policy import PriorityPolicy
from boardcache.cache.population import PopulationPool
from boardcache.cache.redis_store import RedisCacheStore
from boardcache.cache.store import CacheStore, InMemoryCacheStore
from boardcache.cache.strategy import CacheStrategy
from boardcache.core.config import Settings
from boardcache.core.exceptions import CacheUnavailable
from boardcache.database import create_db_and_tables, create_engine, create_session_factory
from boardcache.mutations.engine import OptimisticMutationEngine
from boardcache.notifications import LoggingNotificationSink, NotificationSink
from boardcache.services.board_service import BoardService
from boardcache.sources import BoardSource, InMemoryBoardSource, SqlBoardSource
from boardcache.timeline.recorder import (
    InMemoryTimelineStore,
    SqlTimelineStore,
    TimelineRecorder,
    TimelineStore,
)

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    store: CacheStore
    policy: PriorityPolicy
    guard: MemoryGuard
    cache: CacheStrategy
    bus: CacheInvalidationBus
    source: BoardSource
    timeline: TimelineRecorder
    boards: BoardService
    engine: OptimisticMutationEngine
    db_engine: AsyncEngine | None = None

    def start(self):
        self.guard.start()

    async def close(self):
        await self.engine.close()
        await self.guard.stop()
        await self.cache.close()
        if self.db_engine is not None:
            await self.db_engine.dispose()
        logger.info("Runtime closed")


async def build_runtime(
    settings: Settings,
    *,
    store: CacheStore | None = None,
    source: BoardSource | None = None,
    timeline_store: TimelineStore | None = None,
    sink: NotificationSink | None = None,
    clock: Callable[[], float] = time.time,
) -> Runtime:
    """Wire every component from settings; explicit arguments win over settings."""
    limit_bytes = int(settings.memory_limit_mb * MB)
    threshold_bytes = int(settings.eviction_threshold_mb * MB)

    if store is None:
        if settings.cache_backend == "redis":
            store = RedisCacheStore.from_url(
                settings.redis_dsn,
                namespace=settings.cache_namespace,
                pool_size=settings.redis_pool_size,
            )
        else:
            store = InMemoryCacheStore(max_bytes=limit_bytes, clock=clock)

    db_engine = None
    if settings.database_url and (source is None or timeline_store is None):
        db_engine = create_engine(settings.database_url)
        await create_db_and_tables(db_engine)
        sessions = create_session_factory(db_engine)
        source = source or SqlBoardSource(sessions)
        timeline_store = timeline_store or SqlTimelineStore(sessions)
        logger.info("Using SQL source of truth and timeline")
    source = source or InMemoryBoardSource()
    timeline_store = timeline_store or InMemoryTimelineStore()

    policy = PriorityPolicy(settings.cache_policies, default_ttl=settings.default_ttl_seconds)
    guard = MemoryGuard(
        store,
        threshold_bytes=threshold_bytes,
        limit_bytes=limit_bytes,
        interval_seconds=settings.guard_interval_seconds,
        order=settings.eviction_order,
    )
    pool = PopulationPool(settings.population_workers, settings.population_queue_size)
    cache = CacheStrategy(store, policy, guard, pool)
    try:
        await store.ping()
        logger.info("Cache backend connection established")
    except CacheUnavailable as e:
        # Allow degraded operation (source of truth only)
        cache._enter_bypass(e)

    bus = CacheInvalidationBus()
    bus.subscribe(cache.on_aggregate_changed)
    timeline = TimelineRecorder(timeline_store)
    boards = BoardService(cache, source, bus, timeline)
    engine = OptimisticMutationEngine(
        source,
        loader=boards.load_confirmed,
        bus=bus,
        timeline=timeline,
        sink=sink or LoggingNotificationSink(),
        timeout_seconds=settings.timeout_seconds,
        recent_size=settings.recent_mutations_size,
        recent_ttl_seconds=settings.recent_mutations_ttl_seconds,
    )
    return Runtime(
        settings=settings,
        store=store,
        policy=policy,
        guard=guard,
        cache=cache,
        bus=bus,
        source=source,
        timeline=timeline,
        boards=boards,
        engine=engine,
        db_engine=db_engine,
    )
