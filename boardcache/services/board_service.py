import logging

from pydantic import ValidationError

from boardcache.cache.decorators import async_cached, async_cached_expire
from boardcache.cache.invalidation import CacheInvalidationBus
from boardcache.cache.strategy import CacheStrategy
from boardcache.models import AggregateKey, BoardState
from boardcache.sources import BoardSource
from boardcache.timeline.recorder import TimelineRecorder

logger = logging.getLogger(__name__)


class BoardService:
    """Cache-aside board reads, manual invalidation and timeline access."""

    def __init__(
        self,
        cache: CacheStrategy,
        source: BoardSource,
        bus: CacheInvalidationBus,
        timeline: TimelineRecorder,
    ):
        self.cache = cache
        self.source = source
        self.bus = bus
        self.timeline = timeline

    @async_cached("board", lambda key: str(key))
    async def fetch_board(self, key: AggregateKey):
        return await self.source.load(key)

    async def load_confirmed(self, key: AggregateKey) -> BoardState | None:
        """Last confirmed board, through the cache."""
        raw = await self.fetch_board(key)
        if raw is None:
            return None
        try:
            return BoardState.model_validate(raw)
        except ValidationError:
            # a cached shape we no longer understand; drop it and go to the source
            logger.warning(f"Discarding invalid cached board {key}")
            await self.cache.delete(str(key), "board")
            return await self.source.load(key)

    @async_cached_expire("board", lambda board: str(board.key))
    async def replace_board(self, board: BoardState):
        """Import a whole board into the source of truth (seeding, restores)."""
        await self.source.save_board(board)

    async def invalidate(self, key: AggregateKey):
        await self.bus.publish(key)

    async def timeline_events(self, key: AggregateKey, limit: int | None = None):
        return await self.timeline.history(str(key), limit=limit)
