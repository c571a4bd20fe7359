"""
Append-only, per-board timeline of confirmed mutations.

Only the mutation engine appends, and only after the source of truth has
confirmed a mutation, so the timeline of a board is a gap-free history of
what actually happened to it. Nothing here can update or delete an event.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Protocol
from uuid import uuid4

from cachetools import LRUCache
from sqlalchemy import func
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from boardcache.models import BoardState, TimelineEvent, TimelineEventRecord, get_utc_now
from boardcache.mutations.diff import apply_payload
from boardcache.mutations.payloads import Mutation, parse_payload

logger = logging.getLogger(__name__)

TIMESTAMP_STEP = timedelta(microseconds=1)


class TimelineStore(Protocol):
    async def head(self, aggregate_key: str) -> TimelineEvent | None:
        """Latest event of an aggregate."""
        ...

    async def insert(self, event: TimelineEvent) -> None: ...

    async def page(
        self, aggregate_key: str, after_sequence: int, upto_sequence: int, limit: int
    ) -> list[TimelineEvent]: ...


class InMemoryTimelineStore:
    def __init__(self):
        self._events: dict[str, list[TimelineEvent]] = {}

    async def head(self, aggregate_key: str) -> TimelineEvent | None:
        events = self._events.get(aggregate_key)
        return events[-1] if events else None

    async def insert(self, event: TimelineEvent) -> None:
        self._events.setdefault(event.aggregate_key, []).append(event)

    async def page(
        self, aggregate_key: str, after_sequence: int, upto_sequence: int, limit: int
    ) -> list[TimelineEvent]:
        # sequence n lives at index n - 1
        events = self._events.get(aggregate_key, [])
        return events[after_sequence : min(upto_sequence, after_sequence + limit)]


class SqlTimelineStore:
    """Timeline on the `timeline_events` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def head(self, aggregate_key: str) -> TimelineEvent | None:
        async with self._sessions() as session:
            latest = (
                select(func.max(TimelineEventRecord.sequence))
                .where(TimelineEventRecord.aggregate_key == aggregate_key)
                .scalar_subquery()
            )
            query = (
                select(TimelineEventRecord)
                .where(TimelineEventRecord.aggregate_key == aggregate_key)
                .where(TimelineEventRecord.sequence == latest)
            )
            record = (await session.exec(query)).first()
        return TimelineEvent.model_validate(record, from_attributes=True) if record else None

    async def insert(self, event: TimelineEvent) -> None:
        async with self._sessions() as session:
            session.add(TimelineEventRecord(**event.model_dump()))
            await session.commit()

    async def page(
        self, aggregate_key: str, after_sequence: int, upto_sequence: int, limit: int
    ) -> list[TimelineEvent]:
        async with self._sessions() as session:
            query = (
                select(TimelineEventRecord)
                .where(TimelineEventRecord.aggregate_key == aggregate_key)
                .where(TimelineEventRecord.sequence > after_sequence)
                .where(TimelineEventRecord.sequence <= upto_sequence)
                .order_by(TimelineEventRecord.sequence)
                .limit(limit)
            )
            records = (await session.exec(query)).all()
        return [TimelineEvent.model_validate(r, from_attributes=True) for r in records]


class TimelineReplay:
    """
    Lazy, finite, restartable view of one board's timeline.

    Every `async for` starts a fresh pass from the first event and stops at
    the last event that existed when that pass started, reading the store a
    page at a time.
    """

    def __init__(self, store: TimelineStore, aggregate_key: str, page_size: int = 100):
        self._store = store
        self.aggregate_key = aggregate_key
        self._page_size = page_size

    def __aiter__(self) -> AsyncIterator[TimelineEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[TimelineEvent]:
        head = await self._store.head(self.aggregate_key)
        if head is None:
            return
        after = 0
        while after < head.sequence:
            batch = await self._store.page(
                self.aggregate_key, after, head.sequence, self._page_size
            )
            if not batch:
                return
            for event in batch:
                yield event
            after = batch[-1].sequence


class TimelineRecorder:
    """
    Owns the timeline of every board.

    `append` assigns the next sequence number and makes timestamps strictly
    increasing per board (a timestamp that does not move forward is nudged one
    microsecond past the previous one). Appends for one board must come from
    a single writer, which the mutation engine's per-board queue guarantees.
    """

    def __init__(
        self,
        store: TimelineStore,
        clock: Callable[[], datetime] = get_utc_now,
        page_size: int = 100,
        head_cache_size: int = 1024,
    ):
        self.store = store
        self._clock = clock
        self._page_size = page_size
        # board -> (sequence, timestamp) of its last event; a miss reads the store
        self._heads: LRUCache = LRUCache(maxsize=head_cache_size)

    async def append(self, event: TimelineEvent) -> TimelineEvent:
        head = self._heads.get(event.aggregate_key)
        if head is None:
            stored = await self.store.head(event.aggregate_key)
            if stored is not None:
                head = (stored.sequence, stored.timestamp)

        sequence = 1
        timestamp = event.timestamp
        if head is not None:
            last_sequence, last_timestamp = head
            sequence = last_sequence + 1
            if timestamp <= last_timestamp:
                timestamp = last_timestamp + TIMESTAMP_STEP
        event = event.model_copy(update={"sequence": sequence, "timestamp": timestamp})

        await self.store.insert(event)
        self._heads[event.aggregate_key] = (sequence, timestamp)
        logger.debug(f"Timeline {event.aggregate_key} #{sequence}: {event.action}")
        return event

    async def record(
        self,
        mutation: Mutation,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> TimelineEvent:
        """Append the event describing a confirmed mutation."""
        return await self.append(
            TimelineEvent(
                id=uuid4().hex,
                aggregate_key=mutation.aggregate_key,
                sequence=1,
                mutation_id=mutation.id,
                actor=mutation.actor,
                action=mutation.payload.op,
                before_state=before,
                after_state=after,
                change=mutation.payload.model_dump(mode="json"),
                timestamp=mutation.server_timestamp or self._clock(),
            )
        )

    def replay(self, aggregate_key: str) -> TimelineReplay:
        return TimelineReplay(self.store, str(aggregate_key), self._page_size)

    async def history(self, aggregate_key: str, limit: int | None = None) -> list[TimelineEvent]:
        events = []
        async for event in self.replay(aggregate_key):
            events.append(event)
            if limit is not None and len(events) >= limit:
                break
        return events

    async def rebuild(self, aggregate_key: str, base: BoardState) -> BoardState:
        """Re-apply every recorded change, in order, on top of `base`."""
        board = base
        async for event in self.replay(aggregate_key):
            board = apply_payload(board, parse_payload(event.change)).board
        return board
