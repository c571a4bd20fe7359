"""
Optimistic mutations with per-board FIFO serialization.

`mutate` applies a payload to the board the UI currently sees and returns the
result at once. The mutation then waits in its board's queue; one worker per
board persists queued mutations strictly one at a time, in arrival order:

    PENDING --persist ok--------------------> CONFIRMED
    PENDING --persist error / timeout-------> ROLLED_BACK

On confirmation the confirmed snapshot advances, caches are invalidated and
the timeline gets one event. On rollback the board falls back to its last
confirmed snapshot and the mutations still queued behind the failed one are
re-applied (rebased) on top of it; any that no longer fit are rolled back too.
"""

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from cachetools import TTLCache

from boardcache.cache.invalidation import CacheInvalidationBus
from boardcache.core.exceptions import (
    AggregateNotFound,
    BoardCacheError,
    InvalidMutation,
    MutationFailed,
    MutationTimeout,
)
from boardcache.models import AggregateKey, BoardState, get_utc_now
from boardcache.mutations.diff import apply_payload
from boardcache.mutations.payloads import CreateColumn, Mutation, MutationPayload, parse_payload
from boardcache.notifications import ConfirmationNotice, LoggingNotificationSink, NotificationSink
from boardcache.sources import BoardSource
from boardcache.timeline.recorder import TimelineRecorder

logger = logging.getLogger(__name__)

Loader = Callable[[AggregateKey], Awaitable[Optional[BoardState]]]
Subscriber = Callable[[Mutation, Optional[BoardCacheError]], Any]


def _consume_exception(future: asyncio.Future):
    # rollbacks are also reported to subscribers; an unawaited handle is fine
    if not future.cancelled():
        future.exception()


@dataclass
class _Pending:
    mutation: Mutation
    future: asyncio.Future
    view: BoardState


class _BoardQueue:
    def __init__(self, key: AggregateKey, confirmed: BoardState):
        self.key = key
        self.confirmed = confirmed
        self.pending: deque[_Pending] = deque()
        self.worker: asyncio.Task | None = None

    @property
    def view(self) -> BoardState:
        return self.pending[-1].view if self.pending else self.confirmed


class MutationHandle:
    """What `mutate` hands back: the optimistic board plus a way to await the outcome."""

    def __init__(self, mutation: Mutation, view: BoardState, future: asyncio.Future):
        self.mutation = mutation
        self.view = view
        self._future = future

    @property
    def id(self) -> str:
        return self.mutation.id

    def done(self) -> bool:
        return self._future.done()

    async def outcome(self) -> Mutation:
        """The confirmed mutation, or raises MutationTimeout/MutationFailed/InvalidMutation."""
        return await asyncio.shield(self._future)


class OptimisticMutationEngine:
    def __init__(
        self,
        source: BoardSource,
        loader: Loader,
        bus: CacheInvalidationBus,
        timeline: TimelineRecorder,
        sink: NotificationSink | None = None,
        timeout_seconds: float = 30,
        recent_size: int = 4096,
        recent_ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = get_utc_now,
    ):
        self._source = source
        self._loader = loader
        self._bus = bus
        self._timeline = timeline
        self._sink = sink or LoggingNotificationSink()
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._queues: dict[str, _BoardQueue] = {}
        self._subscribers: list[Subscriber] = []
        # Per-board locks for loading the first confirmed snapshot; asyncio
        # locks wake waiters in FIFO order, which keeps arrival order intact.
        self._locks = TTLCache(maxsize=10_000, ttl=300)
        self._recent: TTLCache = TTLCache(maxsize=recent_size, ttl=recent_ttl_seconds)
        # confirm/rollback steps run to completion even if their worker is cancelled
        self._settling: set[asyncio.Task] = set()

    # -- public API ---------------------------------------------------------

    async def mutate(
        self,
        key: AggregateKey,
        payload: MutationPayload | dict,
        actor: str,
        client_timestamp: datetime | None = None,
    ) -> MutationHandle:
        """Apply optimistically and queue for persistence.

        Raises InvalidMutation (before anything is queued) for malformed
        payloads or payloads that do not apply to the current view, and
        AggregateNotFound for unknown boards.
        """
        payload = parse_payload(payload)
        if not actor:
            raise InvalidMutation("actor must be non-empty")

        lock = self._locks.setdefault(str(key), asyncio.Lock())
        async with lock:
            queue = await self._queue_for(key, payload)
            applied = apply_payload(queue.view, payload)

            mutation = Mutation.new(str(key), payload, actor, client_timestamp)
            future = asyncio.get_running_loop().create_future()
            future.add_done_callback(_consume_exception)
            queue.pending.append(_Pending(mutation, future, applied.board))
            self._recent[mutation.id] = mutation
            if queue.worker is None or queue.worker.done():
                queue.worker = asyncio.create_task(
                    self._drain(queue), name=f"mutations:{key}"
                )

        logger.debug(f"Queued {mutation.payload.op} {mutation.id} on {key}")
        return MutationHandle(mutation, applied.board.model_copy(deep=True), future)

    async def view(self, key: AggregateKey) -> BoardState:
        """What the UI should render: the optimistic view, else the confirmed board."""
        queue = self._queues.get(str(key))
        if queue is not None:
            return queue.view.model_copy(deep=True)
        board = await self._loader(key)
        if board is None:
            raise AggregateNotFound(f"Board {key} not found")
        return board

    def status(self, mutation_id: str) -> Mutation | None:
        return self._recent.get(mutation_id)

    def pending_count(self, key: AggregateKey) -> int:
        queue = self._queues.get(str(key))
        return len(queue.pending) if queue else 0

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Get told about every outcome: (mutation, None) or (mutation, error)."""
        self._subscribers.append(subscriber)
        return lambda: self._subscribers.remove(subscriber)

    async def drain(self, key: AggregateKey | None = None):
        """Wait until the queue of `key` (or of every board) is empty."""
        while True:
            if key is None:
                queues = list(self._queues.values())
            else:
                queue = self._queues.get(str(key))
                queues = [queue] if queue else []
            workers = [q.worker for q in queues if q.worker and not q.worker.done()]
            if not workers:
                return
            await asyncio.gather(*workers, return_exceptions=True)

    async def close(self, grace_seconds: float | None = None):
        """Let in-flight work finish (bounded by the persist timeout), then stop."""
        grace = self.timeout_seconds if grace_seconds is None else grace_seconds
        workers = [q.worker for q in self._queues.values() if q.worker and not q.worker.done()]
        if not workers:
            return
        _, still_running = await asyncio.wait(workers, timeout=grace)
        for task in still_running:
            task.cancel()
        await asyncio.gather(*still_running, return_exceptions=True)
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} mutation queue(s) at shutdown")
        if self._settling:
            await asyncio.gather(*self._settling, return_exceptions=True)
        for queue in list(self._queues.values()):
            while queue.pending:
                entry = queue.pending.popleft()
                await self._reject(
                    entry,
                    MutationFailed(f"Shut down before mutation {entry.mutation.id} was persisted"),
                )
            self._queues.pop(str(queue.key), None)

    # -- internals ----------------------------------------------------------

    async def _queue_for(self, key: AggregateKey, payload: MutationPayload) -> _BoardQueue:
        queue = self._queues.get(str(key))
        if queue is not None:
            return queue
        confirmed = await self._loader(key)
        if confirmed is None:
            if not isinstance(payload, CreateColumn):
                raise AggregateNotFound(f"Board {key} not found")
            confirmed = BoardState(project_id=key.project_id, team_id=key.team_id)
        queue = _BoardQueue(key, confirmed)
        self._queues[str(key)] = queue
        return queue

    async def _drain(self, queue: _BoardQueue):
        """Sole writer of `queue.confirmed`: persists head-first, one at a time."""
        while queue.pending:
            mutation = queue.pending[0].mutation
            try:
                result = await asyncio.wait_for(
                    self._source.persist(mutation), timeout=self.timeout_seconds
                )
            except asyncio.TimeoutError:
                step = self._roll_back(
                    queue,
                    queue.pending.popleft(),
                    MutationTimeout(
                        f"Persisting mutation {mutation.id} exceeded {self.timeout_seconds}s"
                    ),
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                step = self._roll_back(
                    queue,
                    queue.pending.popleft(),
                    MutationFailed(f"Persisting mutation {mutation.id} failed: {e}"),
                )
            else:
                step = self._confirm(queue, queue.pending.popleft(), result.server_timestamp)
            await self._settle(step)

        # idle boards are dropped; the next mutation reloads the confirmed board
        if self._queues.get(str(queue.key)) is queue:
            self._queues.pop(str(queue.key), None)

    async def _settle(self, step: Awaitable[None]):
        """Run a confirm/rollback step shielded from cancellation of the worker.

        The entry is already off the queue, so `close()` waits for the step
        instead of rejecting it.
        """
        task = asyncio.ensure_future(step)
        self._settling.add(task)
        task.add_done_callback(self._settling.discard)
        await asyncio.shield(task)

    async def _confirm(
        self, queue: _BoardQueue, entry: _Pending, server_timestamp: datetime | None
    ):
        applied = apply_payload(queue.confirmed, entry.mutation.payload)
        queue.confirmed = applied.board
        confirmed = entry.mutation.confirm(server_timestamp or self._clock())
        self._recent[confirmed.id] = confirmed
        logger.info(f"Confirmed {confirmed.payload.op} {confirmed.id} on {queue.key}")

        await self._bus.publish(queue.key)
        try:
            await self._timeline.record(confirmed, applied.before, applied.after)
        except Exception:
            logger.exception(f"Failed to record timeline event for {confirmed.id}")
        try:
            await self._sink.emit(
                ConfirmationNotice(
                    aggregate_key=confirmed.aggregate_key,
                    mutation_id=confirmed.id,
                    actor=confirmed.actor,
                    action=confirmed.payload.op,
                )
            )
        except Exception:
            logger.exception(f"Notification sink failed for {confirmed.id}")

        entry.future.set_result(confirmed)
        await self._notify(confirmed, None)

    async def _roll_back(self, queue: _BoardQueue, entry: _Pending, error: BoardCacheError):
        await self._reject(entry, error)
        await self._rebase(queue)

    async def _rebase(self, queue: _BoardQueue):
        """Re-apply what is still queued on top of the confirmed snapshot."""
        view = queue.confirmed
        survivors: deque[_Pending] = deque()
        rejected = []
        for entry in queue.pending:
            try:
                entry.view = apply_payload(view, entry.mutation.payload).board
            except InvalidMutation as e:
                rejected.append((entry, e))
                continue
            view = entry.view
            survivors.append(entry)
        queue.pending = survivors
        for entry, error in rejected:
            await self._reject(entry, error)

    async def _reject(self, entry: _Pending, error: BoardCacheError):
        rolled_back = entry.mutation.roll_back(error.message)
        self._recent[rolled_back.id] = rolled_back
        logger.warning(
            f"Rolled back {rolled_back.payload.op} {rolled_back.id} on "
            f"{rolled_back.aggregate_key}: {error.message}"
        )
        entry.future.set_exception(error)
        await self._notify(rolled_back, error)

    async def _notify(self, mutation: Mutation, error: BoardCacheError | None):
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(mutation, error)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Mutation subscriber failed for {mutation.id}")
