import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[object]]


class PopulationPool:
    """
    Bounded pool for fire-and-forget cache population.

    A fixed number of workers drain a capped queue. When the queue is full the
    oldest queued job is dropped to make room, so a burst of misses can never
    grow memory or task count without bound. Job failures are logged with the
    key they were populating and never reach the caller.
    """

    def __init__(self, workers: int = 4, queue_size: int = 256):
        if workers < 1 or queue_size < 1:
            raise ValueError("workers and queue_size must be >= 1")
        self.workers = workers
        self._queue: asyncio.Queue[tuple[str, Job]] = asyncio.Queue(maxsize=queue_size)
        self._tasks: list[asyncio.Task] = []
        self.stats = {"submitted": 0, "completed": 0, "failed": 0, "dropped": 0}

    def submit(self, key: str, job: Job):
        """Queue `job` without waiting for it. Never blocks."""
        self._ensure_workers()
        if self._queue.full():
            dropped_key, _ = self._queue.get_nowait()
            self._queue.task_done()
            self.stats["dropped"] += 1
            logger.warning(f"Population queue full; dropped pending job for {dropped_key}")
        self._queue.put_nowait((key, job))
        self.stats["submitted"] += 1

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def join(self):
        """Wait until every queued job has run."""
        await self._queue.join()

    async def close(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    def _ensure_workers(self):
        self._tasks = [task for task in self._tasks if not task.done()]
        while len(self._tasks) < self.workers:
            self._tasks.append(
                asyncio.create_task(self._work(), name=f"cache-population-{len(self._tasks)}")
            )

    async def _work(self):
        while True:
            key, job = await self._queue.get()
            try:
                await job()
                self.stats["completed"] += 1
            except Exception:
                self.stats["failed"] += 1
                logger.exception(f"Cache population failed for {key}")
            finally:
                self._queue.task_done()
