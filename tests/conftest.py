"""Pytest configuration and fixtures for boardcache.

Every test gets its own runtime built on in-process backends (memory cache
store, in-memory board source and timeline) and a virtual clock, so nothing
is shared between tests and TTLs can be crossed without sleeping.
"""

import os

import pytest
from httpx import ASGITransport, AsyncClient

from boardcache.cache.guard import MB, MemoryGuard
from boardcache.cache.policy import PriorityPolicy
from boardcache.cache.population import PopulationPool
from boardcache.cache.store import InMemoryCacheStore
from boardcache.cache.strategy import CacheStrategy
from boardcache.core.config import Settings
from boardcache.core.runtime import build_runtime
from boardcache.main import create_app
from boardcache.models import AggregateKey, BoardColumn, BoardState, BoardTask
from boardcache.sources import InMemoryBoardSource


class VirtualClock:
    """Callable epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_board(project_id: str = "p1", team_id: str = "t1") -> BoardState:
    return BoardState(
        project_id=project_id,
        team_id=team_id,
        columns=[
            BoardColumn(
                id="todo",
                name="To Do",
                sort_order=0,
                tasks=[
                    BoardTask(id="t-1", title="Write docs", column_id="todo", sort_order=0),
                    BoardTask(id="t-2", title="Fix login", column_id="todo", sort_order=1),
                ],
            ),
            BoardColumn(id="doing", name="In Progress", sort_order=1),
            BoardColumn(id="done", name="Done", sort_order=2),
        ],
    )


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def board_key() -> AggregateKey:
    return AggregateKey("p1", "t1")


@pytest.fixture
def board() -> BoardState:
    return make_board()


@pytest.fixture
def board_factory():
    """Build further seeded boards: board_factory("p2", "t2")."""
    return make_board


@pytest.fixture
def memory_store(clock) -> InMemoryCacheStore:
    return InMemoryCacheStore(max_bytes=20 * MB, clock=clock)


@pytest.fixture
async def strategy(memory_store):
    """CacheStrategy over the memory store with the default 18MB/20MB bounds."""
    guard = MemoryGuard(memory_store, threshold_bytes=18 * MB, limit_bytes=20 * MB)
    pool = PopulationPool(workers=2, queue_size=16)
    cache = CacheStrategy(memory_store, PriorityPolicy(), guard, pool)
    yield cache
    await cache.close()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        cache_backend="memory",
        database_url=None,
        timeout_seconds=2,
    )


@pytest.fixture
def board_source(board) -> InMemoryBoardSource:
    return InMemoryBoardSource([board])


@pytest.fixture
async def runtime(settings, board_source, clock):
    """Independent runtime per test; the guard loop is not started."""
    rt = await build_runtime(settings, source=board_source, clock=clock)
    yield rt
    await rt.close()


@pytest.fixture
async def client(runtime) -> AsyncClient:
    """Async HTTP client against an app bound to the test runtime (ASGI)."""
    transport = ASGITransport(app=create_app(runtime))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        pytest.skip("Database not configured: set DATABASE_URL to run SQL tests")
    return url
