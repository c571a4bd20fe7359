"""SQL source of truth and timeline store. Require DATABASE_URL; rows are scoped to a fresh project id."""

import uuid
from datetime import datetime, timezone

import pytest

from boardcache.database import create_db_and_tables, create_engine, create_session_factory
from boardcache.models import AggregateKey, TimelineEvent
from boardcache.mutations.payloads import Mutation, parse_payload
from boardcache.sources import SqlBoardSource
from boardcache.timeline.recorder import SqlTimelineStore, TimelineRecorder


@pytest.fixture
async def sessions(database_url):
    engine = create_engine(database_url)
    await create_db_and_tables(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def project_board(board_factory):
    return board_factory(f"p{uuid.uuid4().hex[:12]}", "t1")


@pytest.mark.requires_db
async def test_save_and_load_round_trip(sessions, project_board) -> None:
    source = SqlBoardSource(sessions)
    await source.save_board(project_board)

    loaded = await source.load(project_board.key)

    assert loaded == project_board


@pytest.mark.requires_db
async def test_persist_applies_mutation(sessions, project_board) -> None:
    source = SqlBoardSource(sessions)
    await source.save_board(project_board)
    mutation = Mutation.new(
        str(project_board.key),
        parse_payload({"op": "move_task", "task_id": "t-1", "column_id": "done", "sort_order": 0}),
        "alice",
    )

    result = await source.persist(mutation)

    assert result.mutation_id == mutation.id
    loaded = await source.load(project_board.key)
    assert [t.id for t in loaded.column("done").tasks] == ["t-1"]
    assert [t.id for t in loaded.column("todo").tasks] == ["t-2"]


@pytest.mark.requires_db
async def test_missing_board_loads_as_none(sessions) -> None:
    source = SqlBoardSource(sessions)
    assert await source.load(AggregateKey(f"p{uuid.uuid4().hex[:12]}", "t1")) is None


@pytest.mark.requires_db
async def test_sql_timeline_orders_and_pages(sessions) -> None:
    key = f"p{uuid.uuid4().hex[:12]}:t1"
    recorder = TimelineRecorder(SqlTimelineStore(sessions), page_size=2)
    at = datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)
    for i in range(3):
        await recorder.append(
            TimelineEvent(
                id=uuid.uuid4().hex,
                aggregate_key=key,
                sequence=1,
                mutation_id=f"m{i}",
                actor="alice",
                action="move_task",
                change={"op": "move_task"},
                timestamp=at,
            )
        )

    events = await TimelineRecorder(SqlTimelineStore(sessions)).history(key)

    assert [e.sequence for e in events] == [1, 2, 3]
    assert [e.mutation_id for e in events] == ["m0", "m1", "m2"]
    assert events[0].timestamp < events[1].timestamp < events[2].timestamp
