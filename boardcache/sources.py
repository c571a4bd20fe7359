"""
Source-of-truth adapters.

The cache core only needs `load` and `persist`. `save_board` is used to seed
or import whole boards outside the mutation flow.
"""

import asyncio
import logging
from typing import Protocol

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from boardcache.models import (
    AggregateKey,
    BoardColumn,
    BoardState,
    BoardTask,
    KanbanColumnRecord,
    KanbanTaskRecord,
    get_utc_now,
)
from boardcache.mutations.diff import apply_payload
from boardcache.mutations.payloads import CreateColumn, Mutation, MutationResult

logger = logging.getLogger(__name__)


class BoardSource(Protocol):
    async def load(self, key: AggregateKey) -> BoardState | None: ...

    async def persist(self, mutation: Mutation) -> MutationResult: ...

    async def save_board(self, board: BoardState) -> None: ...


def _base_board(key: AggregateKey, board: BoardState | None, mutation: Mutation) -> BoardState:
    """A board may be started by creating its first column."""
    if board is not None:
        return board
    if isinstance(mutation.payload, CreateColumn):
        return BoardState(project_id=key.project_id, team_id=key.team_id)
    raise LookupError(f"Board {key} does not exist")


class InMemoryBoardSource:
    """Dict-backed source of truth for tests and local development."""

    def __init__(self, boards: list[BoardState] | None = None):
        self._boards: dict[str, BoardState] = {}
        self._lock = asyncio.Lock()
        self.loads = 0
        self.persisted: list[Mutation] = []
        for board in boards or []:
            self._boards[str(board.key)] = board.model_copy(deep=True)

    async def load(self, key: AggregateKey) -> BoardState | None:
        self.loads += 1
        board = self._boards.get(str(key))
        return board.model_copy(deep=True) if board else None

    async def persist(self, mutation: Mutation) -> MutationResult:
        key = AggregateKey.parse(mutation.aggregate_key)
        async with self._lock:
            board = _base_board(key, self._boards.get(str(key)), mutation)
            self._boards[str(key)] = apply_payload(board, mutation.payload).board
            self.persisted.append(mutation)
        return MutationResult(mutation_id=mutation.id, server_timestamp=get_utc_now())

    async def save_board(self, board: BoardState) -> None:
        async with self._lock:
            self._boards[str(board.key)] = board.model_copy(deep=True)


class SqlBoardSource:
    """Source of truth on the `kanban_columns` / `kanban_tasks` tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def load(self, key: AggregateKey) -> BoardState | None:
        async with self._sessions() as session:
            return await self._read(session, key)

    async def persist(self, mutation: Mutation) -> MutationResult:
        key = AggregateKey.parse(mutation.aggregate_key)
        async with self._sessions() as session:
            board = _base_board(key, await self._read(session, key, lock=True), mutation)
            applied = apply_payload(board, mutation.payload)
            await self._write(session, applied.board)
            await session.commit()
        logger.debug(f"Persisted mutation {mutation.id} on {key}")
        return MutationResult(mutation_id=mutation.id, server_timestamp=get_utc_now())

    async def save_board(self, board: BoardState) -> None:
        async with self._sessions() as session:
            await self._write(session, board)
            await session.commit()

    async def _read(
        self, session: AsyncSession, key: AggregateKey, lock: bool = False
    ) -> BoardState | None:
        column_query = (
            select(KanbanColumnRecord)
            .where(KanbanColumnRecord.project_id == key.project_id)
            .where(KanbanColumnRecord.team_id == key.team_id)
            .order_by(KanbanColumnRecord.sort_order)
        )
        if lock:
            column_query = column_query.with_for_update()
        columns = (await session.exec(column_query)).all()
        if not columns:
            return None

        task_query = (
            select(KanbanTaskRecord)
            .where(KanbanTaskRecord.project_id == key.project_id)
            .where(KanbanTaskRecord.team_id == key.team_id)
            .order_by(KanbanTaskRecord.sort_order)
        )
        tasks_by_column: dict[str, list[BoardTask]] = {}
        for record in (await session.exec(task_query)).all():
            tasks_by_column.setdefault(record.column_id, []).append(
                BoardTask.model_validate(record, from_attributes=True)
            )

        return BoardState(
            project_id=key.project_id,
            team_id=key.team_id,
            columns=[
                BoardColumn(
                    id=record.id,
                    name=record.name,
                    description=record.description,
                    color=record.color,
                    sort_order=record.sort_order,
                    tasks=tasks_by_column.get(record.id, []),
                )
                for record in columns
            ],
        )

    async def _write(self, session: AsyncSession, board: BoardState):
        """Make the rows of one board match `board` exactly."""
        now = get_utc_now()
        column_ids = [column.id for column in board.columns]
        task_ids = [task.id for column in board.columns for task in column.tasks]

        await session.execute(
            delete(KanbanTaskRecord)
            .where(KanbanTaskRecord.project_id == board.project_id)
            .where(KanbanTaskRecord.team_id == board.team_id)
            .where(col(KanbanTaskRecord.id).not_in(task_ids))
        )
        scope = {"project_id": board.project_id, "team_id": board.team_id}
        for column in board.columns:
            values = column.model_dump(exclude={"tasks"}) | scope
            await self._upsert(session, KanbanColumnRecord, values, now)
        await session.flush()
        for column in board.columns:
            for task in column.tasks:
                await self._upsert(session, KanbanTaskRecord, task.model_dump() | scope, now)
        # tasks may have left a column that is about to go
        await session.flush()
        await session.execute(
            delete(KanbanColumnRecord)
            .where(KanbanColumnRecord.project_id == board.project_id)
            .where(KanbanColumnRecord.team_id == board.team_id)
            .where(col(KanbanColumnRecord.id).not_in(column_ids))
        )

    async def _upsert(self, session: AsyncSession, model, values: dict, now):
        record = await session.get(model, (values["project_id"], values["team_id"], values["id"]))
        if record is None:
            session.add(model(**values))
            return
        record.sqlmodel_update(values)
        record.updated_at = now
        session.add(record)
