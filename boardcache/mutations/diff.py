"""
Pure application of mutation payloads to a board.

``apply_payload`` never touches its input: it works on a deep copy and returns
the new board together with before/after snapshots of the entity it changed.
Any payload that does not fit the board raises InvalidMutation.
"""

from typing import Any, NamedTuple

from boardcache.core.exceptions import InvalidMutation
from boardcache.models import BoardColumn, BoardState, BoardTask
from boardcache.mutations.payloads import (
    CreateColumn,
    CreateTask,
    DeleteColumn,
    DeleteTask,
    MoveTask,
    MutationPayload,
    UpdateColumn,
    UpdateTask,
)


class AppliedChange(NamedTuple):
    board: BoardState
    before: dict[str, Any] | None
    after: dict[str, Any] | None


def _task_snapshot(task: BoardTask) -> dict[str, Any]:
    return task.model_dump(mode="json")


def _column_snapshot(column: BoardColumn) -> dict[str, Any]:
    return column.model_dump(mode="json", exclude={"tasks"})


def _renumber(items):
    for position, item in enumerate(items):
        item.sort_order = position


def _insert(items, item, position: int):
    items.insert(min(position, len(items)), item)
    _renumber(items)


def _require_task(board: BoardState, task_id: str) -> tuple[BoardColumn, BoardTask]:
    found = board.find_task(task_id)
    if found is None:
        raise InvalidMutation(f"Task {task_id} not found on board {board.key}")
    return found


def _require_column(board: BoardState, column_id: str) -> BoardColumn:
    column = board.column(column_id)
    if column is None:
        raise InvalidMutation(f"Column {column_id} not found on board {board.key}")
    return column


def _create_task(board: BoardState, payload: CreateTask):
    if board.find_task(payload.task.id) is not None:
        raise InvalidMutation(f"Task {payload.task.id} already exists")
    column = _require_column(board, payload.task.column_id)
    task = payload.task.model_copy(deep=True)
    _insert(column.tasks, task, task.sort_order)
    return None, _task_snapshot(task)


def _update_task(board: BoardState, payload: UpdateTask):
    column, task = _require_task(board, payload.task_id)
    updated = task.model_copy(update=payload.changes.model_dump(exclude_unset=True))
    column.tasks[column.tasks.index(task)] = updated
    return _task_snapshot(task), _task_snapshot(updated)


def _move_task(board: BoardState, payload: MoveTask):
    source, task = _require_task(board, payload.task_id)
    target = _require_column(board, payload.column_id)
    before = _task_snapshot(task)
    source.tasks.remove(task)
    _renumber(source.tasks)
    task.column_id = target.id
    _insert(target.tasks, task, payload.sort_order)
    return before, _task_snapshot(task)


def _delete_task(board: BoardState, payload: DeleteTask):
    column, task = _require_task(board, payload.task_id)
    column.tasks.remove(task)
    _renumber(column.tasks)
    return _task_snapshot(task), None


def _create_column(board: BoardState, payload: CreateColumn):
    if board.column(payload.column.id) is not None:
        raise InvalidMutation(f"Column {payload.column.id} already exists")
    if payload.column.tasks:
        raise InvalidMutation("A new column must not carry tasks")
    column = payload.column.model_copy(deep=True)
    _insert(board.columns, column, column.sort_order)
    return None, _column_snapshot(column)


def _update_column(board: BoardState, payload: UpdateColumn):
    column = _require_column(board, payload.column_id)
    before = _column_snapshot(column)
    for name, value in payload.changes.model_dump(exclude_unset=True).items():
        setattr(column, name, value)
    return before, _column_snapshot(column)


def _delete_column(board: BoardState, payload: DeleteColumn):
    column = _require_column(board, payload.column_id)
    if column.tasks:
        raise InvalidMutation(
            f"Column {column.id} still holds {len(column.tasks)} task(s)"
        )
    board.columns.remove(column)
    _renumber(board.columns)
    return _column_snapshot(column), None


_HANDLERS = {
    CreateTask: _create_task,
    UpdateTask: _update_task,
    MoveTask: _move_task,
    DeleteTask: _delete_task,
    CreateColumn: _create_column,
    UpdateColumn: _update_column,
    DeleteColumn: _delete_column,
}


def apply_payload(board: BoardState, payload: MutationPayload) -> AppliedChange:
    handler = _HANDLERS.get(type(payload))
    if handler is None:
        raise InvalidMutation(f"Unsupported mutation payload {type(payload).__name__}")
    board = board.model_copy(deep=True)
    before, after = handler(board, payload)
    return AppliedChange(board, before, after)
