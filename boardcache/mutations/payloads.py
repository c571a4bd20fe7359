"""
Mutation records and the closed set of payload variants a board accepts.

Payloads are discriminated on ``op``. Anything that does not validate against
one of the variants is rejected as InvalidMutation before it can reach the
mutation queue.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from boardcache.core.exceptions import InvalidMutation
from boardcache.models import BoardColumn, BoardTask, TaskPriority, TaskStatus


class MutationType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    MOVE = "move"
    DELETE = "delete"


class MutationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


class _Changes(BaseModel):
    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _not_empty(self):
        if not self.model_fields_set:
            raise ValueError("changes must set at least one field")
        return self


class TaskChanges(_Changes):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    priority: TaskPriority | None = None
    status: TaskStatus | None = None
    assigned_to: str | None = None
    due_date: date | None = None
    estimated_hours: float | None = Field(default=None, ge=0)


class ColumnChanges(_Changes):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    color: str | None = None


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    mutation_type: ClassVar[MutationType]


class CreateTask(_Payload):
    mutation_type = MutationType.CREATE
    op: Literal["create_task"] = "create_task"
    task: BoardTask


class UpdateTask(_Payload):
    mutation_type = MutationType.UPDATE
    op: Literal["update_task"] = "update_task"
    task_id: str = Field(min_length=1)
    changes: TaskChanges


class MoveTask(_Payload):
    mutation_type = MutationType.MOVE
    op: Literal["move_task"] = "move_task"
    task_id: str = Field(min_length=1)
    column_id: str = Field(min_length=1)
    sort_order: int = Field(ge=0)


class DeleteTask(_Payload):
    mutation_type = MutationType.DELETE
    op: Literal["delete_task"] = "delete_task"
    task_id: str = Field(min_length=1)


class CreateColumn(_Payload):
    mutation_type = MutationType.CREATE
    op: Literal["create_column"] = "create_column"
    column: BoardColumn


class UpdateColumn(_Payload):
    mutation_type = MutationType.UPDATE
    op: Literal["update_column"] = "update_column"
    column_id: str = Field(min_length=1)
    changes: ColumnChanges


class DeleteColumn(_Payload):
    mutation_type = MutationType.DELETE
    op: Literal["delete_column"] = "delete_column"
    column_id: str = Field(min_length=1)


MutationPayload = Annotated[
    Union[
        CreateTask,
        UpdateTask,
        MoveTask,
        DeleteTask,
        CreateColumn,
        UpdateColumn,
        DeleteColumn,
    ],
    Field(discriminator="op"),
]

_payload_adapter = TypeAdapter(MutationPayload)


def parse_payload(raw: Any) -> MutationPayload:
    """Validate a raw (JSON-decoded) payload into one of the known variants."""
    if isinstance(raw, _Payload):
        return raw
    try:
        return _payload_adapter.validate_python(raw)
    except ValidationError as e:
        raise InvalidMutation(f"Malformed mutation payload: {e.errors()[0]['msg']}") from e


class Mutation(BaseModel):
    """A single user change to one board. Frozen: transitions return copies."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    aggregate_key: str
    type: MutationType
    actor: str
    payload: MutationPayload
    client_timestamp: datetime
    server_timestamp: datetime | None = None
    status: MutationStatus = MutationStatus.PENDING
    error: str | None = None

    @classmethod
    def new(
        cls,
        aggregate_key: str,
        payload: MutationPayload,
        actor: str,
        client_timestamp: datetime | None = None,
    ) -> "Mutation":
        return cls(
            aggregate_key=aggregate_key,
            type=payload.mutation_type,
            actor=actor,
            payload=payload,
            client_timestamp=client_timestamp or datetime.now(timezone.utc),
        )

    def confirm(self, server_timestamp: datetime) -> "Mutation":
        self._require_pending()
        return self.model_copy(
            update={
                "status": MutationStatus.CONFIRMED,
                "server_timestamp": server_timestamp,
            }
        )

    def roll_back(self, error: str) -> "Mutation":
        self._require_pending()
        return self.model_copy(
            update={"status": MutationStatus.ROLLED_BACK, "error": error}
        )

    def _require_pending(self):
        if self.status is not MutationStatus.PENDING:
            raise RuntimeError(f"Mutation {self.id} is already {self.status.value}")


class MutationResult(BaseModel):
    """What the source of truth returns for a persisted mutation."""

    mutation_id: str
    server_timestamp: datetime | None = None
