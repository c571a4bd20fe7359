from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Literal

from sqlalchemy import JSON, DateTime, ForeignKeyConstraint, UniqueConstraint
from sqlmodel import Column, Field, SQLModel


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


TaskPriority = Literal["low", "medium", "high", "urgent"]
TaskStatus = Literal["active", "completed", "archived"]


@dataclass(frozen=True)
class AggregateKey:
    """Composite identity of one board: the unit of caching and invalidation."""

    project_id: str
    team_id: str

    def __post_init__(self):
        if not self.project_id or not self.team_id:
            raise ValueError("project_id and team_id must be non-empty")
        if ":" in self.project_id or ":" in self.team_id:
            raise ValueError("project_id and team_id must not contain ':'")

    def __str__(self) -> str:
        return f"{self.project_id}:{self.team_id}"

    @classmethod
    def parse(cls, raw: str) -> "AggregateKey":
        project_id, _, team_id = raw.partition(":")
        return cls(project_id, team_id)


# ---------------------------------------------------------------------------
# Aggregate schemas (what the UI renders and what gets cached)
# ---------------------------------------------------------------------------


class BoardTask(SQLModel):
    """A task card as it appears on a board"""

    id: str = Field(min_length=1)
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    column_id: str = Field(min_length=1)
    sort_order: int = Field(default=0, ge=0)
    priority: TaskPriority = "medium"
    status: TaskStatus = "active"
    assigned_to: str | None = None
    due_date: date | None = None
    estimated_hours: float | None = Field(default=None, ge=0)
    created_by: str | None = None


class BoardColumn(SQLModel):
    """A column and its ordered tasks"""

    id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    color: str = "#6b7280"
    sort_order: int = Field(default=0, ge=0)
    tasks: list[BoardTask] = Field(default_factory=list)


class BoardState(SQLModel):
    """Full materialized state of one board (columns + tasks)"""

    project_id: str
    team_id: str
    columns: list[BoardColumn] = Field(default_factory=list)

    @property
    def key(self) -> AggregateKey:
        return AggregateKey(self.project_id, self.team_id)

    def column(self, column_id: str) -> BoardColumn | None:
        for column in self.columns:
            if column.id == column_id:
                return column
        return None

    def find_task(self, task_id: str) -> tuple[BoardColumn, BoardTask] | None:
        for column in self.columns:
            for task in column.tasks:
                if task.id == task_id:
                    return column, task
        return None


class TimelineEvent(SQLModel):
    """One confirmed change of a board, as recorded in its timeline"""

    id: str
    aggregate_key: str
    sequence: int = Field(ge=1)
    mutation_id: str
    actor: str
    action: str
    before_state: dict[str, Any] | None = None
    after_state: dict[str, Any] | None = None
    change: dict[str, Any]
    timestamp: datetime


# ---------------------------------------------------------------------------
# Source-of-truth tables
# ---------------------------------------------------------------------------


class KanbanColumnRecord(SQLModel, table=True):
    """Database model. Column ids are unique within one board."""

    __tablename__ = "kanban_columns"

    project_id: str = Field(primary_key=True)
    team_id: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    name: str = Field(max_length=100)
    description: str | None = Field(default=None)
    color: str = Field(default="#6b7280")
    sort_order: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class KanbanTaskRecord(SQLModel, table=True):
    """Database model. Task ids are unique within one board."""

    __tablename__ = "kanban_tasks"
    __table_args__ = (
        ForeignKeyConstraint(
            ["project_id", "team_id", "column_id"],
            ["kanban_columns.project_id", "kanban_columns.team_id", "kanban_columns.id"],
        ),
    )

    project_id: str = Field(primary_key=True)
    team_id: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    column_id: str = Field(index=True)
    title: str = Field(max_length=200)
    description: str | None = Field(default=None)
    sort_order: int = Field(default=0)
    priority: str = Field(default="medium")
    status: str = Field(default="active")
    assigned_to: str | None = Field(default=None)
    due_date: date | None = Field(default=None)
    estimated_hours: float | None = Field(default=None)
    created_by: str | None = Field(default=None)
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class TimelineEventRecord(SQLModel, table=True):
    """Append-only audit log of confirmed board mutations"""

    __tablename__ = "timeline_events"
    __table_args__ = (UniqueConstraint("aggregate_key", "sequence"),)

    id: str = Field(primary_key=True)
    aggregate_key: str = Field(index=True)
    sequence: int
    mutation_id: str = Field(index=True)
    actor: str
    action: str
    before_state: dict | None = Field(default=None, sa_column=Column(JSON))
    after_state: dict | None = Field(default=None, sa_column=Column(JSON))
    change: dict = Field(sa_column=Column(JSON, nullable=False))
    timestamp: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
