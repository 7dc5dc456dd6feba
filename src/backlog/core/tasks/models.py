"""
Canonical task data models.

Every backend maps its native states onto these models: a fixed
five-value status enum, a five-value priority enum, and a Task model
whose ``meta`` bag carries backend-specific extras (comments, relation
edges, native ids).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import InvalidStatusError

# Keys used in Task.meta
META_COMMENTS = "comments"
META_BLOCKS = "blocks"
META_BLOCKED_BY = "blocked_by"


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Canonical task status values."""

    BACKLOG = "backlog"
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    REVIEW = "review"
    DONE = "done"

    @classmethod
    def parse(cls, value: TaskStatus | str) -> TaskStatus:
        """
        Convert a string to a TaskStatus.

        Raises:
            InvalidStatusError: If the value is not a canonical status
        """
        if isinstance(value, TaskStatus):
            return value
        try:
            return cls(value)
        except ValueError as e:
            raise InvalidStatusError(value) from e


class TaskPriority(str, Enum):
    """Canonical priority levels, urgent first."""

    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"

    @property
    def rank(self) -> int:
        """Sort rank (0 = urgent, 4 = none); lower sorts first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.URGENT: 0,
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 3,
    TaskPriority.NONE: 4,
}


class RelationType(str, Enum):
    """Direction of a dependency edge between two tasks."""

    BLOCKS = "blocks"
    BLOCKED_BY = "blocked-by"

    @property
    def inverse(self) -> RelationType:
        if self is RelationType.BLOCKS:
            return RelationType.BLOCKED_BY
        return RelationType.BLOCKS

    @property
    def meta_key(self) -> str:
        """The Task.meta key that stores edges of this type."""
        if self is RelationType.BLOCKS:
            return META_BLOCKS
        return META_BLOCKED_BY


class Comment(BaseModel):
    """A comment on a task. Comments are append-only and creation-ordered."""

    id: str = Field(..., description="Comment identifier")
    author: str = Field(default="", description="Author username or agent id")
    body: str = Field(default="", description="Comment body (markdown)")
    created: datetime = Field(default_factory=utc_now, description="Creation timestamp")


class Task(BaseModel):
    """
    A work item in the backlog.

    Example:
        >>> task = Task(id="001", title="Fix bug", priority=TaskPriority.HIGH)
        >>> task.status
        <TaskStatus.BACKLOG: 'backlog'>
        >>> task.priority.rank
        1
    """

    id: str = Field(..., description="Backend-defined identifier, stable for the task's lifetime")
    title: str = Field(..., description="Short summary")
    description: str = Field(default="", description="Full description (markdown)")
    status: TaskStatus = Field(default=TaskStatus.BACKLOG)
    priority: TaskPriority = Field(default=TaskPriority.NONE)
    assignee: str = Field(default="", description="Assigned user or agent id; empty when unassigned")
    labels: list[str] = Field(default_factory=list)
    created: datetime = Field(default_factory=utc_now)
    updated: datetime = Field(default_factory=utc_now)
    url: str | None = Field(default=None, description="Web URL for the task, if any")
    sort_order: float = Field(
        default=0.0,
        description="Explicit sort position within a priority group; 0 means unset",
    )
    meta: dict[str, Any] = Field(
        default_factory=dict,
        description="Backend-specific extras (comments, relation edges, native ids)",
    )

    @field_validator("labels")
    @classmethod
    def dedupe_labels(cls, v: list[str]) -> list[str]:
        """Labels behave as an ordered set."""
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def clamp_updated(self) -> Task:
        if self.updated < self.created:
            self.updated = self.created
        return self

    @property
    def comments(self) -> list[Comment]:
        """Comments stored in the meta bag, in creation order."""
        return list(self.meta.get(META_COMMENTS) or [])

    @property
    def blocks(self) -> list[str]:
        """Ids of tasks this task blocks."""
        return list(self.meta.get(META_BLOCKS) or [])

    @property
    def blocked_by(self) -> list[str]:
        """Ids of tasks blocking this task."""
        return list(self.meta.get(META_BLOCKED_BY) or [])

    def agent_labels(self, prefix: str) -> list[str]:
        """Return labels of the form ``<prefix>:<agent>``."""
        marker = f"{prefix}:"
        return [label for label in self.labels if label.startswith(marker)]


class TaskList(BaseModel):
    """A possibly truncated list of tasks."""

    tasks: list[Task] = Field(default_factory=list)
    count: int = 0
    has_more: bool = False


class TaskFilters(BaseModel):
    """
    Filtering options for listing tasks. All dimensions are ANDed.

    ``assignee`` accepts two sentinels: ``"@me"`` (the connected agent)
    and ``"unassigned"`` (empty assignee).
    """

    status: list[TaskStatus] = Field(default_factory=list)
    priority: list[TaskPriority] = Field(default_factory=list)
    assignee: str | None = None
    labels: list[str] = Field(default_factory=list)
    limit: int = Field(default=0, ge=0, description="Maximum tasks to return; 0 means no limit")
    include_done: bool = False


class TaskInput(BaseModel):
    """Fields for creating a task. Unset status/priority fall back to backlog/none."""

    title: str = Field(..., min_length=1)
    description: str = ""
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    labels: list[str] = Field(default_factory=list)
    assignee: str = ""


class TaskChanges(BaseModel):
    """
    Sparse change set for updating a task.

    ``None`` means "leave unchanged". An explicit empty ``assignee``
    unassigns the task.
    """

    title: str | None = None
    description: str | None = None
    priority: TaskPriority | None = None
    assignee: str | None = None
    add_labels: list[str] = Field(default_factory=list)
    remove_labels: list[str] = Field(default_factory=list)

    def apply(self, task: Task) -> Task:
        """Return a copy of *task* with these changes applied (``updated`` untouched)."""
        data: dict[str, Any] = {}
        if self.title is not None:
            data["title"] = self.title
        if self.description is not None:
            data["description"] = self.description
        if self.priority is not None:
            data["priority"] = self.priority
        if self.assignee is not None:
            data["assignee"] = self.assignee

        # Removals first so a label can be swapped for itself (re-claim)
        removed = set(self.remove_labels)
        labels = [label for label in task.labels if label not in removed]
        for label in self.add_labels:
            if label not in labels:
                labels.append(label)
        data["labels"] = labels

        return task.model_copy(update=data, deep=True)


class HealthStatus(BaseModel):
    """Result of a backend health check."""

    ok: bool
    message: str = ""
    latency: timedelta = Field(default_factory=timedelta)


class ClaimResult(BaseModel):
    """Outcome of a claim: the task and whether the caller already owned it."""

    task: Task
    already_owned: bool = False


class SyncResult(BaseModel):
    """Counts reported by a sync operation."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    pushed: int = 0
    conflicts: int = 0


class Relation(BaseModel):
    """A resolved dependency edge as seen from one task."""

    type: RelationType
    task_id: str
    task_title: str = ""
    task_status: TaskStatus | None = None


class ReorderPosition(BaseModel):
    """Where to place a task in its group. Exactly one field should be set."""

    before_id: str | None = None
    after_id: str | None = None
    first: bool = False
    last: bool = False

    @model_validator(mode="after")
    def single_target(self) -> ReorderPosition:
        chosen = sum(
            [self.before_id is not None, self.after_id is not None, self.first, self.last]
        )
        if chosen > 1:
            raise ValueError("only one of before_id, after_id, first, last may be set")
        return self

    @property
    def reference_id(self) -> str | None:
        return self.before_id or self.after_id
