# src/herald/tasks/task_models.py

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class TaskStatus(StrEnum):
    """
    Task lifecycle status.

    Notes:
    - "needs_review" is terminal: the brain could not produce a safe deliverable
      and a human must look at the task.
    - "paused" is a resting state for recurring tasks awaiting resume.
    - "deleted" is a soft delete, reachable from any state.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"
    PAUSED = "paused"
    DELETED = "deleted"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(raw)
        except ValueError:
            return cls.PENDING


class TaskType(StrEnum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"


class SourceType(StrEnum):
    CONVERSATION = "conversation"
    CALDAV = "caldav"
    WEBHOOK = "webhook"
    MANUAL = "manual"


class CreatedBy(StrEnum):
    AGENT = "agent"
    USER = "user"
    SYSTEM = "system"
    SCHEDULER = "scheduler"


class ItemStatus(StrEnum):
    """Status of a single work item or delivery action."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, raw: Any) -> ItemStatus:
        try:
            return cls(str(raw))
        except ValueError:
            return cls.PENDING


TERMINAL_STATES: frozenset[TaskStatus] = frozenset(
    {
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.NEEDS_REVIEW,
        TaskStatus.DELETED,
    }
)

# "deleted" is added to every non-deleted state below.
VALID_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.PAUSED, TaskStatus.DELETED}),
    TaskStatus.PAUSED: frozenset({TaskStatus.PENDING, TaskStatus.DELETED}),
    TaskStatus.RUNNING: frozenset(
        {
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.NEEDS_REVIEW,
            TaskStatus.DELETED,
        }
    ),
    TaskStatus.COMPLETED: frozenset({TaskStatus.DELETED}),
    TaskStatus.FAILED: frozenset({TaskStatus.DELETED}),
    TaskStatus.NEEDS_REVIEW: frozenset({TaskStatus.DELETED}),
    TaskStatus.DELETED: frozenset(),
}


def validate_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """Return True if a task may move from from_status to to_status (same status is a no-op)."""
    if from_status == to_status:
        return True
    return to_status in VALID_TRANSITIONS.get(from_status, frozenset())


@dataclass(slots=True)
class WorkItem:
    """Advisory unit of reasoning the brain should perform."""

    description: str
    status: ItemStatus = ItemStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {"description": self.description, "status": self.status.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItem:
        return cls(
            description=str(data.get("description") or ""),
            status=ItemStatus.parse(data.get("status")),
        )


@dataclass(slots=True)
class DeliveryAction:
    """
    One outbound send.

    content set   -> pre-composed text, the brain is not needed for this action
    content None  -> the brain must produce the text (the deliverable)
    """

    channel: str
    recipient: str | None = None
    content: str | None = None
    status: ItemStatus = ItemStatus.PENDING

    @property
    def needs_content(self) -> bool:
        return self.status == ItemStatus.PENDING and self.content is None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"channel": self.channel, "status": self.status.value}
        if self.recipient is not None:
            out["recipient"] = self.recipient
        if self.content is not None:
            out["content"] = self.content
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeliveryAction:
        recipient = data.get("recipient")
        content = data.get("content")
        return cls(
            channel=str(data.get("channel") or ""),
            recipient=str(recipient) if recipient is not None else None,
            content=str(content) if content is not None else None,
            status=ItemStatus.parse(data.get("status")),
        )


@dataclass(slots=True)
class Task:
    id: str
    type: TaskType
    source_type: SourceType
    title: str
    instructions: str
    status: TaskStatus
    session_id: str
    created_at: float
    created_by: CreatedBy
    log_path: str

    work: list[WorkItem] = field(default_factory=list)
    delivery: list[DeliveryAction] = field(default_factory=list)

    source_ref: str | None = None
    recurrence_id: str | None = None
    occurrence_date: str | None = None
    scheduled_for: float | None = None
    started_at: float | None = None
    completed_at: float | None = None
    deleted_at: float | None = None

    def pending_delivery(self) -> list[DeliveryAction]:
        return [a for a in self.delivery if a.status == ItemStatus.PENDING]

    def needs_deliverable(self) -> bool:
        """True if at least one pending delivery action has no pre-composed content."""
        return any(a.needs_content for a in self.delivery)

    def to_dict(self) -> dict[str, Any]:
        """Snapshot for live consumers (log_path is deliberately omitted)."""
        return {
            "id": self.id,
            "type": self.type.value,
            "source_type": self.source_type.value,
            "source_ref": self.source_ref,
            "title": self.title,
            "instructions": self.instructions,
            "work": [w.to_dict() for w in self.work],
            "delivery": [d.to_dict() for d in self.delivery],
            "status": self.status.value,
            "session_id": self.session_id,
            "recurrence_id": self.recurrence_id,
            "occurrence_date": self.occurrence_date,
            "scheduled_for": self.scheduled_for,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "deleted_at": self.deleted_at,
            "created_at": self.created_at,
            "created_by": self.created_by.value,
        }


@dataclass(slots=True)
class CreateTaskInput:
    type: TaskType
    source_type: SourceType
    title: str
    instructions: str = ""
    created_by: CreatedBy = CreatedBy.AGENT
    work: Sequence[WorkItem] = ()
    delivery: Sequence[DeliveryAction] = ()
    source_ref: str | None = None
    recurrence_id: str | None = None
    occurrence_date: str | None = None
    scheduled_for: float | None = None


@dataclass(slots=True)
class ListTasksFilter:
    status: TaskStatus | Sequence[TaskStatus] | None = None
    type: TaskType | None = None
    source_type: SourceType | None = None
    recurrence_id: str | None = None
    include_deleted: bool = False
    limit: int | None = None
    offset: int | None = None


@dataclass(slots=True)
class TaskUpdate:
    """Partial update. None means "leave unchanged"."""

    status: TaskStatus | None = None
    started_at: float | None = None
    completed_at: float | None = None
    deleted_at: float | None = None
    work: list[WorkItem] | None = None
    delivery: list[DeliveryAction] | None = None
    source_ref: str | None = None

    def is_empty(self) -> bool:
        return all(
            v is None
            for v in (
                self.status,
                self.started_at,
                self.completed_at,
                self.deleted_at,
                self.work,
                self.delivery,
                self.source_ref,
            )
        )
