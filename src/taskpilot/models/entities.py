# src/taskpilot/models/entities.py

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

# Seeded for a user whose category list is empty on first fetch.
# Colors are opaque styling tokens (HSL triplets) passed through to the view layer.
DEFAULT_CATEGORIES: tuple[tuple[str, str], ...] = (
    ("Work", "217 91% 60%"),
    ("Personal", "142 76% 36%"),
    ("Shopping", "25 95% 53%"),
    ("Health", "346 77% 50%"),
    ("Learning", "262 83% 58%"),
)


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @classmethod
    def from_db(cls, raw: str | None) -> Priority:
        if not raw:
            return cls.MEDIUM
        try:
            return cls(raw)
        except Exception:
            return cls.MEDIUM


class TaskStatus(StrEnum):
    """
    Board column of a task.

    Notes:
    - DONE is the only status compatible with completed=True; every write path
      sets both fields together (see status_patch / toggle_patch).
    """

    TODO = "todo"
    IN_PROGRESS = "in-progress"
    DONE = "done"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.TODO
        try:
            return cls(raw)
        except Exception:
            return cls.TODO


class ReminderState(StrEnum):
    PENDING = "pending"
    FIRED = "fired"


def _opt_float(v: Any) -> float | None:
    return float(v) if v is not None else None


def _opt_str(v: Any) -> str | None:
    return str(v) if v is not None else None


@dataclass(slots=True)
class Task:
    id: str
    title: str
    completed: bool
    priority: Priority
    status: TaskStatus
    created_at: float
    updated_at: float
    order: int

    due_at: float | None = None
    category_id: str | None = None
    description: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Task:
        return cls(
            id=str(row["id"]),
            title=str(row.get("title") or ""),
            completed=bool(row.get("completed")),
            priority=Priority.from_db(row.get("priority")),
            status=TaskStatus.from_db(row.get("status")),
            created_at=float(row.get("created_at") or 0.0),
            updated_at=float(row.get("updated_at") or 0.0),
            order=int(row.get("order") or 0),
            due_at=_opt_float(row.get("due_at")),
            category_id=_opt_str(row.get("category_id")),
            description=_opt_str(row.get("description")),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "completed": self.completed,
            "priority": self.priority.value,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "order": self.order,
            "due_at": self.due_at,
            "category_id": self.category_id,
            "description": self.description,
        }

    def with_patch(self, patch: Mapping[str, Any]) -> Task:
        """Return a copy with the given column values applied (id is never patched)."""
        row = self.to_row()
        row.update({k: v for k, v in patch.items() if k != "id"})
        return Task.from_row(row)

    @property
    def is_done(self) -> bool:
        # Legacy rows may carry completed=True with a stale status.
        return self.completed or self.status == TaskStatus.DONE


def status_patch(status: TaskStatus) -> dict[str, Any]:
    """Column values for moving a task to `status`, keeping `completed` in lockstep."""
    status = TaskStatus(status)
    return {"status": status.value, "completed": status == TaskStatus.DONE}


def toggle_patch(task: Task) -> dict[str, Any]:
    """Column values for flipping completion: done <-> todo."""
    return status_patch(TaskStatus.TODO if task.completed else TaskStatus.DONE)


@dataclass(slots=True)
class Category:
    id: str
    name: str
    color: str
    created_at: float = 0.0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Category:
        return cls(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            color=str(row.get("color") or ""),
            created_at=float(row.get("created_at") or 0.0),
        )


@dataclass(slots=True)
class Attachment:
    """
    File reference bound to one task.

    `storage_path` is the durable object key; display URLs are signed on demand
    and never persisted.
    """

    id: str
    task_id: str
    file_name: str
    file_type: str
    storage_path: str
    created_at: float
    file_size: int | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Attachment:
        size = row.get("file_size")
        return cls(
            id=str(row["id"]),
            task_id=str(row["task_id"]),
            file_name=str(row.get("file_name") or ""),
            file_type=str(row.get("file_type") or ""),
            storage_path=str(row.get("storage_path") or ""),
            created_at=float(row.get("created_at") or 0.0),
            file_size=int(size) if size is not None else None,
        )


@dataclass(slots=True)
class Reminder:
    id: str
    task_id: str
    remind_at: float
    triggered: bool
    created_at: float
    message: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Reminder:
        return cls(
            id=str(row["id"]),
            task_id=str(row["task_id"]),
            remind_at=float(row.get("remind_at") or 0.0),
            triggered=bool(row.get("triggered")),
            created_at=float(row.get("created_at") or 0.0),
            message=_opt_str(row.get("message")),
        )

    @property
    def state(self) -> ReminderState:
        return ReminderState.FIRED if self.triggered else ReminderState.PENDING

    def is_due(self, now_ts: float) -> bool:
        return not self.triggered and self.remind_at <= now_ts


@dataclass(slots=True)
class Notification:
    id: str
    title: str
    type: str
    read: bool
    created_at: float
    task_id: str | None = None
    message: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Notification:
        return cls(
            id=str(row["id"]),
            title=str(row.get("title") or ""),
            type=str(row.get("type") or "info"),
            read=bool(row.get("read")),
            created_at=float(row.get("created_at") or 0.0),
            task_id=_opt_str(row.get("task_id")),
            message=_opt_str(row.get("message")),
        )
