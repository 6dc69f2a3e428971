"""Entity model: dataclasses and enums shared by every other layer."""

from .entities import (
    DEFAULT_CATEGORIES,
    Attachment,
    Category,
    Notification,
    Priority,
    Reminder,
    ReminderState,
    Task,
    TaskStatus,
    status_patch,
    toggle_patch,
)

__all__ = [
    "DEFAULT_CATEGORIES",
    "Attachment",
    "Category",
    "Notification",
    "Priority",
    "Reminder",
    "ReminderState",
    "Task",
    "TaskStatus",
    "status_patch",
    "toggle_patch",
]
