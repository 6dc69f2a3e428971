# src/taskpilot/store/local_store.py

from __future__ import annotations

import dataclasses
import itertools
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from ..models import Attachment, Category, Notification, Reminder, Task

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class StoreEvent:
    """
    Emitted after every mutation.

    collection: "tasks" | "categories" | "attachments" | "reminders" | "notifications"
    action:     "added" | "updated" | "removed" | "reordered" | "replaced" | "cleared"
    """

    collection: str
    action: str
    ids: tuple[str, ...] = ()


StoreListener = Callable[[StoreEvent], None]


def _patched(obj: T, patch: Mapping[str, Any]) -> T:
    names = {f.name for f in dataclasses.fields(obj)}  # type: ignore[arg-type]
    changes = {k: v for k, v in patch.items() if k in names and k != "id"}
    return dataclasses.replace(obj, **changes)  # type: ignore[type-var]


class LocalStore:
    """
    In-memory mirror of the signed-in user's rows.

    Views read from it; the sync layer writes to it. All methods are
    synchronous and run on the event loop thread.

    Contracts:
    - every apply_*_added is idempotent: same id -> last write wins, never a duplicate
    - update/remove of an unknown id is a no-op (returns None / False)
    - removing a task drops its attachments and reminders (no orphans)
    - removing a category detaches referencing tasks (category_id -> None)

    Each task carries a local version, bumped on every local mutation of that
    task and on full re-fetch. The sync layer captures the version when it
    issues a write and only merges the confirmation if nothing newer happened.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._categories: dict[str, Category] = {}
        self._attachments: dict[str, dict[str, Attachment]] = {}
        self._reminders: dict[str, Reminder] = {}
        self._notifications: dict[str, Notification] = {}

        self._clock = itertools.count(1)
        self._task_versions: dict[str, int] = {}

        self._listeners: list[StoreListener] = []

        self.loading: bool = False
        self.load_errors: dict[str, str] = {}

    # ---- observers ----

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, collection: str, action: str, ids: Iterable[str] = ()) -> None:
        event = StoreEvent(collection=collection, action=action, ids=tuple(ids))
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Store listener failed event=%s", event)

    # ---- read side ----

    @property
    def tasks(self) -> list[Task]:
        return sorted(self._tasks.values(), key=lambda t: (t.order, t.created_at))

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    @property
    def categories(self) -> list[Category]:
        return sorted(self._categories.values(), key=lambda c: c.created_at)

    def get_category(self, category_id: str) -> Category | None:
        return self._categories.get(category_id)

    @property
    def attachments(self) -> dict[str, list[Attachment]]:
        return {task_id: self.attachments_for(task_id) for task_id in self._attachments}

    def attachments_for(self, task_id: str) -> list[Attachment]:
        # Newest first is the display convention.
        items = self._attachments.get(task_id, {})
        return sorted(items.values(), key=lambda a: a.created_at, reverse=True)

    @property
    def reminders(self) -> list[Reminder]:
        return sorted(self._reminders.values(), key=lambda r: r.remind_at)

    def get_reminder(self, reminder_id: str) -> Reminder | None:
        return self._reminders.get(reminder_id)

    def reminders_for(self, task_id: str) -> list[Reminder]:
        return [r for r in self.reminders if r.task_id == task_id]

    @property
    def notifications(self) -> list[Notification]:
        return sorted(self._notifications.values(), key=lambda n: n.created_at, reverse=True)

    def get_notification(self, notification_id: str) -> Notification | None:
        return self._notifications.get(notification_id)

    @property
    def unread_count(self) -> int:
        # Derived, so a duplicated realtime delivery cannot inflate it.
        return sum(1 for n in self._notifications.values() if not n.read)

    def task_version(self, task_id: str) -> int:
        return self._task_versions.get(task_id, 0)

    # ---- tasks ----

    def _bump(self, task_ids: Iterable[str]) -> None:
        for task_id in task_ids:
            self._task_versions[task_id] = next(self._clock)

    def apply_task_added(self, task: Task) -> Task:
        self._tasks[task.id] = task
        self._bump([task.id])
        self._emit("tasks", "added", [task.id])
        return task

    def apply_task_updated(self, task_id: str, patch: Mapping[str, Any]) -> Task | None:
        current = self._tasks.get(task_id)
        if current is None:
            return None
        updated = current.with_patch(patch)
        self._tasks[task_id] = updated
        self._bump([task_id])
        self._emit("tasks", "updated", [task_id])
        return updated

    def reconcile_task(self, task: Task, *, based_on: int) -> bool:
        """
        Merge a server-confirmed row if no local edit superseded it.

        Returns False (and leaves the store untouched) when the task was
        mutated again after the confirmed write was issued, or is gone.
        """
        if task.id not in self._tasks:
            return False
        if self.task_version(task.id) != based_on:
            logger.debug(
                "Dropping stale confirmation task_id=%s based_on=%s current=%s",
                task.id,
                based_on,
                self.task_version(task.id),
            )
            return False
        self._tasks[task.id] = task
        self._emit("tasks", "updated", [task.id])
        return True

    def apply_task_removed(self, task_id: str) -> Task | None:
        task = self._tasks.pop(task_id, None)
        if task is None:
            return None
        self._task_versions.pop(task_id, None)
        self._attachments.pop(task_id, None)
        for reminder_id in [r.id for r in self._reminders.values() if r.task_id == task_id]:
            del self._reminders[reminder_id]
        self._emit("tasks", "removed", [task_id])
        return task

    def apply_reorder(self, ordered_ids: Sequence[str]) -> list[Task]:
        """
        Assign order = position for every task.

        `ordered_ids` must be a permutation of the current task ids, so the
        result is a gap-free total order 0..N-1.
        """
        ids = list(ordered_ids)
        if len(set(ids)) != len(ids) or set(ids) != set(self._tasks):
            raise ValueError("reorder requires a permutation of all task ids")

        for index, task_id in enumerate(ids):
            task = self._tasks[task_id]
            if task.order != index:
                self._tasks[task_id] = dataclasses.replace(task, order=index)
        self._bump(ids)
        self._emit("tasks", "reordered", ids)
        return self.tasks

    def replace_tasks(self, tasks: Iterable[Task]) -> None:
        self._tasks = {t.id: t for t in tasks}
        self._task_versions = {}
        self._bump(self._tasks)
        known = set(self._tasks)
        self._attachments = {k: v for k, v in self._attachments.items() if k in known}
        self._reminders = {k: r for k, r in self._reminders.items() if r.task_id in known}
        self._emit("tasks", "replaced", self._tasks)

    # ---- categories ----

    def apply_category_added(self, category: Category) -> Category:
        self._categories[category.id] = category
        self._emit("categories", "added", [category.id])
        return category

    def apply_category_updated(self, category_id: str, patch: Mapping[str, Any]) -> Category | None:
        current = self._categories.get(category_id)
        if current is None:
            return None
        updated = _patched(current, patch)
        self._categories[category_id] = updated
        self._emit("categories", "updated", [category_id])
        return updated

    def apply_category_removed(self, category_id: str) -> Category | None:
        category = self._categories.pop(category_id, None)
        if category is None:
            return None
        detached = [t.id for t in self._tasks.values() if t.category_id == category_id]
        for task_id in detached:
            self._tasks[task_id] = dataclasses.replace(self._tasks[task_id], category_id=None)
        self._bump(detached)
        self._emit("categories", "removed", [category_id])
        if detached:
            self._emit("tasks", "updated", detached)
        return category

    def replace_categories(self, categories: Iterable[Category]) -> None:
        self._categories = {c.id: c for c in categories}
        self._emit("categories", "replaced", self._categories)

    # ---- attachments ----

    def apply_attachment_added(self, attachment: Attachment) -> Attachment:
        self._attachments.setdefault(attachment.task_id, {})[attachment.id] = attachment
        self._emit("attachments", "added", [attachment.id])
        return attachment

    def apply_attachment_removed(self, task_id: str, attachment_id: str) -> Attachment | None:
        items = self._attachments.get(task_id)
        if not items or attachment_id not in items:
            return None
        removed = items.pop(attachment_id)
        if not items:
            del self._attachments[task_id]
        self._emit("attachments", "removed", [attachment_id])
        return removed

    def replace_attachments(self, attachments: Iterable[Attachment]) -> None:
        grouped: dict[str, dict[str, Attachment]] = {}
        for att in attachments:
            grouped.setdefault(att.task_id, {})[att.id] = att
        self._attachments = grouped
        self._emit("attachments", "replaced", [a for items in grouped.values() for a in items])

    # ---- reminders ----

    def apply_reminder_added(self, reminder: Reminder) -> Reminder:
        self._reminders[reminder.id] = reminder
        self._emit("reminders", "added", [reminder.id])
        return reminder

    def apply_reminder_updated(self, reminder_id: str, patch: Mapping[str, Any]) -> Reminder | None:
        current = self._reminders.get(reminder_id)
        if current is None:
            return None
        updated = _patched(current, patch)
        self._reminders[reminder_id] = updated
        self._emit("reminders", "updated", [reminder_id])
        return updated

    def apply_reminder_removed(self, reminder_id: str) -> Reminder | None:
        reminder = self._reminders.pop(reminder_id, None)
        if reminder is not None:
            self._emit("reminders", "removed", [reminder_id])
        return reminder

    def replace_reminders(self, reminders: Iterable[Reminder]) -> None:
        self._reminders = {r.id: r for r in reminders}
        self._emit("reminders", "replaced", self._reminders)

    # ---- notifications ----

    def apply_notification_added(self, notification: Notification) -> Notification:
        self._notifications[notification.id] = notification
        self._emit("notifications", "added", [notification.id])
        return notification

    def apply_notification_updated(
        self, notification_id: str, patch: Mapping[str, Any]
    ) -> Notification | None:
        current = self._notifications.get(notification_id)
        if current is None:
            return None
        updated = _patched(current, patch)
        self._notifications[notification_id] = updated
        self._emit("notifications", "updated", [notification_id])
        return updated

    def apply_notification_removed(self, notification_id: str) -> Notification | None:
        notification = self._notifications.pop(notification_id, None)
        if notification is not None:
            self._emit("notifications", "removed", [notification_id])
        return notification

    def replace_notifications(self, notifications: Iterable[Notification]) -> None:
        self._notifications = {n.id: n for n in notifications}
        self._emit("notifications", "replaced", self._notifications)

    # ---- session ----

    def clear(self) -> None:
        """Drop everything (sign-out)."""
        self._tasks.clear()
        self._categories.clear()
        self._attachments.clear()
        self._reminders.clear()
        self._notifications.clear()
        self._task_versions.clear()
        self.load_errors.clear()
        self.loading = False
        self._emit("store", "cleared")
