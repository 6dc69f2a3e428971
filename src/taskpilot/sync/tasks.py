# src/taskpilot/sync/tasks.py

from __future__ import annotations

"""
Task and category sync.

Write paths:
- create:  remote insert first (ids are server-assigned), then merge the returned row
- update:  optimistic local patch, remote update, re-fetch on failure;
           confirmations superseded by a newer local edit are dropped
- delete:  remote delete first, local removal only after confirmation
- reorder: optimistic full permutation, sequential per-row writes,
           discard + re-fetch on any failure
"""

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from ..core.ports import AuthBackend, Notifier, ObjectStorage, TableStore
from ..models import DEFAULT_CATEGORIES, Attachment, Category, Priority, Task, TaskStatus
from ..models.entities import status_patch, toggle_patch
from ..store.local_store import LocalStore
from .base import SyncBase
from .errors import BackendError, TaskPilotError, ValidationError
from .transaction import attempt
from .validation import validate_category_name, validate_priority, validate_status, validate_title

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class TaskSync(SyncBase):
    def __init__(
        self,
        *,
        store: LocalStore,
        tables: TableStore,
        auth: AuthBackend,
        notifier: Notifier,
        storage: ObjectStorage | None = None,
    ) -> None:
        super().__init__(store=store, tables=tables, auth=auth, notifier=notifier)
        self._storage = storage

    # ---- read path ----

    async def load(self) -> None:
        """Session-start fetch of tasks, categories and attachments."""
        self._store.loading = True
        try:
            await asyncio.gather(
                self.fetch_tasks(),
                self.fetch_categories(),
                self.fetch_attachments(),
            )
        finally:
            self._store.loading = False

    async def fetch_tasks(self) -> bool:
        try:
            rows = await self._call("select", "tasks", self._tables.select("tasks", order_by="order"))
        except TaskPilotError as e:
            # Never keep a partially confirmed or stale list around after a failed read.
            self._store.replace_tasks([])
            self._record_load_error("tasks", e)
            self._fail("Failed to load tasks", e)
            return False

        self._store.replace_tasks(Task.from_row(r) for r in rows)
        self._clear_load_error("tasks")
        logger.debug("Fetched tasks n=%d", len(rows))
        return True

    async def fetch_categories(self) -> bool:
        try:
            rows = await self._call(
                "select", "categories", self._tables.select("categories", order_by="created_at")
            )
        except TaskPilotError as e:
            self._store.replace_categories([])
            self._record_load_error("categories", e)
            self._fail("Failed to load categories", e)
            return False

        if not rows:
            rows = await self._seed_default_categories()

        self._store.replace_categories(Category.from_row(r) for r in rows)
        self._clear_load_error("categories")
        return True

    async def _seed_default_categories(self) -> list[dict[str, Any]]:
        try:
            user_id = self._user_id()
            seed = [{"user_id": user_id, "name": name, "color": color} for name, color in DEFAULT_CATEGORIES]
            rows = await self._call("insert", "categories", self._tables.insert("categories", seed))
        except TaskPilotError:
            logger.exception("Failed to create default categories")
            return []
        logger.info("Created %d default categories", len(rows))
        return rows

    async def fetch_attachments(self) -> bool:
        try:
            rows = await self._call(
                "select",
                "attachments",
                self._tables.select("attachments", order_by="created_at", descending=True),
            )
        except TaskPilotError as e:
            self._store.replace_attachments([])
            self._record_load_error("attachments", e)
            self._fail("Failed to load attachments", e)
            return False

        self._store.replace_attachments(Attachment.from_row(r) for r in rows)
        self._clear_load_error("attachments")
        return True

    # ---- tasks: create / update / delete ----

    async def add_task(
        self,
        title: str,
        priority: Priority | str = Priority.MEDIUM,
        due_at: float | None = None,
        category_id: str | None = None,
        description: str | None = None,
    ) -> Task | None:
        try:
            title = validate_title(title)
            priority = validate_priority(priority)
            if category_id is not None and self._store.get_category(category_id) is None:
                raise ValidationError("category_id", "Unknown category")
        except ValidationError as e:
            self._invalid(e)
            return None

        # New tasks go on top of the manual order.
        tasks = self._store.tasks
        order = min(t.order for t in tasks) - 1 if tasks else 0

        try:
            row = {
                "user_id": self._user_id(),
                "title": title,
                "priority": priority.value,
                "due_at": due_at,
                "category_id": category_id,
                "description": description,
                "completed": False,
                "status": TaskStatus.TODO.value,
                "order": order,
            }
            rows = await self._call("insert", "tasks", self._tables.insert("tasks", [row]))
            if not rows:
                raise BackendError("insert returned no rows")
        except TaskPilotError as e:
            self._fail("Failed to add task", e)
            return None

        task = self._store.apply_task_added(Task.from_row(rows[0]))
        logger.info("Task added id=%s", task.id)
        self._notifier.info("Task added")
        return task

    async def _update(self, task_id: str, patch: Mapping[str, Any], failure_message: str) -> Task | None:
        if self._store.get_task(task_id) is None:
            logger.warning("Update for unknown task_id=%s ignored", task_id)
            return None

        issued: dict[str, int] = {}

        def apply() -> None:
            self._store.apply_task_updated(task_id, patch)
            issued["version"] = self._store.task_version(task_id)

        async def remote() -> list[dict[str, Any]]:
            rows = await self._call(
                "update", "tasks", self._tables.update("tasks", patch, filters={"id": task_id})
            )
            if not rows:
                raise BackendError(f"task {task_id} not found")
            return rows

        outcome = await attempt(apply=apply, remote=remote, rollback=self.fetch_tasks)
        if not outcome.ok:
            self._fail(failure_message, outcome.error)
            return None

        self._store.reconcile_task(Task.from_row(outcome.value[0]), based_on=issued["version"])
        return self._store.get_task(task_id)

    async def toggle_task(self, task_id: str) -> Task | None:
        task = self._store.get_task(task_id)
        if task is None:
            return None
        return await self._update(task_id, toggle_patch(task), "Failed to update task")

    async def update_status(self, task_id: str, status: TaskStatus | str) -> Task | None:
        try:
            status = validate_status(status)
        except ValidationError as e:
            self._invalid(e)
            return None
        return await self._update(task_id, status_patch(status), "Failed to update task")

    async def edit_task(
        self,
        task_id: str,
        *,
        title: str = _UNSET,
        description: str | None = _UNSET,
        priority: Priority | str = _UNSET,
        due_at: float | None = _UNSET,
        category_id: str | None = _UNSET,
    ) -> Task | None:
        """Patch only the fields that were passed; None clears optional fields."""
        patch: dict[str, Any] = {}
        try:
            if title is not _UNSET:
                patch["title"] = validate_title(title)
            if priority is not _UNSET:
                patch["priority"] = validate_priority(priority).value
            if category_id is not _UNSET:
                if category_id is not None and self._store.get_category(category_id) is None:
                    raise ValidationError("category_id", "Unknown category")
                patch["category_id"] = category_id
        except ValidationError as e:
            self._invalid(e)
            return None

        if description is not _UNSET:
            patch["description"] = description
        if due_at is not _UNSET:
            patch["due_at"] = due_at

        if not patch:
            return self._store.get_task(task_id)
        return await self._update(task_id, patch, "Failed to update task")

    async def delete_task(self, task_id: str) -> bool:
        task = self._store.get_task(task_id)
        if task is None:
            return False

        paths = [a.storage_path for a in self._store.attachments_for(task_id)]

        try:
            await self._call("delete", "tasks", self._tables.delete("tasks", filters={"id": task_id}))
        except TaskPilotError as e:
            self._fail("Failed to delete task", e)
            return False

        # Rows cascade in the backend; stored files do not.
        if paths and self._storage is not None:
            try:
                await self._storage.remove(paths)
            except Exception:
                logger.warning("Failed to remove stored files for task_id=%s", task_id, exc_info=True)

        self._store.apply_task_removed(task_id)
        logger.info("Task deleted id=%s", task_id)
        self._notifier.info("Task deleted")
        return True

    # ---- reorder ----

    async def reorder(self, active_id: str, over_id: str) -> bool:
        """Move `active_id` into the slot currently held by `over_id`."""
        if active_id == over_id:
            return True

        ids = [t.id for t in self._store.tasks]
        if active_id not in ids or over_id not in ids:
            return False

        new_index = ids.index(over_id)
        ids.remove(active_id)
        ids.insert(new_index, active_id)
        return await self.reorder_to(ids)

    async def reorder_to(self, ordered_ids: Sequence[str]) -> bool:
        ids = list(ordered_ids)
        confirmed = {t.id: t.order for t in self._store.tasks}

        async def persist() -> None:
            for index, task_id in enumerate(ids):
                if confirmed.get(task_id) == index:
                    continue
                await self._call(
                    "update", "tasks", self._tables.update("tasks", {"order": index}, filters={"id": task_id})
                )
                confirmed[task_id] = index

        try:
            outcome = await attempt(
                apply=lambda: self._store.apply_reorder(ids),
                remote=persist,
                # A partial write leaves storage in a permutation we never showed; reload it.
                rollback=self._restore_order,
            )
        except ValueError:
            logger.warning("Reorder rejected: ids are not a permutation of the loaded tasks")
            return False

        if not outcome.ok:
            self._fail("Failed to reorder tasks", outcome.error)
            return False
        return True

    async def _restore_order(self) -> None:
        """
        Reload tasks after a failed reorder.

        Sequential writes that stop halfway can leave two rows with the same
        order; those are renumbered 0..N-1 in the fetched sequence.
        """
        if not await self.fetch_tasks():
            return
        tasks = self._store.tasks
        if len({t.order for t in tasks}) == len(tasks):
            return

        logger.warning("Duplicate task order after failed reorder; renumbering n=%d", len(tasks))
        self._store.apply_reorder([t.id for t in tasks])
        try:
            for index, task in enumerate(tasks):
                if task.order == index:
                    continue
                await self._call(
                    "update", "tasks", self._tables.update("tasks", {"order": index}, filters={"id": task.id})
                )
        except TaskPilotError:
            logger.exception("Renumbering tasks failed; reloading")
            await self.fetch_tasks()

    # ---- categories ----

    async def add_category(self, name: str, color: str) -> Category | None:
        try:
            name = validate_category_name(name)
        except ValidationError as e:
            self._invalid(e)
            return None

        try:
            row = {"user_id": self._user_id(), "name": name, "color": color}
            rows = await self._call("insert", "categories", self._tables.insert("categories", [row]))
            if not rows:
                raise BackendError("insert returned no rows")
        except TaskPilotError as e:
            self._fail("Failed to add category", e)
            return None

        return self._store.apply_category_added(Category.from_row(rows[0]))

    async def update_category(
        self, category_id: str, *, name: str | None = None, color: str | None = None
    ) -> Category | None:
        if self._store.get_category(category_id) is None:
            return None

        patch: dict[str, Any] = {}
        try:
            if name is not None:
                patch["name"] = validate_category_name(name)
        except ValidationError as e:
            self._invalid(e)
            return None
        if color is not None:
            patch["color"] = color
        if not patch:
            return self._store.get_category(category_id)

        outcome = await attempt(
            apply=lambda: self._store.apply_category_updated(category_id, patch),
            remote=lambda: self._call(
                "update", "categories", self._tables.update("categories", patch, filters={"id": category_id})
            ),
            rollback=self.fetch_categories,
        )
        if not outcome.ok:
            self._fail("Failed to update category", outcome.error)
            return None
        return self._store.get_category(category_id)

    async def delete_category(self, category_id: str) -> bool:
        """
        Delete a category. Referencing tasks are kept and detached
        (category_id -> None), both remotely and in the store.
        """
        if self._store.get_category(category_id) is None:
            return False

        try:
            referencing = [t.id for t in self._store.tasks if t.category_id == category_id]
            if referencing:
                await self._call(
                    "update",
                    "tasks",
                    self._tables.update("tasks", {"category_id": None}, filters={"category_id": category_id}),
                )
            await self._call("delete", "categories", self._tables.delete("categories", filters={"id": category_id}))
        except TaskPilotError as e:
            self._fail("Failed to delete category", e)
            await self.fetch_tasks()
            return False

        self._store.apply_category_removed(category_id)
        return True
