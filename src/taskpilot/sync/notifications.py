# src/taskpilot/sync/notifications.py

from __future__ import annotations

import asyncio
import logging

from ..core.ports import AuthBackend, ChangeEvent, Notifier, RealtimeFeed, Subscription, TableStore
from ..models import Notification, Reminder
from ..store.local_store import LocalStore
from .base import SyncBase
from .errors import BackendError, TaskPilotError, ValidationError
from .transaction import attempt
from .validation import validate_reminder_time

logger = logging.getLogger(__name__)

REMINDER_TITLE = "Reminder"
REMINDER_FALLBACK_MESSAGE = "You have a scheduled reminder"


class NotificationSync(SyncBase):
    """
    Reminders, notifications and the realtime notification feed.

    The scheduler uses insert_notification() / mark_reminder_triggered(), which
    raise RemoteError so it can decide what a partial failure means; everything
    else reports through the notifier and returns a plain result.
    """

    def __init__(
        self,
        *,
        store: LocalStore,
        tables: TableStore,
        auth: AuthBackend,
        notifier: Notifier,
        realtime: RealtimeFeed | None = None,
        notifications_limit: int = 50,
    ) -> None:
        super().__init__(store=store, tables=tables, auth=auth, notifier=notifier)
        self._realtime = realtime
        self._limit = max(1, int(notifications_limit))
        self._subscription: Subscription | None = None

    # ---- read path ----

    async def load(self) -> None:
        await asyncio.gather(self.fetch_notifications(), self.fetch_reminders())

    async def fetch_reminders(self) -> bool:
        try:
            rows = await self._call("select", "reminders", self._tables.select("reminders", order_by="remind_at"))
        except TaskPilotError as e:
            self._store.replace_reminders([])
            self._record_load_error("reminders", e)
            self._fail("Failed to load reminders", e)
            return False
        self._store.replace_reminders(Reminder.from_row(r) for r in rows)
        self._clear_load_error("reminders")
        return True

    async def fetch_notifications(self) -> bool:
        try:
            rows = await self._call(
                "select",
                "notifications",
                self._tables.select("notifications", order_by="created_at", descending=True, limit=self._limit),
            )
        except TaskPilotError as e:
            self._store.replace_notifications([])
            self._record_load_error("notifications", e)
            self._fail("Failed to load notifications", e)
            return False
        self._store.replace_notifications(Notification.from_row(r) for r in rows)
        self._clear_load_error("notifications")
        return True

    # ---- reminders ----

    async def add_reminder(
        self,
        task_id: str,
        remind_at: float,
        message: str | None = None,
        *,
        now_ts: float | None = None,
    ) -> Reminder | None:
        try:
            remind_at = validate_reminder_time(remind_at, now_ts=now_ts)
            if self._store.get_task(task_id) is None:
                raise ValidationError("task_id", "Task not found")
        except ValidationError as e:
            self._invalid(e)
            return None

        try:
            row = {
                "user_id": self._user_id(),
                "task_id": task_id,
                "remind_at": remind_at,
                "message": (message or "").strip() or None,
            }
            rows = await self._call("insert", "reminders", self._tables.insert("reminders", [row]))
            if not rows:
                raise BackendError("insert returned no rows")
        except TaskPilotError as e:
            self._fail("Failed to set reminder", e)
            return None

        reminder = self._store.apply_reminder_added(Reminder.from_row(rows[0]))
        logger.info("Reminder set id=%s task_id=%s remind_at=%s", reminder.id, task_id, remind_at)
        self._notifier.info("Reminder set")
        return reminder

    async def delete_reminder(self, reminder_id: str) -> bool:
        try:
            await self._call("delete", "reminders", self._tables.delete("reminders", filters={"id": reminder_id}))
        except TaskPilotError as e:
            self._fail("Failed to delete reminder", e)
            return False
        self._store.apply_reminder_removed(reminder_id)
        return True

    # ---- scheduler API (raises RemoteError) ----

    async def insert_notification(
        self,
        *,
        title: str,
        message: str | None,
        type: str,
        task_id: str | None = None,
    ) -> Notification:
        row = {
            "user_id": self._user_id(),
            "task_id": task_id,
            "title": title,
            "message": message,
            "type": type,
        }
        rows = await self._call("insert", "notifications", self._tables.insert("notifications", [row]))
        if not rows:
            raise BackendError("insert returned no rows")
        return self._store.apply_notification_added(Notification.from_row(rows[0]))

    async def mark_reminder_triggered(self, reminder_id: str) -> None:
        await self._call(
            "update",
            "reminders",
            self._tables.update("reminders", {"triggered": True}, filters={"id": reminder_id}),
        )
        self._store.apply_reminder_updated(reminder_id, {"triggered": True})

    # ---- notifications ----

    async def mark_read(self, notification_id: str) -> bool:
        current = self._store.get_notification(notification_id)
        if current is None:
            return False
        if current.read:
            return True

        outcome = await attempt(
            apply=lambda: self._store.apply_notification_updated(notification_id, {"read": True}),
            remote=lambda: self._call(
                "update",
                "notifications",
                self._tables.update("notifications", {"read": True}, filters={"id": notification_id}),
            ),
            rollback=lambda: self._store.apply_notification_updated(notification_id, {"read": False}),
        )
        if not outcome.ok:
            self._fail("Failed to mark notification as read", outcome.error)
            return False
        return True

    async def mark_all_read(self) -> bool:
        unread = [n.id for n in self._store.notifications if not n.read]
        if not unread:
            return True

        def apply() -> None:
            for notification_id in unread:
                self._store.apply_notification_updated(notification_id, {"read": True})

        async def remote() -> None:
            await self._call(
                "update",
                "notifications",
                self._tables.update(
                    "notifications", {"read": True}, filters={"user_id": self._user_id(), "read": False}
                ),
            )

        outcome = await attempt(apply=apply, remote=remote, rollback=self.fetch_notifications)
        if not outcome.ok:
            self._fail("Failed to mark notifications as read", outcome.error)
            return False
        return True

    async def delete_notification(self, notification_id: str) -> bool:
        try:
            await self._call(
                "delete", "notifications", self._tables.delete("notifications", filters={"id": notification_id})
            )
        except TaskPilotError as e:
            self._fail("Failed to delete notification", e)
            return False
        self._store.apply_notification_removed(notification_id)
        return True

    async def clear_all(self) -> bool:
        try:
            user_id = self._user_id()
            await self._call(
                "delete", "notifications", self._tables.delete("notifications", filters={"user_id": user_id})
            )
        except TaskPilotError as e:
            self._fail("Failed to clear notifications", e)
            return False
        self._store.replace_notifications([])
        return True

    # ---- realtime ----

    @property
    def realtime_attached(self) -> bool:
        return self._subscription is not None

    def attach_realtime(self) -> bool:
        """Subscribe to notification rows for the signed-in user (idempotent)."""
        if self._realtime is None or self._subscription is not None:
            return self._subscription is not None
        try:
            user_id = self._user_id()
            self._subscription = self._realtime.subscribe(
                "notifications",
                filters={"user_id": user_id},
                callback=self._on_notification_change,
            )
        except Exception:
            logger.exception("Failed to subscribe to notifications")
            return False
        logger.info("Realtime notifications attached user_id=%s", user_id)
        return True

    def detach_realtime(self) -> None:
        sub, self._subscription = self._subscription, None
        if sub is None:
            return
        try:
            sub.unsubscribe()
        except Exception:
            logger.exception("Failed to unsubscribe from notifications")

    def _on_notification_change(self, event: ChangeEvent) -> None:
        # At-least-once delivery: the store's id-keyed apply makes duplicates harmless.
        if event.event in ("INSERT", "UPDATE") and event.new:
            self._store.apply_notification_added(Notification.from_row(event.new))
        elif event.event == "DELETE" and event.old and event.old.get("id") is not None:
            self._store.apply_notification_removed(str(event.old["id"]))


def reminder_message(reminder: Reminder) -> str:
    return (reminder.message or "").strip() or REMINDER_FALLBACK_MESSAGE