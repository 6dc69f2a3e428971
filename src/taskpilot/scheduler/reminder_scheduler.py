# src/taskpilot/scheduler/reminder_scheduler.py

from __future__ import annotations

"""
Reminder scheduler.

A small polling loop that:
- scans loaded reminders that are not yet triggered and whose time has come,
- creates a notification for each (the primary effect),
- marks the reminder triggered (the duplicate suppressor),
- refreshes reminders from the backend when anything fired.

The two writes are not transactional. If marking fails after the notification
was created, the reminder fires again on the next tick: delivery is
at-least-once per reminder, never zero.
"""

import asyncio
import logging
import time

from ..sync.errors import TaskPilotError
from ..sync.notifications import REMINDER_TITLE, NotificationSync, reminder_message

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60.0


async def process_due_reminders(sync: NotificationSync, *, now_ts: float | None = None) -> int:
    """
    Run one scheduler tick. Returns the number of notifications created.
    """
    if now_ts is None:
        now_ts = time.time()

    due = [r for r in sync.store.reminders if r.is_due(now_ts)]
    if not due:
        return 0

    created = 0
    for reminder in due:
        try:
            await sync.insert_notification(
                title=REMINDER_TITLE,
                message=reminder_message(reminder),
                type="reminder",
                task_id=reminder.task_id,
            )
        except TaskPilotError:
            # Nothing was delivered; leave the reminder pending for the next tick.
            logger.exception("insert_notification failed reminder_id=%s", reminder.id)
            continue

        created += 1

        try:
            await sync.mark_reminder_triggered(reminder.id)
            logger.info("Reminder %s -> fired", reminder.id)
        except TaskPilotError:
            logger.exception("mark_reminder_triggered failed reminder_id=%s (may fire again)", reminder.id)

    # Pick up the authoritative triggered flags.
    await sync.fetch_reminders()
    return created


async def run_reminder_scheduler(
        sync: NotificationSync,
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
) -> None:
    """
    Polling loop: one tick immediately, then one every interval_seconds.

    To stop the scheduler, cancel the coroutine/task.
    """
    sleep_s = max(0.01, float(interval_seconds))

    while True:
        try:
            await process_due_reminders(sync)
        except Exception:
            logger.exception("reminder tick failed")

        await asyncio.sleep(sleep_s)


class ReminderScheduler:
    """
    Cancellable periodic task owned by the session lifecycle.

    start() on sign-in, stop() on sign-out; never a free-running loop.
    """

    def __init__(self, sync: NotificationSync, *, interval_seconds: float = DEFAULT_INTERVAL_SECONDS) -> None:
        self._sync = sync
        self._interval = float(interval_seconds)
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            run_reminder_scheduler(self._sync, interval_seconds=self._interval),
            name="reminder-scheduler",
        )
        logger.info("Reminder scheduler started interval=%.1fs", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Reminder scheduler stopped")
