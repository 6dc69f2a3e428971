# tests/test_entities.py

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from taskpilot.models import (
    Priority,
    Reminder,
    ReminderState,
    Task,
    TaskStatus,
    status_patch,
    toggle_patch,
)
from taskpilot.scheduler.presets import reminder_presets


def test_task_from_row_defaults() -> None:
    task = Task.from_row({"id": "t1", "title": "x", "priority": "bogus", "status": None})

    assert task.priority == Priority.MEDIUM
    assert task.status == TaskStatus.TODO
    assert task.completed is False
    assert task.due_at is None and task.category_id is None
    assert task.order == 0


@pytest.mark.parametrize("status", list(TaskStatus))
def test_status_patch_keeps_completed_in_lockstep(status: TaskStatus) -> None:
    patch = status_patch(status)
    assert patch["status"] == status.value
    assert patch["completed"] is (status == TaskStatus.DONE)


def test_toggle_flips_between_todo_and_done() -> None:
    task = Task.from_row({"id": "t1", "title": "x", "status": "in-progress"})

    done = task.with_patch(toggle_patch(task))
    assert (done.status, done.completed) == (TaskStatus.DONE, True)

    again = done.with_patch(toggle_patch(done))
    assert (again.status, again.completed) == (TaskStatus.TODO, False)


def test_with_patch_never_changes_id() -> None:
    task = Task.from_row({"id": "t1", "title": "x"})
    assert task.with_patch({"id": "other", "title": "y"}).id == "t1"


def test_reminder_state_machine() -> None:
    r = Reminder.from_row({"id": "r1", "task_id": "t1", "remind_at": 100.0, "triggered": 0})

    assert r.state == ReminderState.PENDING
    assert not r.is_due(99.0)
    assert r.is_due(100.0)

    fired = Reminder.from_row({"id": "r1", "task_id": "t1", "remind_at": 100.0, "triggered": True})
    assert fired.state == ReminderState.FIRED
    assert not fired.is_due(1_000.0)


def test_reminder_presets_without_due_date() -> None:
    now = datetime(2024, 5, 13, 10, 0, tzinfo=timezone.utc)
    presets = reminder_presets(now, tz=timezone.utc)

    assert [p.value for p in presets] == ["15min", "30min", "1hour", "3hours", "tomorrow"]
    assert presets[0].remind_at == (now + timedelta(minutes=15)).timestamp()
    assert presets[-1].remind_at == datetime(2024, 5, 14, 9, 0, tzinfo=timezone.utc).timestamp()


def test_reminder_presets_with_due_date_drop_past_options() -> None:
    now = datetime(2024, 5, 13, 10, 0, tzinfo=timezone.utc)

    due_soon = (now + timedelta(minutes=30)).timestamp()
    values = [p.value for p in reminder_presets(now, due_at=due_soon, tz=timezone.utc)]
    assert values[0] == "due"
    assert "1hour-before" not in values

    due_later = (now + timedelta(hours=5)).timestamp()
    values = [p.value for p in reminder_presets(now, due_at=due_later, tz=timezone.utc)]
    assert values[:2] == ["due", "1hour-before"]
