# tests/test_task_sync.py

from __future__ import annotations

import pytest

from taskpilot.core.session import AppSession
from taskpilot.models import Priority, TaskStatus
from taskpilot.views import StatusFilter, ViewConfig, project

from .fakes import RecordingNotifier


async def _remote_ids(session: AppSession) -> list[str]:
    rows = await session.backend.tables.inner.select("tasks", order_by="order")
    return [r["id"] for r in rows]


async def _abc(session: AppSession):
    # New tasks go on top, so add in reverse to get [A, B, C].
    c = await session.tasks.add_task("C")
    b = await session.tasks.add_task("B")
    a = await session.tasks.add_task("A")
    assert [t.id for t in session.store.tasks] == [a.id, b.id, c.id]
    return a, b, c


@pytest.mark.asyncio
async def test_buy_milk_scenario(session: AppSession, notifier: RecordingNotifier) -> None:
    task = await session.tasks.add_task("Buy milk", priority="low")
    assert task is not None
    assert task.priority == Priority.LOW
    assert task.category_id is None and task.due_at is None
    assert notifier.infos == ["Task added"]

    active = project(session.store.tasks, ViewConfig(status=StatusFilter.ACTIVE))
    assert [t.title for t in active.tasks] == ["Buy milk"]
    assert (active.counts.all, active.counts.active, active.counts.completed) == (1, 1, 0)

    toggled = await session.tasks.toggle_task(task.id)
    assert toggled is not None
    assert toggled.completed is True
    assert toggled.status == TaskStatus.DONE

    counts = project(session.store.tasks, ViewConfig()).counts
    assert (counts.active, counts.completed) == (0, 1)

    rows = await session.backend.tables.inner.select("tasks")
    assert rows[0]["completed"] is True
    assert rows[0]["status"] == "done"


@pytest.mark.asyncio
async def test_status_changes_keep_completed_in_lockstep(session: AppSession) -> None:
    task = await session.tasks.add_task("Write report")

    moved = await session.tasks.update_status(task.id, "in-progress")
    assert (moved.status, moved.completed) == (TaskStatus.IN_PROGRESS, False)

    moved = await session.tasks.update_status(task.id, TaskStatus.DONE)
    assert (moved.status, moved.completed) == (TaskStatus.DONE, True)

    back = await session.tasks.toggle_task(task.id)
    assert (back.status, back.completed) == (TaskStatus.TODO, False)


@pytest.mark.asyncio
async def test_new_tasks_go_on_top(session: AppSession) -> None:
    first = await session.tasks.add_task("first")
    second = await session.tasks.add_task("second")

    assert first.order == 0
    assert second.order == -1
    assert [t.id for t in session.store.tasks] == [second.id, first.id]


@pytest.mark.asyncio
async def test_add_task_rejects_bad_input_before_remote(session: AppSession, notifier: RecordingNotifier) -> None:
    tables = session.backend.tables

    assert await session.tasks.add_task("   ") is None
    assert await session.tasks.add_task("ok", category_id="no-such-category") is None
    assert await session.tasks.add_task("ok", priority="urgent") is None

    assert notifier.errors[:2] == ["Task title cannot be empty", "Unknown category"]
    assert tables.count("insert", "tasks") == 0
    assert session.store.tasks == []


@pytest.mark.asyncio
async def test_add_task_failure_leaves_store_untouched(session: AppSession, notifier: RecordingNotifier) -> None:
    session.backend.tables.fail("insert", "tasks")

    assert await session.tasks.add_task("Buy milk") is None
    assert session.store.tasks == []
    assert notifier.errors == ["Failed to add task"]


@pytest.mark.asyncio
async def test_failed_update_refetches_remote_state(session: AppSession, notifier: RecordingNotifier) -> None:
    task = await session.tasks.add_task("Buy milk")
    session.backend.tables.fail("update", "tasks")

    assert await session.tasks.toggle_task(task.id) is None

    restored = session.store.get_task(task.id)
    assert restored.completed is False
    assert restored.status == TaskStatus.TODO
    assert notifier.errors == ["Failed to update task"]


@pytest.mark.asyncio
async def test_edit_task_patches_only_given_fields(session: AppSession) -> None:
    work = session.store.categories[0]
    task = await session.tasks.add_task("Draft", description="notes")

    edited = await session.tasks.edit_task(task.id, title="Final", category_id=work.id, due_at=1_700_000_000.0)
    assert edited.title == "Final"
    assert edited.description == "notes"
    assert edited.category_id == work.id
    assert edited.due_at == 1_700_000_000.0

    cleared = await session.tasks.edit_task(task.id, category_id=None, due_at=None)
    assert cleared.category_id is None and cleared.due_at is None
    assert cleared.title == "Final"


@pytest.mark.asyncio
async def test_reorder_moves_last_before_first(session: AppSession) -> None:
    a, b, c = await _abc(session)

    assert await session.tasks.reorder(c.id, a.id) is True

    tasks = session.store.tasks
    assert [t.id for t in tasks] == [c.id, a.id, b.id]
    assert [t.order for t in tasks] == [0, 1, 2]
    assert await _remote_ids(session) == [c.id, a.id, b.id]


@pytest.mark.asyncio
@pytest.mark.parametrize("contiguous", [False, True], ids=["fresh-orders", "contiguous-orders"])
async def test_reorder_failure_discards_permutation_and_refetches(
    session: AppSession, notifier: RecordingNotifier, contiguous: bool
) -> None:
    a, b, c = await _abc(session)
    if contiguous:
        assert await session.tasks.reorder_to([a.id, b.id, c.id]) is True
        assert [t.order for t in session.store.tasks] == [0, 1, 2]
    session.backend.tables.fail("update", "tasks", match=lambda d: d["filters"].get("id") == b.id)

    assert await session.tasks.reorder(c.id, a.id) is False
    assert notifier.errors == ["Failed to reorder tasks"]

    # The store mirrors whatever the backend ends up with, never the optimistic guess.
    tasks = session.store.tasks
    assert [t.id for t in tasks] == await _remote_ids(session)
    assert len({t.order for t in tasks}) == 3

    remote = await session.backend.tables.inner.select("tasks", order_by="order")
    assert sorted(r["order"] for r in remote) == sorted(t.order for t in tasks)
    assert len({r["order"] for r in remote}) == 3


@pytest.mark.asyncio
async def test_partial_reorder_from_contiguous_orders_is_renumbered(session: AppSession) -> None:
    a, b, c = await _abc(session)
    assert await session.tasks.reorder_to([a.id, b.id, c.id]) is True
    session.backend.tables.fail("update", "tasks", match=lambda d: d["filters"].get("id") == b.id)

    # C -> 0 and A -> 1 land, B's move to 2 fails: A and B would both sit at 1.
    assert await session.tasks.reorder(c.id, a.id) is False

    tasks = session.store.tasks
    assert [t.id for t in tasks] == [c.id, b.id, a.id]
    assert [t.order for t in tasks] == [0, 1, 2]
    assert await _remote_ids(session) == [c.id, b.id, a.id]


@pytest.mark.asyncio
async def test_reorder_rejects_non_permutation(session: AppSession) -> None:
    a, b, _c = await _abc(session)

    assert await session.tasks.reorder_to([a.id, b.id]) is False
    assert session.backend.tables.count("update", "tasks") == 0


@pytest.mark.asyncio
async def test_delete_task_removes_attachments_and_reminders(session: AppSession) -> None:
    task = await session.tasks.add_task("With files")
    attachment = await session.attachments.upload(
        task.id, file_name="photo.png", content_type="image/png", data=b"\x89PNG..."
    )
    reminder = await session.notifications.add_reminder(task.id, 4_102_444_800.0)  # 2100-01-01
    assert attachment is not None and reminder is not None

    assert await session.tasks.delete_task(task.id) is True

    assert session.store.get_task(task.id) is None
    assert session.store.attachments_for(task.id) == []
    assert session.store.reminders_for(task.id) == []

    inner = session.backend.tables.inner
    assert inner.count("attachments") == 0
    assert inner.count("reminders") == 0
    assert attachment.storage_path in session.backend.storage.removed


@pytest.mark.asyncio
async def test_delete_task_failure_keeps_row(session: AppSession, notifier: RecordingNotifier) -> None:
    task = await session.tasks.add_task("Keep me")
    session.backend.tables.fail("delete", "tasks")

    assert await session.tasks.delete_task(task.id) is False
    assert session.store.get_task(task.id) is not None
    assert notifier.errors == ["Failed to delete task"]


@pytest.mark.asyncio
async def test_default_categories_seeded_once(session: AppSession) -> None:
    names = [c.name for c in session.store.categories]
    assert names == ["Work", "Personal", "Shopping", "Health", "Learning"]

    await session.tasks.fetch_categories()
    assert len(session.store.categories) == 5


@pytest.mark.asyncio
async def test_delete_category_detaches_tasks(session: AppSession) -> None:
    work = session.store.categories[0]
    task = await session.tasks.add_task("Standup", category_id=work.id)

    assert await session.tasks.delete_category(work.id) is True

    assert session.store.get_category(work.id) is None
    assert session.store.get_task(task.id).category_id is None
    rows = await session.backend.tables.inner.select("tasks", filters={"id": task.id})
    assert rows[0]["category_id"] is None


@pytest.mark.asyncio
async def test_update_category_rolls_back_on_failure(session: AppSession, notifier: RecordingNotifier) -> None:
    work = session.store.categories[0]
    session.backend.tables.fail("update", "categories")

    assert await session.tasks.update_category(work.id, name="Office") is None
    assert session.store.get_category(work.id).name == "Work"
    assert notifier.errors == ["Failed to update category"]

    renamed = await session.tasks.update_category(work.id, name="Office", color="0 0% 50%")
    assert (renamed.name, renamed.color) == ("Office", "0 0% 50%")


@pytest.mark.asyncio
async def test_failed_fetch_empties_collection(session: AppSession, notifier: RecordingNotifier) -> None:
    await session.tasks.add_task("Buy milk")
    session.backend.tables.fail("select", "tasks")

    assert await session.tasks.fetch_tasks() is False
    assert session.store.tasks == []
    assert "tasks" in session.store.load_errors
    assert notifier.errors == ["Failed to load tasks"]

    assert await session.tasks.fetch_tasks() is True
    assert [t.title for t in session.store.tasks] == ["Buy milk"]
    assert "tasks" not in session.store.load_errors
