# tests/test_notifications.py

from __future__ import annotations

import pytest

from taskpilot.core.ports import ChangeEvent
from taskpilot.core.session import AppSession

from .fakes import RecordingNotifier


async def _notify(session: AppSession, title: str) -> str:
    n = await session.notifications.insert_notification(title=title, message=None, type="info")
    return n.id


@pytest.mark.asyncio
async def test_realtime_echo_does_not_double_count(session: AppSession) -> None:
    assert session.notifications.realtime_attached

    # insert_notification applies locally and the hub echoes the same row back.
    await _notify(session, "Hello")
    assert len(session.store.notifications) == 1
    assert session.store.unread_count == 1


@pytest.mark.asyncio
async def test_externally_created_notification_arrives_via_realtime(session: AppSession) -> None:
    user_id = session.user.user_id
    await session.backend.tables.inner.insert(
        "notifications", [{"user_id": user_id, "title": "From elsewhere", "type": "info"}]
    )

    assert [n.title for n in session.store.notifications] == ["From elsewhere"]
    assert session.store.unread_count == 1


@pytest.mark.asyncio
async def test_duplicate_delivery_is_idempotent(session: AppSession) -> None:
    row = {"id": "n1", "user_id": session.user.user_id, "title": "Ping", "type": "info", "read": False}
    event = ChangeEvent(table="notifications", event="INSERT", new=row, old=None)

    session.backend.realtime.publish(event)
    session.backend.realtime.publish(event)

    assert len(session.store.notifications) == 1
    assert session.store.unread_count == 1


@pytest.mark.asyncio
async def test_mark_read_and_mark_all_read(session: AppSession) -> None:
    first = await _notify(session, "one")
    await _notify(session, "two")
    await _notify(session, "three")
    assert session.store.unread_count == 3

    assert await session.notifications.mark_read(first) is True
    assert session.store.unread_count == 2

    assert await session.notifications.mark_all_read() is True
    assert session.store.unread_count == 0

    rows = await session.backend.tables.inner.select("notifications", filters={"read": False})
    assert rows == []


@pytest.mark.asyncio
async def test_mark_read_rolls_back_on_failure(session: AppSession, notifier: RecordingNotifier) -> None:
    nid = await _notify(session, "one")
    session.backend.tables.fail("update", "notifications")

    assert await session.notifications.mark_read(nid) is False
    assert session.store.get_notification(nid).read is False
    assert notifier.errors == ["Failed to mark notification as read"]


@pytest.mark.asyncio
async def test_newest_first_and_limit(session: AppSession) -> None:
    for i in range(5):
        await _notify(session, f"n{i}")

    session.notifications._limit = 3
    await session.notifications.fetch_notifications()

    assert [n.title for n in session.store.notifications] == ["n4", "n3", "n2"]


@pytest.mark.asyncio
async def test_delete_and_clear_all(session: AppSession) -> None:
    first = await _notify(session, "one")
    await _notify(session, "two")

    assert await session.notifications.delete_notification(first) is True
    assert [n.title for n in session.store.notifications] == ["two"]

    assert await session.notifications.clear_all() is True
    assert session.store.notifications == []
    assert session.backend.tables.inner.count("notifications") == 0


@pytest.mark.asyncio
async def test_detach_stops_realtime(session: AppSession) -> None:
    session.notifications.detach_realtime()
    assert not session.notifications.realtime_attached

    await session.backend.tables.inner.insert(
        "notifications", [{"user_id": session.user.user_id, "title": "Missed", "type": "info"}]
    )
    assert session.store.notifications == []
