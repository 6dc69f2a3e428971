# tests/conftest.py

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio

from taskpilot.backend.sqlite_backend import SqliteBackend
from taskpilot.core.session import AppSession

from .fakes import CountingStorage, FlakyTables, RecordingNotifier

TEST_EMAIL = "user@example.com"
TEST_PASSWORD = "secret123"


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with the session and backends.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="taskpilot-test",
        data_dir=tmp_path,
        db_path=tmp_path / "taskpilot.sqlite3",
        storage_dir=tmp_path / "objects",
        storage_base_url="taskpilot://objects",
        storage_signing_key="test-signing-key",
        signed_url_ttl_seconds=3600,
        # Long interval: tests drive scheduler ticks explicitly.
        reminder_interval_seconds=3600.0,
        max_upload_bytes=20 * 1024 * 1024,
        notifications_limit=50,
    )


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def backend(settings: SimpleNamespace) -> SqliteBackend:
    """
    Real embedded backend on tmp_path, with failure injection on the table store.

    NOTE: SQLite is kept real here because the row scoping, cascades and
    change events are part of what we want to test.
    """
    b = SqliteBackend(
        settings.db_path,
        storage_dir=settings.storage_dir,
        signing_key=settings.storage_signing_key,
        storage_base_url=settings.storage_base_url,
        hash_iterations=1_000,
    )
    b.tables = FlakyTables(b.tables)
    b.storage = CountingStorage(b.storage)
    return b


@pytest_asyncio.fixture()
async def session(
    backend: SqliteBackend,
    notifier: RecordingNotifier,
    settings: SimpleNamespace,
) -> AsyncIterator[AppSession]:
    """Signed-in AppSession with default categories loaded and notices cleared."""
    app = AppSession(backend=backend, notifier=notifier, settings=settings)
    assert await app.sign_up(TEST_EMAIL, TEST_PASSWORD) is not None
    notifier.clear()
    yield app
    await app.close()
