# src/taskpilot/core/bootstrap.py

"""
Composition root.

- loads settings once,
- ensures local (gitignored) directories exist,
- picks the concrete backend (embedded SQLite or hosted REST),
- wires it into an AppSession.
"""

from __future__ import annotations

import logging
import secrets
from pathlib import Path

from ..backend.rest import RestBackend
from ..backend.sqlite_backend import SqliteBackend
from ..config import Settings, get_settings
from ..logging_setup import level_from_name, setup_logging
from .ports import Backend, Notifier
from .session import AppSession

logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Notifier that writes user-visible notices to the log (headless use)."""

    def __init__(self, name: str = "taskpilot.notices") -> None:
        self._log = logging.getLogger(name)

    def info(self, message: str) -> None:
        self._log.info("%s", message)

    def error(self, message: str) -> None:
        self._log.error("%s", message)


def init_logging(settings: Settings | None = None) -> Path:
    """Configure logging from settings. Call once, before create_session()."""
    if settings is None:
        settings = get_settings()
    return setup_logging(log_dir=settings.data_dir, console_level=level_from_name(settings.log_level))


def _ensure_local_dirs(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    settings.storage_dir.mkdir(parents=True, exist_ok=True)
    settings.session_path.parent.mkdir(parents=True, exist_ok=True)


def _signing_key(settings: Settings) -> str:
    if settings.storage_signing_key:
        return settings.storage_signing_key
    # Without a configured key, signed URLs only stay valid for this process.
    logger.warning("TASKPILOT_STORAGE_SIGNING_KEY is not set; using an ephemeral key")
    return secrets.token_hex(32)


def build_backend(settings: Settings | None = None) -> Backend:
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    if settings.backend == "rest":
        if not settings.rest_url or not settings.rest_api_key:
            raise ValueError("REST backend selected: set TASKPILOT_REST_URL and TASKPILOT_REST_API_KEY")
        return RestBackend(
            settings.rest_url,
            settings.rest_api_key,
            session_path=settings.session_path,
            bucket=settings.attachments_bucket,
            timeout=settings.http_timeout_seconds,
            poll_seconds=settings.realtime_poll_seconds,
        )

    return SqliteBackend(
        settings.db_path,
        storage_dir=settings.storage_dir,
        signing_key=_signing_key(settings),
        storage_base_url=settings.storage_base_url,
    )


def create_session(
    *,
    settings: Settings | None = None,
    backend: Backend | None = None,
    notifier: Notifier | None = None,
) -> AppSession:
    """
    Create an AppSession from the provided settings.

    Keeping settings and backend injectable makes the app easier to test.
    """
    if settings is None:
        settings = get_settings()
    if backend is None:
        backend = build_backend(settings)
    logger.info("Creating %s session backend=%s", settings.app_name, type(backend).__name__)
    return AppSession(backend=backend, notifier=notifier or LoggingNotifier(), settings=settings)
