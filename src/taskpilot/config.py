# src/taskpilot/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app.
- No secrets required at import time (the REST backend only needs them when selected).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

ENV_PREFIX = "TASKPILOT"

BACKENDS = ("sqlite", "rest")


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _load_dotenv_if_available() -> None:
    """Load .env locally if python-dotenv is installed. Safe no-op otherwise."""
    try:
        from dotenv import load_dotenv  # type: ignore
    except ImportError:
        return
    load_dotenv(override=False)


_load_dotenv_if_available()


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Backend selection ----
    backend: str

    # ---- Embedded backend (SQLite + local files) ----
    data_dir: Path
    db_path: Path
    storage_dir: Path
    storage_base_url: str
    storage_signing_key: str | None

    # ---- Hosted backend (REST) ----
    rest_url: str
    rest_api_key: str | None
    session_path: Path
    attachments_bucket: str
    http_timeout_seconds: float

    # ---- Behaviour tuning ----
    signed_url_ttl_seconds: int
    reminder_interval_seconds: float
    realtime_poll_seconds: float
    max_upload_bytes: int
    notifications_limit: int

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "taskpilot")
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        backend = _env(_k("BACKEND"), "sqlite").strip().lower()
        if backend not in BACKENDS:
            backend = "sqlite"

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskpilot"))
        db_path = _env_path(_k("DB_PATH"), data_dir / "taskpilot.sqlite3")
        storage_dir = _env_path(_k("STORAGE_DIR"), data_dir / "objects")
        storage_base_url = _env(_k("STORAGE_BASE_URL"), "taskpilot://objects")
        storage_signing_key = _first_env(_k("STORAGE_SIGNING_KEY"), default=None)

        # Accept the hosted platform's conventional names as fallbacks.
        rest_url = (_first_env(_k("REST_URL"), "SUPABASE_URL", default="") or "").strip()
        rest_api_key = _first_env(_k("REST_API_KEY"), "SUPABASE_ANON_KEY", default=None)
        session_path = _env_path(_k("SESSION_PATH"), data_dir / "session.json")
        attachments_bucket = _env(_k("ATTACHMENTS_BUCKET"), "task-attachments")
        http_timeout_seconds = _env_float(_k("HTTP_TIMEOUT_SECONDS"), 30.0)

        signed_url_ttl_seconds = _env_int(_k("SIGNED_URL_TTL_SECONDS"), 3600)
        reminder_interval_seconds = _env_float(_k("REMINDER_INTERVAL_SECONDS"), 60.0)
        realtime_poll_seconds = _env_float(_k("REALTIME_POLL_SECONDS"), 15.0)
        max_upload_bytes = _env_int(_k("MAX_UPLOAD_BYTES"), 20 * 1024 * 1024)
        notifications_limit = _env_int(_k("NOTIFICATIONS_LIMIT"), 50)

        return Settings(
            app_name=app_name,
            log_level=log_level,
            backend=backend,
            data_dir=data_dir,
            db_path=db_path,
            storage_dir=storage_dir,
            storage_base_url=storage_base_url,
            storage_signing_key=storage_signing_key,
            rest_url=rest_url,
            rest_api_key=rest_api_key,
            session_path=session_path,
            attachments_bucket=attachments_bucket,
            http_timeout_seconds=http_timeout_seconds,
            signed_url_ttl_seconds=signed_url_ttl_seconds,
            reminder_interval_seconds=reminder_interval_seconds,
            realtime_poll_seconds=realtime_poll_seconds,
            max_upload_bytes=max_upload_bytes,
            notifications_limit=notifications_limit,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
