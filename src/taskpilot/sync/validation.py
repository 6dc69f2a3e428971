# src/taskpilot/sync/validation.py

from __future__ import annotations

"""
Client-side checks that run before any remote call.

Every function raises ValidationError with a user-facing message and
returns the normalized value on success.
"""

import time

from ..models import Priority, TaskStatus
from .errors import ValidationError

ALLOWED_UPLOAD_TYPES: frozenset[str] = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "video/mp4",
        "video/webm",
        "video/quicktime",
        "application/pdf",
        "text/plain",
        "text/markdown",
    }
)

MAX_UPLOAD_BYTES = 20 * 1024 * 1024

MAX_TITLE_LENGTH = 500


def validate_title(title: str | None) -> str:
    text = (title or "").strip()
    if not text:
        raise ValidationError("title", "Task title cannot be empty")
    if len(text) > MAX_TITLE_LENGTH:
        raise ValidationError("title", f"Task title must be under {MAX_TITLE_LENGTH} characters")
    return text


def validate_priority(priority: Priority | str) -> Priority:
    try:
        return Priority(priority)
    except ValueError:
        raise ValidationError("priority", f"Unknown priority: {priority!r}") from None


def validate_status(status: TaskStatus | str) -> TaskStatus:
    try:
        return TaskStatus(status)
    except ValueError:
        raise ValidationError("status", f"Unknown status: {status!r}") from None


def validate_category_name(name: str | None) -> str:
    text = (name or "").strip()
    if not text:
        raise ValidationError("name", "Category name cannot be empty")
    return text


def validate_reminder_time(remind_at: float, *, now_ts: float | None = None) -> float:
    """A reminder must fire strictly after the moment it is created."""
    if now_ts is None:
        now_ts = time.time()
    if float(remind_at) <= float(now_ts):
        raise ValidationError("remind_at", "Please select a future time")
    return float(remind_at)


def validate_upload(
    *,
    file_name: str,
    content_type: str,
    size: int,
    max_bytes: int = MAX_UPLOAD_BYTES,
) -> None:
    if not (file_name or "").strip():
        raise ValidationError("file_name", "File name is required")
    if content_type not in ALLOWED_UPLOAD_TYPES:
        raise ValidationError("file_type", "File type not supported")
    if size > max_bytes:
        limit_mb = max_bytes // (1024 * 1024)
        raise ValidationError("file_size", f"File size must be under {limit_mb}MB")
