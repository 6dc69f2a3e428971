# src/taskpilot/sync/errors.py

from __future__ import annotations


class TaskPilotError(Exception):
    """Base class for every error raised by taskpilot."""


class ValidationError(TaskPilotError):
    """Input rejected before any remote call; `message` is safe to show to the user."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


class NotAuthenticatedError(TaskPilotError):
    """An operation that needs a session was attempted without one."""


class BackendError(TaskPilotError):
    """Storage, HTTP or object-store failure reported by a backend."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class AuthError(BackendError):
    """Credentials rejected or session expired."""


class RemoteError(TaskPilotError):
    """
    A remote call made by the sync layer failed.

    The backend exception is chained as __cause__.
    """

    def __init__(self, operation: str, table: str) -> None:
        super().__init__(f"{operation} on {table} failed")
        self.operation = operation
        self.table = table
