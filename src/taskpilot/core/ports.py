# src/taskpilot/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The sync layer and scheduler depend on Protocols instead of concrete backends.
This keeps the embedded SQLite backend and the hosted REST backend swappable
and makes testing easier.
"""

from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

Row = dict[str, Any]
# Column name -> value. Every table row carries "id" and "user_id".

TABLES = ("tasks", "categories", "attachments", "reminders", "notifications")


@dataclass(slots=True, frozen=True)
class AuthSession:
    user_id: str
    email: str
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: float | None = None


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    """One realtime row change: event is "INSERT", "UPDATE" or "DELETE"."""

    table: str
    event: str
    new: Row | None
    old: Row | None


ChangeCallback = Callable[[ChangeEvent], None]


class AuthBackend(Protocol):
    def sign_up(self, email: str, password: str) -> Awaitable[AuthSession]: ...
    def sign_in(self, email: str, password: str) -> Awaitable[AuthSession]: ...
    def sign_out(self) -> Awaitable[None]: ...
    def request_password_reset(self, email: str) -> Awaitable[None]: ...
    def current_session(self) -> AuthSession | None: ...


class TableStore(Protocol):
    """
    Row-level CRUD over the five collections.

    Implementations scope every call to the signed-in user and assign
    id / created_at / updated_at on insert.
    """

    def select(
            self,
            table: str,
            *,
            filters: Mapping[str, Any] | None = None,
            order_by: str | None = None,
            descending: bool = False,
            limit: int | None = None,
    ) -> Awaitable[list[Row]]: ...

    def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> Awaitable[list[Row]]: ...

    def update(
            self,
            table: str,
            values: Mapping[str, Any],
            *,
            filters: Mapping[str, Any],
    ) -> Awaitable[list[Row]]: ...

    def delete(self, table: str, *, filters: Mapping[str, Any]) -> Awaitable[int]: ...


class ObjectStorage(Protocol):
    def upload(self, path: str, data: bytes, *, content_type: str) -> Awaitable[str]: ...
    def signed_url(self, path: str, ttl_seconds: int) -> Awaitable[str]: ...
    def remove(self, paths: Sequence[str]) -> Awaitable[None]: ...


class Subscription(Protocol):
    def unsubscribe(self) -> None: ...


class RealtimeFeed(Protocol):
    def subscribe(
            self,
            table: str,
            *,
            filters: Mapping[str, Any] | None,
            callback: ChangeCallback,
    ) -> Subscription: ...


class Notifier(Protocol):
    """
    User-visible notices (the "toast" channel).

    The view layer decides how to render them; the core only reports.
    """

    def info(self, message: str) -> None: ...
    def error(self, message: str) -> None: ...


class Backend(Protocol):
    """Everything a session needs from one hosted (or embedded) backend."""

    auth: AuthBackend
    tables: TableStore
    storage: ObjectStorage
    realtime: RealtimeFeed

    def close(self) -> Awaitable[None]: ...
