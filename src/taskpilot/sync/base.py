# src/taskpilot/sync/base.py

from __future__ import annotations

import logging
from collections.abc import Awaitable
from typing import TypeVar

from ..core.ports import AuthBackend, Notifier, TableStore
from ..store.local_store import LocalStore
from .errors import NotAuthenticatedError, RemoteError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncBase:
    """
    Shared plumbing for the per-area sync services.

    Every remote call goes through _call(), which converts any backend failure
    into RemoteError (backend exception chained). Public sync methods catch
    those at their boundary and report through the notifier; nothing is
    re-raised to the view layer.
    """

    def __init__(
        self,
        *,
        store: LocalStore,
        tables: TableStore,
        auth: AuthBackend,
        notifier: Notifier,
    ) -> None:
        self._store = store
        self._tables = tables
        self._auth = auth
        self._notifier = notifier

    @property
    def store(self) -> LocalStore:
        return self._store

    def _user_id(self) -> str:
        session = self._auth.current_session()
        if session is None:
            raise NotAuthenticatedError("Not signed in")
        return session.user_id

    async def _call(self, operation: str, table: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except Exception as e:
            raise RemoteError(operation, table) from e

    def _fail(self, message: str, error: BaseException) -> None:
        cause = error.__cause__ or error
        logger.error("%s: %r", message, cause, exc_info=cause)
        self._notifier.error(message)

    def _invalid(self, error: ValidationError) -> None:
        logger.info("Rejected input field=%s: %s", error.field, error.message)
        self._notifier.error(error.message)

    def _record_load_error(self, collection: str, error: BaseException) -> None:
        self._store.load_errors[collection] = str(error)

    def _clear_load_error(self, collection: str) -> None:
        self._store.load_errors.pop(collection, None)
