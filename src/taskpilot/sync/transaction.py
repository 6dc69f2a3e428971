# src/taskpilot/sync/transaction.py

from __future__ import annotations

"""
Optimistic update helper.

attempt() applies a local change, awaits the remote call, and on failure runs
the rollback. It is the single place where "optimistic then confirm" is
spelled out; the per-entity sync code only supplies the three callables.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class Confirmed(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(slots=True, frozen=True)
class RolledBack:
    error: BaseException

    @property
    def ok(self) -> bool:
        return False


Outcome = Confirmed[T] | RolledBack


async def attempt(
    *,
    apply: Callable[[], Any],
    remote: Callable[[], Awaitable[T]],
    rollback: Callable[[], Any],
) -> Confirmed[T] | RolledBack:
    """
    Run one optimistic transaction.

    apply:    synchronous local mutation (runs first, before any await)
    remote:   coroutine factory performing the remote write
    rollback: undo for `apply`; may be sync or async (e.g. a re-fetch)

    Exceptions from `remote` are captured in RolledBack; a failing rollback is
    logged and does not mask the remote error.
    """
    apply()
    try:
        value = await remote()
    except Exception as e:
        try:
            result = rollback()
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Rollback failed after remote error: %r", e)
        return RolledBack(error=e)
    return Confirmed(value=value)
