# src/taskpilot/backend/realtime.py

from __future__ import annotations

import itertools
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ..core.ports import ChangeCallback, ChangeEvent

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HubSubscription:
    hub: RealtimeHub
    sub_id: int
    table: str
    filters: dict[str, Any]
    callback: ChangeCallback

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        row = event.new if event.new is not None else event.old
        if row is None:
            return False
        return all(row.get(k) == v for k, v in self.filters.items())

    def unsubscribe(self) -> None:
        self.hub.remove(self.sub_id)


class RealtimeHub:
    """
    In-process change feed for the embedded backend.

    Writers publish() after each committed row change; subscribers get the
    events whose table and column filters match. Callbacks run synchronously
    on the publisher's thread (the event loop); a failing callback is logged
    and skipped.
    """

    def __init__(self) -> None:
        self._subs: dict[int, HubSubscription] = {}
        self._ids = itertools.count(1)

    def subscribe(
        self,
        table: str,
        *,
        filters: Mapping[str, Any] | None,
        callback: ChangeCallback,
    ) -> HubSubscription:
        sub = HubSubscription(
            hub=self,
            sub_id=next(self._ids),
            table=table,
            filters=dict(filters or {}),
            callback=callback,
        )
        self._subs[sub.sub_id] = sub
        logger.debug("Realtime subscribe id=%s table=%s filters=%s", sub.sub_id, table, sub.filters)
        return sub

    def remove(self, sub_id: int) -> None:
        self._subs.pop(sub_id, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

    def publish(self, event: ChangeEvent) -> int:
        delivered = 0
        for sub in list(self._subs.values()):
            if not sub.matches(event):
                continue
            try:
                sub.callback(event)
                delivered += 1
            except Exception:
                logger.exception("Realtime callback failed sub=%s table=%s", sub.sub_id, event.table)
        return delivered
