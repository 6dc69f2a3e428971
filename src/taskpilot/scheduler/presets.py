# src/taskpilot/scheduler/presets.py

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, tzinfo


@dataclass(slots=True, frozen=True)
class ReminderPreset:
    label: str
    value: str
    remind_at: float


def reminder_presets(
    now: datetime,
    *,
    due_at: float | None = None,
    tz: tzinfo | None = None,
) -> list[ReminderPreset]:
    """
    Quick-pick reminder times relative to `now` (an aware datetime).

    "tomorrow" is 09:00 local time the next day. When the task has a due date,
    "due" and "1hour-before" lead the list; options already in the past are dropped.
    """
    local_now = now.astimezone(tz)
    tomorrow_9 = datetime.combine(local_now.date() + timedelta(days=1), time(9, 0), tzinfo=local_now.tzinfo)

    presets = [
        ReminderPreset("In 15 minutes", "15min", (local_now + timedelta(minutes=15)).timestamp()),
        ReminderPreset("In 30 minutes", "30min", (local_now + timedelta(minutes=30)).timestamp()),
        ReminderPreset("In 1 hour", "1hour", (local_now + timedelta(hours=1)).timestamp()),
        ReminderPreset("In 3 hours", "3hours", (local_now + timedelta(hours=3)).timestamp()),
        ReminderPreset("Tomorrow morning", "tomorrow", tomorrow_9.timestamp()),
    ]
    if due_at is not None:
        presets = [
            ReminderPreset("At due date/time", "due", float(due_at)),
            ReminderPreset("1 hour before due", "1hour-before", float(due_at) - 3600.0),
            *presets,
        ]
    return [p for p in presets if p.remind_at > local_now.timestamp()]
