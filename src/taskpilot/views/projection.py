# src/taskpilot/views/projection.py

from __future__ import annotations

"""
Read-side projections for the four view modes.

Everything here is a pure function of (tasks, config). Nothing is cached or
persisted; the view layer calls project() whenever the store changes.
"""

import calendar
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from enum import StrEnum

from ..models import Task, TaskStatus


class ViewMode(StrEnum):
    LIST = "list"
    BOARD = "board"
    CALENDAR = "calendar"
    PLANNER = "planner"


class StatusFilter(StrEnum):
    ALL = "all"
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass(slots=True, frozen=True)
class ViewConfig:
    """
    Tagged view configuration.

    `mode` selects the projection; `anchor` is the day the calendar month or
    planner week is built around (defaults to today in `tz`).
    """

    mode: ViewMode = ViewMode.LIST
    status: StatusFilter = StatusFilter.ALL
    category_id: str | None = None
    search: str = ""
    anchor: date | None = None
    tz: tzinfo | None = None


@dataclass(slots=True, frozen=True)
class StatusCounts:
    all: int
    active: int
    completed: int

    @property
    def progress(self) -> int:
        """Completed share in whole percent (0 when there are no tasks)."""
        if self.all == 0:
            return 0
        return round(self.completed * 100 / self.all)


@dataclass(slots=True, frozen=True)
class ListProjection:
    tasks: list[Task]
    counts: StatusCounts
    mode: ViewMode = ViewMode.LIST


@dataclass(slots=True, frozen=True)
class BoardProjection:
    columns: dict[TaskStatus, list[Task]]
    counts: StatusCounts
    mode: ViewMode = ViewMode.BOARD


@dataclass(slots=True, frozen=True)
class CalendarProjection:
    month: date
    days: dict[date, list[Task]]
    counts: StatusCounts
    mode: ViewMode = ViewMode.CALENDAR


@dataclass(slots=True, frozen=True)
class WeeklyStats:
    total: int
    completed: int
    pending: int
    completion_rate: int
    trend: int  # completed this week minus completed the week before


@dataclass(slots=True, frozen=True)
class PlannerProjection:
    week_start: date
    days: dict[date, list[Task]]
    today: list[Task]
    overdue: list[Task]
    stats: WeeklyStats
    counts: StatusCounts
    mode: ViewMode = ViewMode.PLANNER


Projection = ListProjection | BoardProjection | CalendarProjection | PlannerProjection


# ---- building blocks ----


def status_counts(tasks: Iterable[Task]) -> StatusCounts:
    total = active = completed = 0
    for task in tasks:
        total += 1
        if task.completed:
            completed += 1
        else:
            active += 1
    return StatusCounts(all=total, active=active, completed=completed)


def filter_tasks(
    tasks: Iterable[Task],
    *,
    status: StatusFilter | str = StatusFilter.ALL,
    category_id: str | None = None,
    search: str = "",
) -> list[Task]:
    status = StatusFilter(status)
    needle = (search or "").strip().casefold()

    out: list[Task] = []
    for task in tasks:
        if status == StatusFilter.ACTIVE and task.completed:
            continue
        if status == StatusFilter.COMPLETED and not task.completed:
            continue
        if category_id is not None and task.category_id != category_id:
            continue
        if needle and needle not in task.title.casefold():
            continue
        out.append(task)
    return out


def board_column(task: Task) -> TaskStatus:
    # completed wins over a stale raw status (legacy rows).
    if task.is_done:
        return TaskStatus.DONE
    return task.status


def local_day(ts: float, tz: tzinfo | None = None) -> date:
    return datetime.fromtimestamp(ts, tz=tz).astimezone(tz).date()


def today(tz: tzinfo | None = None) -> date:
    return datetime.now(tz).astimezone(tz).date()


def is_overdue(task: Task, *, on: date, tz: tzinfo | None = None) -> bool:
    """Open task whose due day is before `on` (due today is not overdue)."""
    if task.completed or task.due_at is None:
        return False
    return local_day(task.due_at, tz) < on


def group_by_due_day(tasks: Iterable[Task], tz: tzinfo | None = None) -> dict[date, list[Task]]:
    """Bucket tasks by the local calendar day of due_at; undated tasks are skipped."""
    out: dict[date, list[Task]] = {}
    for task in tasks:
        if task.due_at is None:
            continue
        out.setdefault(local_day(task.due_at, tz), []).append(task)
    return out


def week_start(day: date) -> date:
    """Monday of the week containing `day`."""
    return day - timedelta(days=day.weekday())


# ---- projections (one per mode) ----


def _narrowed(tasks: Sequence[Task], config: ViewConfig) -> list[Task]:
    return filter_tasks(tasks, status=config.status, category_id=config.category_id, search=config.search)


def list_view(tasks: Sequence[Task], config: ViewConfig) -> ListProjection:
    # Badge counts ignore search and category: they partition the full set by status only.
    return ListProjection(tasks=_narrowed(tasks, config), counts=status_counts(tasks))


def board_view(tasks: Sequence[Task], config: ViewConfig) -> BoardProjection:
    columns: dict[TaskStatus, list[Task]] = {s: [] for s in TaskStatus}
    for task in _narrowed(tasks, config):
        columns[board_column(task)].append(task)
    return BoardProjection(columns=columns, counts=status_counts(tasks))


def calendar_view(tasks: Sequence[Task], config: ViewConfig) -> CalendarProjection:
    anchor = config.anchor or today(config.tz)
    first = anchor.replace(day=1)
    n_days = calendar.monthrange(first.year, first.month)[1]

    grouped = group_by_due_day(_narrowed(tasks, config), config.tz)
    days = {}
    for offset in range(n_days):
        day = first + timedelta(days=offset)
        days[day] = grouped.get(day, [])
    return CalendarProjection(month=first, days=days, counts=status_counts(tasks))


def weekly_stats(tasks: Iterable[Task], start: date, tz: tzinfo | None = None) -> WeeklyStats:
    end = start + timedelta(days=7)
    previous_start = start - timedelta(days=7)

    total = completed = previous_completed = 0
    for task in tasks:
        if task.due_at is None:
            continue
        day = local_day(task.due_at, tz)
        if start <= day < end:
            total += 1
            completed += int(task.completed)
        elif previous_start <= day < start:
            previous_completed += int(task.completed)

    return WeeklyStats(
        total=total,
        completed=completed,
        pending=total - completed,
        completion_rate=round(completed * 100 / total) if total else 0,
        trend=completed - previous_completed,
    )


def planner_view(tasks: Sequence[Task], config: ViewConfig) -> PlannerProjection:
    current = today(config.tz)
    start = week_start(config.anchor or current)

    narrowed = _narrowed(tasks, config)
    grouped = group_by_due_day(narrowed, config.tz)
    days = {}
    for offset in range(7):
        day = start + timedelta(days=offset)
        days[day] = grouped.get(day, [])

    open_tasks = [t for t in narrowed if not t.completed]
    return PlannerProjection(
        week_start=start,
        days=days,
        today=[t for t in open_tasks if t.due_at is not None and local_day(t.due_at, config.tz) == current],
        overdue=[t for t in open_tasks if is_overdue(t, on=current, tz=config.tz)],
        stats=weekly_stats(narrowed, start, config.tz),
        counts=status_counts(tasks),
    )


_PROJECTIONS = {
    ViewMode.LIST: list_view,
    ViewMode.BOARD: board_view,
    ViewMode.CALENDAR: calendar_view,
    ViewMode.PLANNER: planner_view,
}


def project(tasks: Sequence[Task], config: ViewConfig) -> Projection:
    return _PROJECTIONS[ViewMode(config.mode)](tasks, config)
