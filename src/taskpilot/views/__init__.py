"""View projection: pure read-side transforms over store contents."""

from .projection import (
    BoardProjection,
    CalendarProjection,
    ListProjection,
    PlannerProjection,
    StatusCounts,
    StatusFilter,
    ViewConfig,
    ViewMode,
    WeeklyStats,
    board_column,
    filter_tasks,
    group_by_due_day,
    is_overdue,
    project,
    status_counts,
    week_start,
    weekly_stats,
)

__all__ = [
    "BoardProjection",
    "CalendarProjection",
    "ListProjection",
    "PlannerProjection",
    "StatusCounts",
    "StatusFilter",
    "ViewConfig",
    "ViewMode",
    "WeeklyStats",
    "board_column",
    "filter_tasks",
    "group_by_due_day",
    "is_overdue",
    "project",
    "status_counts",
    "week_start",
    "weekly_stats",
]
