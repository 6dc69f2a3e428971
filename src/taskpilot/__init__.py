"""
taskpilot: personal task-management client core.

Subpackages:
- models: entities (Task, Category, Attachment, Reminder, Notification)
- store: in-memory mirror of remote rows with idempotent apply helpers
- sync: remote write/read paths, validation, optimistic transactions
- scheduler: reminder polling loop that emits notifications
- views: pure list/board/calendar/planner projections
- backend: SQLite, local object storage, realtime hub, hosted REST client
- core: ports (Protocols) and the session composition root
"""

__version__ = "0.1.0"
