"""
Sync layer.

Components:
- errors.py: exception taxonomy
- validation.py: client-side checks run before any remote call
- transaction.py: generic optimistic attempt/rollback helper
- base.py: shared plumbing (remote-call wrapper, notices)
- tasks.py: tasks + categories
- attachments.py: file uploads bound to tasks
- notifications.py: reminders, notifications, realtime merge
"""
