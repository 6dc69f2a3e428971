"""
Reminder scheduler.

Components:
- reminder_scheduler.py: one-tick processor, polling loop, session-owned runner
- presets.py: quick-pick reminder times
"""
