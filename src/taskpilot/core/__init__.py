"""
Core wiring.

- ports: Protocols for auth, tables, object storage, realtime and notices
- session: AppSession, the per-user composition of store, sync and scheduler
- bootstrap: backend selection from Settings
"""
