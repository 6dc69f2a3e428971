"""
Concrete backends behind the core ports.

- sqlite_backend: embedded accounts + tables in one SQLite file
- object_storage: attachment files on disk with signed URLs
- realtime: in-process change feed for the embedded backend
- rest: hosted GoTrue / PostgREST / storage endpoints over httpx
"""
