"""Local state store: the in-memory mirror the views read from."""

from .local_store import LocalStore, StoreEvent, StoreListener

__all__ = ["LocalStore", "StoreEvent", "StoreListener"]
