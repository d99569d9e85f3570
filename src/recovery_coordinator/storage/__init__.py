"""SQLite-backed key-value storage."""

from recovery_coordinator.storage.kv_store import KvEntryView, KvStore, KvStoreError

__all__ = [
    "KvEntryView",
    "KvStore",
    "KvStoreError",
]
