"""
Storage module for diu.

All executions, package aggregates and statistics live in one JSON
document owned by JSONStore.

Design principles:
    - Append-only: Executions change only through retention cleanup
    - Atomic: Temporary file, fsync, rename
    - Concurrent reads: A reader/writer lock guards the document
"""

from diu.store.json_store import JSONStore, empty_document, generate_execution_id, most_active_day
from diu.store.locks import ReadWriteLock

__all__ = [
    "JSONStore",
    "ReadWriteLock",
    "empty_document",
    "generate_execution_id",
    "most_active_day",
]
