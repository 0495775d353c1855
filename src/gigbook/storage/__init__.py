"""Gigbook document storage."""

from gigbook.storage.base import (
    UNIQUE_FIELDS,
    Collection,
    DocumentReader,
    DocumentWriter,
    DuplicateKeyError,
    StorageBackend,
    StorageError,
    WriteConflictError,
)
from gigbook.storage.memory_store import MemoryStore
from gigbook.storage.sqlite_store import SQLiteStore

__all__ = [
    "UNIQUE_FIELDS",
    "Collection",
    "DocumentReader",
    "DocumentWriter",
    "DuplicateKeyError",
    "MemoryStore",
    "SQLiteStore",
    "StorageBackend",
    "StorageError",
    "WriteConflictError",
]
