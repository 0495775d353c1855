"""Abstract document-store interface for gigbook."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from contextlib import AbstractAsyncContextManager
from enum import StrEnum
from typing import Any


class Collection(StrEnum):
    CLIENTS = "clients"
    PROPOSALS = "proposals"
    PROJECTS = "projects"
    CONTRACTS = "contracts"
    DELIVERABLES = "deliverables"
    LEDGER = "ledger_entries"


# Unique document fields per collection, besides ``id``
UNIQUE_FIELDS: dict[Collection, tuple[str, ...]] = {
    Collection.CLIENTS: ("email",),
    Collection.PROPOSALS: ("number",),
    Collection.PROJECTS: ("code",),
    Collection.CONTRACTS: ("number",),
    Collection.DELIVERABLES: (),
    Collection.LEDGER: (),
}


class StorageError(Exception):
    """Base class for store failures. Never leaves the orchestrator."""


class DuplicateKeyError(StorageError):
    def __init__(self, collection: str, field: str, value: Any) -> None:
        super().__init__(f"Duplicate {collection}.{field}: {value!r}")
        self.collection = collection
        self.field = field
        self.value = value


class WriteConflictError(StorageError):
    """A concurrent write won, or the transaction could not start in time."""


class DocumentReader(ABC):
    """Read side of the store."""

    @abstractmethod
    async def get(self, collection: Collection, doc_id: str) -> dict[str, Any] | None:
        """Get a document by id. Returns None if not found."""

    @abstractmethod
    async def find(
        self,
        collection: Collection,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Find documents by field equality.

        A list, tuple or set filter value matches any of its members.
        ``order_by`` names a field; prefix it with ``-`` for descending order.
        """

    @abstractmethod
    async def count(self, collection: Collection) -> int:
        """Count documents in a collection."""


class DocumentWriter(DocumentReader):
    """Read and write side of the store."""

    @abstractmethod
    async def insert(self, collection: Collection, doc: dict[str, Any]) -> dict[str, Any]:
        """Insert a document. Raises DuplicateKeyError on id or unique-field clash."""

    @abstractmethod
    async def update(
        self,
        collection: Collection,
        doc_id: str,
        updates: Mapping[str, Any],
        *,
        expected: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Merge ``updates`` into a document. Returns None if not found.

        When ``expected`` is given, every listed field must still hold the
        given value or WriteConflictError is raised.
        """

    @abstractmethod
    async def delete(self, collection: Collection, doc_id: str) -> bool:
        """Delete a document. Returns True if found and deleted."""


class StorageBackend(DocumentWriter):
    """A document store with an all-or-nothing write primitive.

    Writes issued directly on the backend commit one by one. Writes issued on
    the handle yielded by ``transaction()`` commit together when the block
    exits normally and are discarded when it raises or is cancelled.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize schema and connections."""

    @abstractmethod
    async def close(self) -> None:
        """Close all connections."""

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[DocumentWriter]:
        """Open an atomic unit of work."""


def matches(doc: Mapping[str, Any], filters: Mapping[str, Any] | None) -> bool:
    """In-process evaluation of ``find`` filters."""
    if not filters:
        return True
    for key, expected in filters.items():
        value = doc.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def sort_documents(
    docs: list[dict[str, Any]], order_by: str | None
) -> list[dict[str, Any]]:
    if not order_by:
        return docs
    descending = order_by.startswith("-")
    key = order_by.lstrip("-")
    # None sorts first ascending, last descending
    return sorted(
        docs,
        key=lambda d: (d.get(key) is not None, d.get(key) if d.get(key) is not None else 0),
        reverse=descending,
    )
