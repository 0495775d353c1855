"""In-process document store with serialized, staged transactions."""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any

from gigbook.storage.base import (
    UNIQUE_FIELDS,
    Collection,
    DocumentWriter,
    DuplicateKeyError,
    StorageBackend,
    WriteConflictError,
    matches,
    sort_documents,
)

logger = logging.getLogger(__name__)

_DELETED = object()


class MemoryStore(StorageBackend):
    """Dictionary-backed store.

    One transaction runs at a time. Writes are staged on the transaction
    handle and copied into the committed data only when the block succeeds,
    so readers outside the transaction never see uncommitted state.
    """

    def __init__(self, *, lock_timeout: float = 5.0) -> None:
        self.lock_timeout = lock_timeout
        self._data: dict[Collection, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        for collection in Collection:
            self._data.setdefault(collection, {})

    async def close(self) -> None:
        pass

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[DocumentWriter]:
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.lock_timeout)
        except TimeoutError as e:
            raise WriteConflictError(
                f"Timed out after {self.lock_timeout}s waiting for a transaction"
            ) from e
        try:
            tx = _MemoryTransaction(self._data)
            yield tx
            tx.commit()
        finally:
            self._lock.release()

    # --- Autocommit operations ---

    async def get(self, collection: Collection, doc_id: str) -> dict[str, Any] | None:
        doc = self._data.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find(
        self,
        collection: Collection,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        docs = [
            copy.deepcopy(d) for d in self._data.get(collection, {}).values() if matches(d, filters)
        ]
        docs = sort_documents(docs, order_by)
        return docs[:limit] if limit is not None else docs

    async def count(self, collection: Collection) -> int:
        return len(self._data.get(collection, {}))

    async def insert(self, collection: Collection, doc: dict[str, Any]) -> dict[str, Any]:
        async with self.transaction() as tx:
            return await tx.insert(collection, doc)

    async def update(
        self,
        collection: Collection,
        doc_id: str,
        updates: Mapping[str, Any],
        *,
        expected: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        async with self.transaction() as tx:
            return await tx.update(collection, doc_id, updates, expected=expected)

    async def delete(self, collection: Collection, doc_id: str) -> bool:
        async with self.transaction() as tx:
            return await tx.delete(collection, doc_id)


class _MemoryTransaction(DocumentWriter):
    def __init__(self, data: dict[Collection, dict[str, dict[str, Any]]]) -> None:
        self._data = data
        self._staged: dict[tuple[Collection, str], Any] = {}

    def _view(self, collection: Collection) -> dict[str, dict[str, Any]]:
        view = dict(self._data.get(collection, {}))
        for (coll, doc_id), doc in self._staged.items():
            if coll != collection:
                continue
            if doc is _DELETED:
                view.pop(doc_id, None)
            else:
                view[doc_id] = doc
        return view

    async def get(self, collection: Collection, doc_id: str) -> dict[str, Any] | None:
        doc = self._view(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find(
        self,
        collection: Collection,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        docs = [copy.deepcopy(d) for d in self._view(collection).values() if matches(d, filters)]
        docs = sort_documents(docs, order_by)
        return docs[:limit] if limit is not None else docs

    async def count(self, collection: Collection) -> int:
        return len(self._view(collection))

    def _check_unique(self, collection: Collection, doc: Mapping[str, Any]) -> None:
        for field in UNIQUE_FIELDS.get(collection, ()):
            value = doc.get(field)
            if value is None:
                continue
            for other in self._view(collection).values():
                if other["id"] != doc["id"] and other.get(field) == value:
                    raise DuplicateKeyError(collection, field, value)

    async def insert(self, collection: Collection, doc: dict[str, Any]) -> dict[str, Any]:
        if doc["id"] in self._view(collection):
            raise DuplicateKeyError(collection, "id", doc["id"])
        self._check_unique(collection, doc)
        self._staged[(collection, doc["id"])] = copy.deepcopy(doc)
        return copy.deepcopy(doc)

    async def update(
        self,
        collection: Collection,
        doc_id: str,
        updates: Mapping[str, Any],
        *,
        expected: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        current = self._view(collection).get(doc_id)
        if current is None:
            return None
        if expected and not matches(current, expected):
            raise WriteConflictError(f"{collection}/{doc_id} changed concurrently")
        merged = {**copy.deepcopy(current), **copy.deepcopy(dict(updates)), "id": doc_id}
        self._check_unique(collection, merged)
        self._staged[(collection, doc_id)] = merged
        return copy.deepcopy(merged)

    async def delete(self, collection: Collection, doc_id: str) -> bool:
        if doc_id not in self._view(collection):
            return False
        self._staged[(collection, doc_id)] = _DELETED
        return True

    def commit(self) -> None:
        for (collection, doc_id), doc in self._staged.items():
            bucket = self._data.setdefault(collection, {})
            if doc is _DELETED:
                bucket.pop(doc_id, None)
            else:
                bucket[doc_id] = doc
        logger.debug("Committed %d staged write(s)", len(self._staged))
        self._staged.clear()
