"""SQLite storage backend: JSON documents, expression unique indexes, WAL mode."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
from collections.abc import AsyncIterator, Iterator, Mapping
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any

import aiosqlite

from gigbook.storage.base import (
    Collection,
    DocumentWriter,
    DuplicateKeyError,
    StorageBackend,
    StorageError,
    WriteConflictError,
    matches,
)

logger = logging.getLogger(__name__)

# Unique index name -> (collection, field); must match schema/store.sql
_UNIQUE_INDEXES: dict[str, tuple[Collection, str]] = {
    "idx_clients_email": (Collection.CLIENTS, "email"),
    "idx_proposals_number": (Collection.PROPOSALS, "number"),
    "idx_projects_code": (Collection.PROJECTS, "code"),
    "idx_contracts_number": (Collection.CONTRACTS, "number"),
}

# Document keys usable in filters and ORDER BY
_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _table(collection: Collection) -> str:
    """Table name for a collection; only enum members are accepted."""
    return Collection(collection).value


def _path(field: str) -> str:
    if not _FIELD_NAME.match(field):
        raise ValueError(f"Invalid document field: {field!r}")
    return f"$.{field}"


def _validate_update_keys(collection: Collection, updates: Mapping[str, Any]) -> dict[str, Any]:
    """Drop keys that cannot be document fields; ``id`` is immutable."""
    filtered = {k: v for k, v in updates.items() if k != "id" and _FIELD_NAME.match(k)}
    rejected = set(updates) - set(filtered) - {"id"}
    if rejected:
        logger.warning("Rejected invalid field names for %s: %s", collection, rejected)
    return filtered


class SQLiteStore(StorageBackend):
    """SQLite-based document storage.

    A single connection is shared; an asyncio lock serializes every statement
    so readers never observe another coroutine's open transaction.
    """

    def __init__(
        self, db_path: Path, *, wal_mode: bool = True, lock_timeout: float = 5.0
    ) -> None:
        self.db_path = db_path
        self.wal_mode = wal_mode
        self.lock_timeout = lock_timeout
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create database and apply schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        self._db = await aiosqlite.connect(str(self.db_path), isolation_level=None)

        if self.wal_mode:
            await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute(f"PRAGMA busy_timeout={int(self.lock_timeout * 1000)}")

        await self._db.executescript(_load_sql("store.sql"))
        logger.info("Initialized SQLite store at %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Store not initialized. Call initialize() first.")
        return self._db

    async def _acquire(self) -> None:
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.lock_timeout)
        except TimeoutError as e:
            raise WriteConflictError(
                f"Timed out after {self.lock_timeout}s waiting for the database"
            ) from e

    @asynccontextmanager
    async def _reader(self) -> AsyncIterator[_SQLiteTransaction]:
        await self._acquire()
        try:
            yield _SQLiteTransaction(self.db)
        finally:
            self._lock.release()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[DocumentWriter]:
        await self._acquire()
        try:
            with _translate_errors():
                await self.db.execute("BEGIN IMMEDIATE")
            try:
                yield _SQLiteTransaction(self.db)
                with _translate_errors():
                    await self.db.execute("COMMIT")
            except BaseException:
                # Roll back even when the caller is being cancelled
                await asyncio.shield(self._rollback())
                raise
        finally:
            self._lock.release()

    async def _rollback(self) -> None:
        if self.db.in_transaction:
            await self.db.rollback()
            logger.debug("Rolled back transaction on %s", self.db_path)

    # --- Autocommit operations ---

    async def get(self, collection: Collection, doc_id: str) -> dict[str, Any] | None:
        async with self._reader() as reader:
            return await reader.get(collection, doc_id)

    async def find(
        self,
        collection: Collection,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        async with self._reader() as reader:
            return await reader.find(collection, filters, order_by=order_by, limit=limit)

    async def count(self, collection: Collection) -> int:
        async with self._reader() as reader:
            return await reader.count(collection)

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


class _SQLiteTransaction(DocumentWriter):
    """Statements issued on the shared connection while the store lock is held."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db

    async def get(self, collection: Collection, doc_id: str) -> dict[str, Any] | None:
        with _translate_errors():
            cursor = await self.db.execute(
                f"SELECT data FROM {_table(collection)} WHERE id = ?", (doc_id,)
            )
            row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def find(
        self,
        collection: Collection,
        filters: Mapping[str, Any] | None = None,
        *,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for key, value in (filters or {}).items():
            if isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    return []
                placeholders = ", ".join("?" for _ in values)
                clauses.append(f"json_extract(data, ?) IN ({placeholders})")
                params.extend([_path(key), *values])
            elif value is None:
                clauses.append("json_extract(data, ?) IS NULL")
                params.append(_path(key))
            else:
                clauses.append("json_extract(data, ?) = ?")
                params.extend([_path(key), value])

        sql = f"SELECT data FROM {_table(collection)}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        if order_by:
            direction = "DESC" if order_by.startswith("-") else "ASC"
            sql += f" ORDER BY json_extract(data, ?) {direction}, id ASC"
            params.append(_path(order_by.lstrip("-")))
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with _translate_errors():
            cursor = await self.db.execute(sql, params)
            rows = await cursor.fetchall()
        return [json.loads(row[0]) for row in rows]

    async def count(self, collection: Collection) -> int:
        with _translate_errors():
            cursor = await self.db.execute(f"SELECT COUNT(*) FROM {_table(collection)}")
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def insert(self, collection: Collection, doc: dict[str, Any]) -> dict[str, Any]:
        with _translate_errors(collection, doc):
            await self.db.execute(
                f"INSERT INTO {_table(collection)} (id, data) VALUES (?, ?)",
                (doc["id"], json.dumps(doc)),
            )
        return doc

    async def update(
        self,
        collection: Collection,
        doc_id: str,
        updates: Mapping[str, Any],
        *,
        expected: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        current = await self.get(collection, doc_id)
        if current is None:
            return None
        if expected and not matches(current, expected):
            raise WriteConflictError(f"{collection}/{doc_id} changed concurrently")

        merged = {**current, **_validate_update_keys(collection, updates)}
        with _translate_errors(collection, merged):
            await self.db.execute(
                f"UPDATE {_table(collection)} SET data = ? WHERE id = ?",
                (json.dumps(merged), doc_id),
            )
        return merged

    async def delete(self, collection: Collection, doc_id: str) -> bool:
        with _translate_errors():
            cursor = await self.db.execute(
                f"DELETE FROM {_table(collection)} WHERE id = ?", (doc_id,)
            )
        return cursor.rowcount > 0


@contextmanager
def _translate_errors(
    collection: Collection | None = None, doc: Mapping[str, Any] | None = None
) -> Iterator[None]:
    """Map sqlite3 failures onto the storage error hierarchy."""
    try:
        yield
    except sqlite3.IntegrityError as e:
        message = str(e)
        if "UNIQUE" not in message or collection is None:
            raise StorageError(message) from e
        field = "id"
        for index, (coll, index_field) in _UNIQUE_INDEXES.items():
            if index in message and coll == collection:
                field = index_field
                break
        value = doc.get(field) if doc else None
        raise DuplicateKeyError(collection, field, value) from e
    except sqlite3.OperationalError as e:
        if "locked" in str(e) or "busy" in str(e):
            raise WriteConflictError(str(e)) from e
        raise StorageError(str(e)) from e


def _load_sql(filename: str) -> str:
    """Load SQL file from the schema package."""
    schema_dir = Path(__file__).parent.parent / "schema"
    return (schema_dir / filename).read_text()
