"""
SQLite document store implementation.

Durable document store using SQLite with async support via aiosqlite.
Documents live in one ``documents`` table keyed by (collection, key) with
the body stored as JSON text, so the engine's administrative collections
and the application's collections share one database file.

This implementation is suitable for:
- Running the CLI against a local or embedded database
- Integration tests that need durability across engine restarts
- Single-node deployments
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from docmigrate.exceptions import TransientStoreError, WriteConflictError
from docmigrate.observability import (
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_OPERATION_COUNT,
    Tracer,
    create_tracer,
)
from docmigrate.stores.interface import (
    DEFAULT_MAX_OPERATIONS_PER_TRANSACTION,
    DEFAULT_MAX_REQUEST_BYTES,
    Document,
    DocumentStore,
    WriteKind,
    WriteOperation,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    key TEXT NOT NULL,
    data TEXT NOT NULL,
    version INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (collection, key)
);

CREATE TABLE IF NOT EXISTS collection_indexes (
    collection TEXT NOT NULL,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (collection, name)
);
"""


class SQLiteDocumentStore(DocumentStore):
    """
    SQLite implementation of the document store.

    Uses a single aiosqlite connection in autocommit mode and opens an
    explicit ``BEGIN IMMEDIATE`` transaction per commit. All access goes
    through one ``asyncio.Lock`` so reads never observe a half-applied
    transaction on the shared connection.

    Example:
        >>> async with SQLiteDocumentStore("migration.db") as store:
        ...     await store.initialize()
        ...     await store.put("users", "u1", {"email": "a@x.io"})

    Attributes:
        _database: Path to SQLite file or ':memory:'
        _wal_mode: Whether WAL mode is enabled
        _busy_timeout: Timeout in ms for a locked database
        _connection: The aiosqlite connection (set after connect/initialize)
    """

    def __init__(
        self,
        database: str,
        *,
        wal_mode: bool = True,
        busy_timeout: int = 5000,
        max_operations_per_transaction: int = DEFAULT_MAX_OPERATIONS_PER_TRANSACTION,
        max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._database = database
        self._wal_mode = wal_mode
        self._busy_timeout = busy_timeout
        self.max_operations_per_transaction = max_operations_per_transaction
        self.max_request_bytes = max_request_bytes
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def __aenter__(self) -> SQLiteDocumentStore:
        await self._connect()
        return self

    async def _connect(self) -> None:
        if self._connection is not None:
            return

        self._connection = await aiosqlite.connect(self._database, isolation_level=None)
        await self._connection.execute(f"PRAGMA busy_timeout = {self._busy_timeout}")
        if self._wal_mode:
            await self._connection.execute("PRAGMA journal_mode = WAL")
        self._connection.row_factory = aiosqlite.Row

        logger.debug(
            "Connected to SQLite database: %s (wal_mode=%s, busy_timeout=%d)",
            self._database,
            self._wal_mode,
            self._busy_timeout,
        )

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.debug("Closed SQLite database connection: %s", self._database)

    async def initialize(self) -> None:
        """
        Create the schema. Idempotent.
        """
        if self._connection is None:
            await self._connect()
        conn = self._ensure_connected()
        await conn.executescript(SCHEMA)
        logger.info("Initialized SQLite document store schema: %s", self._database)

    def _ensure_connected(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("Not connected. Use 'async with store:' or call initialize().")
        return self._connection

    def _span_attributes(self, operation: str) -> dict[str, Any]:
        return {
            ATTR_DB_SYSTEM: "sqlite",
            ATTR_DB_NAME: self._database,
            ATTR_DB_OPERATION: operation,
        }

    async def get(self, collection: str, key: str) -> Document | None:
        conn = self._ensure_connected()
        async with self._lock:
            try:
                cursor = await conn.execute(
                    "SELECT key, data, version FROM documents WHERE collection = ? AND key = ?",
                    (collection, key),
                )
                row = await cursor.fetchone()
            except sqlite3.OperationalError as e:
                raise TransientStoreError(f"SQLite read failed: {e}") from e
        if row is None:
            return None
        return Document(key=row["key"], data=json.loads(row["data"]), version=row["version"])

    async def query(
        self,
        collection: str,
        *,
        start_at: str | None = None,
        start_after: str | None = None,
        end_before: str | None = None,
        end_at: str | None = None,
        limit: int | None = None,
    ) -> list[Document]:
        if start_at is not None and start_after is not None:
            raise ValueError("start_at and start_after are mutually exclusive")
        if end_before is not None and end_at is not None:
            raise ValueError("end_before and end_at are mutually exclusive")

        clauses = ["collection = ?"]
        params: list[Any] = [collection]
        if start_at is not None:
            clauses.append("key >= ?")
            params.append(start_at)
        if start_after is not None:
            clauses.append("key > ?")
            params.append(start_after)
        if end_before is not None:
            clauses.append("key < ?")
            params.append(end_before)
        if end_at is not None:
            clauses.append("key <= ?")
            params.append(end_at)
        sql = f"SELECT key, data, version FROM documents WHERE {' AND '.join(clauses)} ORDER BY key"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        conn = self._ensure_connected()
        with self._tracer.span("docmigrate.store.query", self._span_attributes("query")):
            async with self._lock:
                try:
                    cursor = await conn.execute(sql, params)
                    rows = await cursor.fetchall()
                except sqlite3.OperationalError as e:
                    raise TransientStoreError(f"SQLite query failed: {e}") from e
        return [
            Document(key=row["key"], data=json.loads(row["data"]), version=row["version"])
            for row in rows
        ]

    async def count(
        self,
        collection: str,
        *,
        start_at: str | None = None,
        end_before: str | None = None,
    ) -> int:
        clauses = ["collection = ?"]
        params: list[Any] = [collection]
        if start_at is not None:
            clauses.append("key >= ?")
            params.append(start_at)
        if end_before is not None:
            clauses.append("key < ?")
            params.append(end_before)
        conn = self._ensure_connected()
        async with self._lock:
            cursor = await conn.execute(
                f"SELECT COUNT(*) AS n FROM documents WHERE {' AND '.join(clauses)}", params
            )
            row = await cursor.fetchone()
        return int(row["n"]) if row else 0

    async def commit(self, operations: Sequence[WriteOperation]) -> None:
        if not operations:
            return
        self.check_quota(operations)
        conn = self._ensure_connected()
        attributes = self._span_attributes("commit")
        attributes[ATTR_OPERATION_COUNT] = len(operations)

        with self._tracer.span("docmigrate.store.commit", attributes):
            async with self._lock:
                try:
                    await conn.execute("BEGIN IMMEDIATE")
                except sqlite3.OperationalError as e:
                    raise TransientStoreError(f"SQLite transaction could not start: {e}") from e
                try:
                    now = datetime.now(UTC).isoformat()
                    for op in operations:
                        await self._apply(conn, op, now)
                    await conn.execute("COMMIT")
                except WriteConflictError:
                    await conn.execute("ROLLBACK")
                    raise
                except sqlite3.OperationalError as e:
                    await conn.execute("ROLLBACK")
                    raise TransientStoreError(f"SQLite commit failed: {e}") from e
                except BaseException:
                    await conn.execute("ROLLBACK")
                    raise

    async def _apply(self, conn: aiosqlite.Connection, op: WriteOperation, now: str) -> None:
        cursor = await conn.execute(
            "SELECT version FROM documents WHERE collection = ? AND key = ?",
            (op.collection, op.key),
        )
        row = await cursor.fetchone()
        current_version = int(row["version"]) if row else 0

        if op.kind == WriteKind.CREATE and row is not None:
            raise WriteConflictError(op.collection, op.key, "document already exists")
        if op.expected_version is not None and op.expected_version != current_version:
            raise WriteConflictError(
                op.collection,
                op.key,
                f"expected version {op.expected_version}, found {current_version}",
            )

        if op.kind == WriteKind.DELETE:
            await conn.execute(
                "DELETE FROM documents WHERE collection = ? AND key = ?",
                (op.collection, op.key),
            )
            return

        await conn.execute(
            """
            INSERT INTO documents (collection, key, data, version, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (collection, key) DO UPDATE SET
                data = excluded.data,
                version = excluded.version,
                updated_at = excluded.updated_at
            """,
            (op.collection, op.key, json.dumps(op.data or {}), current_version + 1, now),
        )

    async def ping(self) -> float:
        conn = self._ensure_connected()
        started = time.perf_counter()
        async with self._lock:
            try:
                await conn.execute("SELECT 1")
            except sqlite3.Error as e:
                raise TransientStoreError(f"SQLite ping failed: {e}") from e
        return (time.perf_counter() - started) * 1000

    async def list_indexes(self, collection: str) -> set[str]:
        conn = self._ensure_connected()
        async with self._lock:
            cursor = await conn.execute(
                "SELECT name FROM collection_indexes WHERE collection = ?", (collection,)
            )
            rows = await cursor.fetchall()
        return {row["name"] for row in rows}

    async def create_index(self, collection: str, name: str) -> None:
        conn = self._ensure_connected()
        async with self._lock:
            await conn.execute(
                "INSERT OR IGNORE INTO collection_indexes (collection, name, created_at) "
                "VALUES (?, ?, ?)",
                (collection, name, datetime.now(UTC).isoformat()),
            )

    async def server_version(self) -> str:
        return f"sqlite-{sqlite3.sqlite_version}"


__all__ = ["SQLiteDocumentStore"]
