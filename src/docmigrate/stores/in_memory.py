"""
In-memory document store implementation.

Useful for testing, dry runs and development. Not suitable for production
as all documents are lost when the process terminates.
"""

from __future__ import annotations

import asyncio
import bisect
import copy
import time
from collections import defaultdict
from collections.abc import Sequence
from typing import Any

from docmigrate.exceptions import WriteConflictError
from docmigrate.observability import (
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
    QueryBounds,
    WriteKind,
    WriteOperation,
)


class InMemoryDocumentStore(DocumentStore):
    """
    In-memory implementation of the document store.

    Documents are deep-copied on the way in and out so callers can never
    mutate stored state by accident. Commits are serialized with an
    ``asyncio.Lock`` and validated in full before any operation is applied,
    which makes them atomic.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.put("users", "u1", {"email": "A@x.io"})
        >>> (await store.get("users", "u1")).data
        {'email': 'A@x.io'}

    Attributes:
        _documents: collection -> key -> (data, version)
        _keys: collection -> sorted list of keys
        _indexes: collection -> index names
    """

    def __init__(
        self,
        *,
        max_operations_per_transaction: int = DEFAULT_MAX_OPERATIONS_PER_TRANSACTION,
        max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES,
        version: str = "memory-1.0.0",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self.max_operations_per_transaction = max_operations_per_transaction
        self.max_request_bytes = max_request_bytes
        self._version = version
        self._documents: dict[str, dict[str, tuple[dict[str, Any], int]]] = defaultdict(dict)
        self._keys: dict[str, list[str]] = defaultdict(list)
        self._indexes: dict[str, set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()
        self._commit_count = 0

        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def get(self, collection: str, key: str) -> Document | None:
        entry = self._documents[collection].get(key)
        if entry is None:
            return None
        data, version = entry
        return Document(key=key, data=copy.deepcopy(data), version=version)

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
        bounds = QueryBounds(
            start_at=start_at, start_after=start_after, end_before=end_before, end_at=end_at
        )
        keys = self._keys[collection]
        if start_at is not None:
            index = bisect.bisect_left(keys, start_at)
        elif start_after is not None:
            index = bisect.bisect_right(keys, start_after)
        else:
            index = 0

        documents: list[Document] = []
        stored = self._documents[collection]
        while index < len(keys):
            key = keys[index]
            if not bounds.contains(key):
                break
            data, version = stored[key]
            documents.append(Document(key=key, data=copy.deepcopy(data), version=version))
            if limit is not None and len(documents) >= limit:
                break
            index += 1
        return documents

    async def count(
        self,
        collection: str,
        *,
        start_at: str | None = None,
        end_before: str | None = None,
    ) -> int:
        keys = self._keys[collection]
        low = bisect.bisect_left(keys, start_at) if start_at is not None else 0
        high = bisect.bisect_left(keys, end_before) if end_before is not None else len(keys)
        return max(0, high - low)

    async def commit(self, operations: Sequence[WriteOperation]) -> None:
        if not operations:
            return
        with self._tracer.span(
            "docmigrate.store.commit",
            {
                ATTR_DB_SYSTEM: "memory",
                ATTR_DB_OPERATION: "commit",
                ATTR_OPERATION_COUNT: len(operations),
            },
        ):
            self.check_quota(operations)
            async with self._lock:
                # Network round-trip suspension point.
                await asyncio.sleep(0)
                self._check_preconditions(operations)
                for op in operations:
                    self._apply(op)
                self._commit_count += 1

    def _check_preconditions(self, operations: Sequence[WriteOperation]) -> None:
        for op in operations:
            entry = self._documents[op.collection].get(op.key)
            current_version = entry[1] if entry else 0
            if op.kind == WriteKind.CREATE and entry is not None:
                raise WriteConflictError(op.collection, op.key, "document already exists")
            if op.expected_version is not None and op.expected_version != current_version:
                raise WriteConflictError(
                    op.collection,
                    op.key,
                    f"expected version {op.expected_version}, found {current_version}",
                )

    def _apply(self, op: WriteOperation) -> None:
        stored = self._documents[op.collection]
        keys = self._keys[op.collection]
        entry = stored.get(op.key)
        if op.kind == WriteKind.DELETE:
            if entry is not None:
                del stored[op.key]
                index = bisect.bisect_left(keys, op.key)
                del keys[index]
            return
        version = entry[1] + 1 if entry else 1
        if entry is None:
            bisect.insort(keys, op.key)
        stored[op.key] = (copy.deepcopy(op.data or {}), version)

    async def ping(self) -> float:
        started = time.perf_counter()
        await asyncio.sleep(0)
        return (time.perf_counter() - started) * 1000

    async def list_indexes(self, collection: str) -> set[str]:
        return set(self._indexes[collection])

    async def create_index(self, collection: str, name: str) -> None:
        self._indexes[collection].add(name)

    async def server_version(self) -> str:
        return self._version

    @property
    def commit_count(self) -> int:
        """Number of successful commits, useful in tests."""
        return self._commit_count

    def collections(self) -> list[str]:
        return sorted(name for name, docs in self._documents.items() if docs)

    def clear(self) -> None:
        self._documents.clear()
        self._keys.clear()
        self._indexes.clear()
        self._commit_count = 0


__all__ = ["InMemoryDocumentStore"]
