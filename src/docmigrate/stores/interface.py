"""
Document store interface and core data structures.

The engine treats the document store as an opaque service offering keyed
documents ordered by key, atomic multi-document commits bounded by a
per-transaction operation ceiling, and a per-request payload quota.

This module provides:
- Document: A stored document with its optimistic-concurrency version
- WriteKind / WriteOperation: One write inside an atomic commit
- DocumentStore: Abstract base class for store implementations
- payload_size: Serialized size estimate used for quota checks
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from docmigrate.exceptions import QuotaExceededError

DEFAULT_MAX_OPERATIONS_PER_TRANSACTION = 500
DEFAULT_MAX_REQUEST_BYTES = 10 * 1024 * 1024


def payload_size(data: dict[str, Any] | None) -> int:
    """Approximate wire size of a document body in bytes."""
    if data is None:
        return 0
    return len(json.dumps(data, default=str).encode("utf-8"))


@dataclass(frozen=True)
class Document:
    """
    A stored document.

    Attributes:
        key: Document key, unique within its collection.
        data: Document body.
        version: Incremented on every write; used for optimistic concurrency.
    """

    key: str
    data: dict[str, Any]
    version: int = 1


class WriteKind(Enum):
    SET = "set"
    """Create or replace the document."""

    CREATE = "create"
    """Create the document; fails if the key already exists."""

    DELETE = "delete"
    """Delete the document if present."""


@dataclass(frozen=True)
class WriteOperation:
    """
    One write inside an atomic commit.

    When ``expected_version`` is set the write only applies if the stored
    version still matches; 0 means the document must not exist.
    """

    kind: WriteKind
    collection: str
    key: str
    data: dict[str, Any] | None = None
    expected_version: int | None = None

    @classmethod
    def set(
        cls,
        collection: str,
        key: str,
        data: dict[str, Any],
        expected_version: int | None = None,
    ) -> WriteOperation:
        return cls(WriteKind.SET, collection, key, data, expected_version)

    @classmethod
    def create(cls, collection: str, key: str, data: dict[str, Any]) -> WriteOperation:
        return cls(WriteKind.CREATE, collection, key, data)

    @classmethod
    def delete(
        cls,
        collection: str,
        key: str,
        expected_version: int | None = None,
    ) -> WriteOperation:
        return cls(WriteKind.DELETE, collection, key, None, expected_version)


@dataclass(frozen=True)
class QueryBounds:
    """Key bounds for an ordered query. At most one start and one end bound may be set."""

    start_at: str | None = None
    start_after: str | None = None
    end_before: str | None = None
    end_at: str | None = None

    def __post_init__(self) -> None:
        if self.start_at is not None and self.start_after is not None:
            raise ValueError("start_at and start_after are mutually exclusive")
        if self.end_before is not None and self.end_at is not None:
            raise ValueError("end_before and end_at are mutually exclusive")

    def contains(self, key: str) -> bool:
        if self.start_at is not None and key < self.start_at:
            return False
        if self.start_after is not None and key <= self.start_after:
            return False
        if self.end_before is not None and key >= self.end_before:
            return False
        return not (self.end_at is not None and key > self.end_at)


class DocumentStore(ABC):
    """
    Abstract base class for document stores.

    Implementations must make ``commit`` atomic: either every operation is
    applied or none is. A commit carrying more operations than
    ``max_operations_per_transaction`` is rejected with QuotaExceededError
    before anything is applied.

    Implementations:
    - InMemoryDocumentStore: For testing and dry runs
    - SQLiteDocumentStore: Durable single-node store using aiosqlite
    """

    max_operations_per_transaction: int = DEFAULT_MAX_OPERATIONS_PER_TRANSACTION
    max_request_bytes: int = DEFAULT_MAX_REQUEST_BYTES

    @abstractmethod
    async def get(self, collection: str, key: str) -> Document | None:
        """Get a single document, or None if it does not exist."""

    @abstractmethod
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
        """
        Get documents ordered by key within the given bounds.

        Args:
            collection: Collection to read
            start_at: Inclusive lower bound
            start_after: Exclusive lower bound
            end_before: Exclusive upper bound
            end_at: Inclusive upper bound
            limit: Maximum number of documents to return
        """

    @abstractmethod
    async def count(
        self,
        collection: str,
        *,
        start_at: str | None = None,
        end_before: str | None = None,
    ) -> int:
        """Count documents in ``[start_at, end_before)``."""

    @abstractmethod
    async def commit(self, operations: Sequence[WriteOperation]) -> None:
        """
        Apply operations atomically.

        Raises:
            QuotaExceededError: Too many operations or too large a payload
            WriteConflictError: A version or existence precondition failed
            TransientStoreError: The store could not be reached
        """

    @abstractmethod
    async def ping(self) -> float:
        """Round-trip a trivial request; return latency in milliseconds."""

    @abstractmethod
    async def list_indexes(self, collection: str) -> set[str]:
        """Names of the indexes defined on a collection."""

    @abstractmethod
    async def create_index(self, collection: str, name: str) -> None:
        """Declare an index on a collection."""

    @abstractmethod
    async def server_version(self) -> str:
        """Version string of the store."""

    async def close(self) -> None:
        """Release resources. Safe to call more than once."""
        return None

    async def put(self, collection: str, key: str, data: dict[str, Any]) -> None:
        """Single-document write."""
        await self.commit([WriteOperation.set(collection, key, data)])

    async def delete(self, collection: str, key: str) -> None:
        """Single-document delete."""
        await self.commit([WriteOperation.delete(collection, key)])

    async def iter_keys(
        self,
        collection: str,
        *,
        start_at: str | None = None,
        end_before: str | None = None,
        page_size: int = 1000,
    ) -> AsyncIterator[str]:
        """Iterate keys in order, paging through the collection."""
        async for document in self.scan(
            collection, start_at=start_at, end_before=end_before, page_size=page_size
        ):
            yield document.key

    async def scan(
        self,
        collection: str,
        *,
        start_at: str | None = None,
        end_before: str | None = None,
        page_size: int = 500,
    ) -> AsyncIterator[Document]:
        """Iterate documents in key order, one page per request."""
        after: str | None = None
        while True:
            if after is None:
                page = await self.query(
                    collection, start_at=start_at, end_before=end_before, limit=page_size
                )
            else:
                page = await self.query(
                    collection, start_after=after, end_before=end_before, limit=page_size
                )
            for document in page:
                yield document
            if len(page) < page_size:
                return
            after = page[-1].key

    def check_quota(self, operations: Sequence[WriteOperation]) -> None:
        """Reject a commit that exceeds the operation ceiling or payload quota."""
        if len(operations) > self.max_operations_per_transaction:
            raise QuotaExceededError(
                f"Transaction has {len(operations)} operations, "
                f"ceiling is {self.max_operations_per_transaction}",
                operation_count=len(operations),
                limit=self.max_operations_per_transaction,
            )
        size = sum(payload_size(op.data) for op in operations)
        if size > self.max_request_bytes:
            raise QuotaExceededError(
                f"Request payload is {size} bytes, quota is {self.max_request_bytes}",
                operation_count=len(operations),
            )

    async def __aenter__(self) -> DocumentStore:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()


__all__ = [
    "DEFAULT_MAX_OPERATIONS_PER_TRANSACTION",
    "DEFAULT_MAX_REQUEST_BYTES",
    "Document",
    "DocumentStore",
    "QueryBounds",
    "WriteKind",
    "WriteOperation",
    "payload_size",
]
