"""
Document store implementations.

- DocumentStore: Abstract interface the engine is written against
- InMemoryDocumentStore: For tests and dry runs
- SQLiteDocumentStore: Durable store backed by aiosqlite
"""

from docmigrate.stores.in_memory import InMemoryDocumentStore
from docmigrate.stores.interface import (
    DEFAULT_MAX_OPERATIONS_PER_TRANSACTION,
    DEFAULT_MAX_REQUEST_BYTES,
    Document,
    DocumentStore,
    QueryBounds,
    WriteKind,
    WriteOperation,
    payload_size,
)
from docmigrate.stores.sqlite import SQLiteDocumentStore

__all__ = [
    "DEFAULT_MAX_OPERATIONS_PER_TRANSACTION",
    "DEFAULT_MAX_REQUEST_BYTES",
    "Document",
    "DocumentStore",
    "InMemoryDocumentStore",
    "QueryBounds",
    "SQLiteDocumentStore",
    "WriteKind",
    "WriteOperation",
    "payload_size",
]
