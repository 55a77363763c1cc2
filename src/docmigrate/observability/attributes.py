"""
Standard span and metric attributes for docmigrate.

Attribute constants shared by every component so spans and metrics can be
filtered consistently. Database attributes follow OpenTelemetry semantic
conventions.

Example:
    >>> from docmigrate.observability.attributes import ATTR_JOB_ID, ATTR_PARTITION
    >>>
    >>> with tracer.span(
    ...     "docmigrate.batch_processor.process_next_batch",
    ...     {ATTR_JOB_ID: str(job.id), ATTR_PARTITION: cursor.partition.index},
    ... ):
    ...     pass
"""

# =============================================================================
# Job Attributes
# =============================================================================

ATTR_JOB_ID = "docmigrate.job.id"
"""Unique identifier of the migration job (UUID string)."""

ATTR_JOB_STATUS = "docmigrate.job.status"
"""Status of the job when the span started (string)."""

ATTR_COLLECTION = "docmigrate.collection"
"""Application collection being migrated (string)."""

ATTR_SOURCE_SHAPE = "docmigrate.shape.source"
"""Shape version documents are migrated from (string)."""

ATTR_TARGET_SHAPE = "docmigrate.shape.target"
"""Shape version documents are migrated to (string)."""

# =============================================================================
# Batch Attributes
# =============================================================================

ATTR_PARTITION = "docmigrate.partition"
"""Index of the key-range partition (integer)."""

ATTR_BATCH_SIZE = "docmigrate.batch.size"
"""Configured batch size (integer)."""

ATTR_SEQUENCE_NUMBER = "docmigrate.checkpoint.sequence"
"""Checkpoint sequence number (integer)."""

ATTR_DOCUMENTS_MIGRATED = "docmigrate.documents.migrated"
"""Documents transformed by the operation (integer)."""

ATTR_DOCUMENTS_FAILED = "docmigrate.documents.failed"
"""Documents that failed in the operation (integer)."""

ATTR_ATTEMPTS = "docmigrate.attempts"
"""Attempts used by a retried operation (integer)."""

ATTR_OPERATION_COUNT = "docmigrate.transaction.operations"
"""Operations counted against the per-transaction ceiling (integer)."""

# =============================================================================
# Rollback Attributes
# =============================================================================

ATTR_ROLLBACK_STRATEGY = "docmigrate.rollback.strategy"
"""Rollback strategy (string)."""

ATTR_ROLLBACK_TARGET = "docmigrate.rollback.target_checkpoint"
"""Target checkpoint sequence number (integer)."""

# =============================================================================
# Database Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'sqlite', 'memory')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (e.g., 'commit', 'query')."""

ATTR_DB_NAME = "db.name"
"""Database name or file path."""

ATTR_KEY = "docmigrate.document.key"
"""Document key (string)."""

ATTR_ERROR_TYPE = "error.type"
"""Exception class name on failure."""


__all__ = [
    "ATTR_JOB_ID",
    "ATTR_JOB_STATUS",
    "ATTR_COLLECTION",
    "ATTR_SOURCE_SHAPE",
    "ATTR_TARGET_SHAPE",
    "ATTR_PARTITION",
    "ATTR_BATCH_SIZE",
    "ATTR_SEQUENCE_NUMBER",
    "ATTR_DOCUMENTS_MIGRATED",
    "ATTR_DOCUMENTS_FAILED",
    "ATTR_ATTEMPTS",
    "ATTR_OPERATION_COUNT",
    "ATTR_ROLLBACK_STRATEGY",
    "ATTR_ROLLBACK_TARGET",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_DB_NAME",
    "ATTR_KEY",
    "ATTR_ERROR_TYPE",
]
