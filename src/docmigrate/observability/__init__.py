"""
Observability utilities for docmigrate.

Composition-based tracing plus the attribute names shared by spans and
metrics.

Example:
    >>> from docmigrate.observability import create_tracer
    >>>
    >>> class BatchProcessor:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
"""

from docmigrate.observability.attributes import (
    ATTR_ATTEMPTS,
    ATTR_BATCH_SIZE,
    ATTR_COLLECTION,
    ATTR_DB_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DOCUMENTS_FAILED,
    ATTR_DOCUMENTS_MIGRATED,
    ATTR_ERROR_TYPE,
    ATTR_JOB_ID,
    ATTR_JOB_STATUS,
    ATTR_KEY,
    ATTR_OPERATION_COUNT,
    ATTR_PARTITION,
    ATTR_ROLLBACK_STRATEGY,
    ATTR_ROLLBACK_TARGET,
    ATTR_SEQUENCE_NUMBER,
    ATTR_SOURCE_SHAPE,
    ATTR_TARGET_SHAPE,
)
from docmigrate.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    "ATTR_ATTEMPTS",
    "ATTR_BATCH_SIZE",
    "ATTR_COLLECTION",
    "ATTR_DB_NAME",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_DOCUMENTS_FAILED",
    "ATTR_DOCUMENTS_MIGRATED",
    "ATTR_ERROR_TYPE",
    "ATTR_JOB_ID",
    "ATTR_JOB_STATUS",
    "ATTR_KEY",
    "ATTR_OPERATION_COUNT",
    "ATTR_PARTITION",
    "ATTR_ROLLBACK_STRATEGY",
    "ATTR_ROLLBACK_TARGET",
    "ATTR_SEQUENCE_NUMBER",
    "ATTR_SOURCE_SHAPE",
    "ATTR_TARGET_SHAPE",
]
