"""
Pre-migration backup snapshots.

The Validator snapshots the collection before the first batch runs. The
``backupRestore`` rollback strategy restores touched documents from it
when the transform cannot be inverted cleanly.

A snapshot is complete only once its manifest document exists; the
manifest is written after every copied document has committed.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from docmigrate.models import MigrationJob
from docmigrate.observability import ATTR_COLLECTION, ATTR_JOB_ID, Tracer, create_tracer
from docmigrate.stores.interface import DocumentStore, WriteOperation, payload_size

logger = logging.getLogger(__name__)

BACKUPS_COLLECTION = "_migration_backups"
MANIFESTS_COLLECTION = "_migration_backup_manifests"


class BackupStore:
    """
    Snapshot storage inside the document store.

    Copies are written in chunks that respect both the operation ceiling
    and the request payload quota.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._store = store
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def take_snapshot(self, job: MigrationJob) -> int:
        """
        Copy every document of the job's collection.

        Returns:
            Number of documents copied.
        """
        ceiling = job.config.effective_operation_ceiling(self._store.max_operations_per_transaction)
        byte_budget = self._store.max_request_bytes
        copied = 0

        with self._tracer.span(
            "docmigrate.backups.take_snapshot",
            {ATTR_JOB_ID: str(job.id), ATTR_COLLECTION: job.collection},
        ):
            chunk: list[WriteOperation] = []
            chunk_bytes = 0
            async for document in self._store.scan(job.collection):
                body = {"key": document.key, "data": document.data}
                size = payload_size(body)
                if chunk and (len(chunk) >= ceiling or chunk_bytes + size > byte_budget):
                    await self._store.commit(chunk)
                    copied += len(chunk)
                    chunk, chunk_bytes = [], 0
                chunk.append(
                    WriteOperation.set(BACKUPS_COLLECTION, f"{job.id}:{document.key}", body)
                )
                chunk_bytes += size
            if chunk:
                await self._store.commit(chunk)
                copied += len(chunk)

            await self._store.put(
                MANIFESTS_COLLECTION,
                str(job.id),
                {
                    "job_id": str(job.id),
                    "collection": job.collection,
                    "document_count": copied,
                    "taken_at": datetime.now(UTC).isoformat(),
                },
            )

        logger.info(
            "Backup snapshot of %s taken for job %s: %d documents",
            job.collection,
            job.id,
            copied,
            extra={"job_id": str(job.id)},
        )
        return copied

    async def get_manifest(self, job_id: UUID) -> dict[str, Any] | None:
        document = await self._store.get(MANIFESTS_COLLECTION, str(job_id))
        return document.data if document else None

    async def has_snapshot(self, job_id: UUID) -> bool:
        return await self.get_manifest(job_id) is not None

    async def get_backup(self, job_id: UUID, key: str) -> dict[str, Any] | None:
        """Pre-migration body of one document, or None if it was not in the snapshot."""
        document = await self._store.get(BACKUPS_COLLECTION, f"{job_id}:{key}")
        if document is None:
            return None
        return document.data["data"]


__all__ = ["BACKUPS_COLLECTION", "MANIFESTS_COLLECTION", "BackupStore"]
