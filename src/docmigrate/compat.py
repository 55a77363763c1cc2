"""
CompatibilityShim - both document shapes stay valid during cutover.

While a job runs, the live application reads and writes through the shim
instead of the store directly:

    - read(key) always answers in the target shape. Documents the job has
      already migrated are returned as stored; documents not yet reached
      are mapped forward on the fly. A document the transform rejects is
      returned in its stored shape rather than failing the read.
    - write(key, data) persists the transform's dual-write representation,
      valid under both shapes, so a later batch and a concurrent rollback
      both remain correct.

Once the job rolls back, reads answer in the source shape again.

The shim is retired by the Orchestrator only after the job reaches a
final state and the grace period elapses; a retired shim passes reads
and writes straight through.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from docmigrate.exceptions import TransformError, WriteConflictError
from docmigrate.models import JobStatus, MigrationJob
from docmigrate.observability import ATTR_COLLECTION, ATTR_JOB_ID, ATTR_KEY, Tracer, create_tracer
from docmigrate.repositories.checkpoints import DocumentCheckpointStore
from docmigrate.stores.interface import DocumentStore, WriteOperation
from docmigrate.transforms import (
    MARKER_FIELD,
    UNDO_FIELD,
    DocumentTransform,
    apply_forward,
    is_marked_by,
    stamp_marker,
    strip_marker,
)

logger = logging.getLogger(__name__)

_REVERTING = frozenset({JobStatus.ROLLING_BACK, JobStatus.ROLLED_BACK, JobStatus.ROLLBACK_FAILED})


def public_view(data: dict[str, Any]) -> dict[str, Any]:
    """Document body without the engine's bookkeeping fields."""
    return {name: value for name, value in data.items() if name not in (MARKER_FIELD, UNDO_FIELD)}


@dataclass
class ShimStats:
    """Counters describing how the shim served traffic."""

    native_reads: int = 0
    mapped_reads: int = 0
    fallback_reads: int = 0
    writes: int = 0
    write_conflicts: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "native_reads": self.native_reads,
            "mapped_reads": self.mapped_reads,
            "fallback_reads": self.fallback_reads,
            "writes": self.writes,
            "write_conflicts": self.write_conflicts,
        }


class CompatibilityShim:
    """
    Read/write facade for one collection under migration.

    Example:
        >>> shim = orchestrator.compatibility_shim(job.id)
        >>> user = await shim.read("user-42")       # always target shape
        >>> await shim.write("user-42", {**user, "email": "new@x.io"})
    """

    def __init__(
        self,
        job: MigrationJob,
        store: DocumentStore,
        checkpoints: DocumentCheckpointStore,
        transform: DocumentTransform,
        *,
        write_attempts: int = 3,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._job = job
        self._store = store
        self._checkpoints = checkpoints
        self._transform = transform
        self._write_attempts = max(1, write_attempts)
        self._retired_at: datetime | None = None
        self._stats = ShimStats()

        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    @property
    def collection(self) -> str:
        return self._job.collection

    @property
    def is_active(self) -> bool:
        return self._retired_at is None

    @property
    def retired_at(self) -> datetime | None:
        return self._retired_at

    @property
    def stats(self) -> ShimStats:
        return self._stats

    def retire(self) -> None:
        if self._retired_at is not None:
            return
        self._retired_at = datetime.now(UTC)
        logger.info(
            "Compatibility shim for %s retired (job %s is %s)",
            self._job.collection,
            self._job.id,
            self._job.status.value,
            extra={"job_id": str(self._job.id)},
        )

    async def read(self, key: str) -> dict[str, Any] | None:
        """
        Read a document in the shape the application expects.

        Returns:
            The document body, or None if it does not exist.
        """
        with self._tracer.span(
            "docmigrate.shim.read",
            {ATTR_JOB_ID: str(self._job.id), ATTR_COLLECTION: self.collection, ATTR_KEY: key},
        ):
            document = await self._store.get(self.collection, key)
        if document is None:
            return None
        data = document.data

        if not self.is_active:
            return public_view(data)

        if self._job.status in _REVERTING:
            return self._source_view(data)

        if is_marked_by(data, self._job.id):
            self._stats.native_reads += 1
            return public_view(data)

        try:
            mapped = apply_forward(self._transform, data, key)
        except TransformError as e:
            logger.debug("Serving %s/%s in stored shape: %s", self.collection, key, e)
            self._stats.fallback_reads += 1
            return public_view(data)
        self._stats.mapped_reads += 1
        return public_view(mapped)

    async def write(self, key: str, data: dict[str, Any]) -> dict[str, Any]:
        """
        Persist ``data`` (target shape) in its dual-compatible representation.

        Returns:
            The body as stored, without engine bookkeeping fields.

        Raises:
            WriteConflictError: If concurrent writers won every attempt
        """
        body = public_view(data)
        if not self.is_active:
            await self._store.put(self.collection, key, body)
            return body

        attempt = 1
        while True:
            try:
                return await self._write_once(key, body)
            except WriteConflictError:
                self._stats.write_conflicts += 1
                if attempt >= self._write_attempts:
                    raise
                logger.debug("Shim write conflict on %s/%s, retrying", self.collection, key)
                attempt += 1

    async def _write_once(self, key: str, body: dict[str, Any]) -> dict[str, Any]:
        existing = await self._store.get(self.collection, key)
        dual = public_view(self._transform.dual_write(body))

        if self._job.status in _REVERTING:
            stored = dual
        elif existing is not None:
            marked = is_marked_by(existing.data, self._job.id)
            stored = (
                stamp_marker(dual, self._job.id, self._transform.target_version) if marked else dual
            )
        elif await self._within_processed_range(key):
            stored = stamp_marker(dual, self._job.id, self._transform.target_version)
        else:
            stored = dual

        with self._tracer.span(
            "docmigrate.shim.write",
            {ATTR_JOB_ID: str(self._job.id), ATTR_COLLECTION: self.collection, ATTR_KEY: key},
        ):
            await self._store.commit(
                [
                    WriteOperation.set(
                        self.collection,
                        key,
                        stored,
                        expected_version=existing.version if existing is not None else 0,
                    )
                ]
            )
        self._stats.writes += 1
        return public_view(stored)

    async def _within_processed_range(self, key: str) -> bool:
        tails = await self._checkpoints.partition_tails(self._job.id)
        for partition in self._job.partitions:
            if partition.contains(key):
                tail = tails.get(partition.index)
                return tail is not None and key <= tail.last_processed_key
        return False

    def _source_view(self, data: dict[str, Any]) -> dict[str, Any]:
        if not is_marked_by(data, self._job.id):
            return public_view(data)
        try:
            return public_view(self._transform.inverse(strip_marker(data)))
        except Exception as e:
            logger.warning("Cannot render %s in source shape: %s", self.collection, e)
            return public_view(data)


__all__ = ["CompatibilityShim", "ShimStats", "public_view"]
