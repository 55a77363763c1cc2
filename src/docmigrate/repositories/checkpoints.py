"""
Checkpoint ledger for migration jobs.

Checkpoints are immutable and append-only. Each one is written by the
same transaction that commits its batch, so the ledger never claims
progress the collection does not reflect. Workers append under their own
partition namespace; the ledger key encodes job, partition and sequence
number so a job's ledger, or one partition of it, is a single key-range
query.

Ledger key layout:
    {job_id}:{partition:06d}:{sequence:012d}
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable
from uuid import UUID

from docmigrate.exceptions import CheckpointError
from docmigrate.models import Checkpoint
from docmigrate.observability import (
    ATTR_JOB_ID,
    ATTR_PARTITION,
    ATTR_SEQUENCE_NUMBER,
    Tracer,
    create_tracer,
)
from docmigrate.stores.interface import DocumentStore, WriteOperation

logger = logging.getLogger(__name__)

CHECKPOINTS_COLLECTION = "_migration_checkpoints"


def checkpoint_key(job_id: UUID, partition: int, sequence_number: int) -> str:
    return f"{job_id}:{partition:06d}:{sequence_number:012d}"


def _job_bounds(job_id: UUID) -> tuple[str, str]:
    # ';' sorts immediately after ':'
    return f"{job_id}:", f"{job_id};"


@runtime_checkable
class CheckpointStore(Protocol):
    """
    Protocol for checkpoint ledgers.

    Implementations must reject an append that would break the ordering
    of a partition's ledger.
    """

    def append_operation(self, checkpoint: Checkpoint) -> WriteOperation:
        """
        Build the write that appends ``checkpoint``.

        The caller includes the write in its batch transaction and calls
        ``note_committed`` once the transaction succeeds.

        Raises:
            CheckpointError: If the checkpoint does not extend its partition's tail
        """
        ...

    def note_committed(self, checkpoint: Checkpoint) -> None:
        """Record that a checkpoint's transaction committed."""
        ...

    async def append(self, checkpoint: Checkpoint) -> None:
        """Append a checkpoint in its own single-document transaction."""
        ...

    async def list_checkpoints(
        self,
        job_id: UUID,
        after_sequence: int | None = None,
    ) -> list[Checkpoint]:
        """All checkpoints of a job ordered by sequence number."""
        ...

    async def get(self, job_id: UUID, sequence_number: int) -> Checkpoint | None:
        ...

    async def partition_tail(self, job_id: UUID, partition: int) -> Checkpoint | None:
        """Most recent checkpoint of one partition."""
        ...

    async def latest(self, job_id: UUID) -> Checkpoint | None:
        """Checkpoint with the highest sequence number: the ledger tail."""
        ...

    async def count(self, job_id: UUID) -> int:
        ...


class DocumentCheckpointStore:
    """
    Checkpoint ledger persisted in an administrative collection of the
    document store.

    Partition tails are cached in memory after the first read of a job's
    ledger; this process is the only writer for jobs it runs.

    Example:
        >>> ledger = DocumentCheckpointStore(store)
        >>> op = ledger.append_operation(checkpoint)
        >>> await store.commit([*document_writes, op])
        >>> ledger.note_committed(checkpoint)
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        collection: str = CHECKPOINTS_COLLECTION,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._store = store
        self._collection = collection
        self._tails: dict[tuple[UUID, int], Checkpoint] = {}
        self._max_sequence: dict[UUID, int] = {}
        self._loaded: set[UUID] = set()

        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    @property
    def collection(self) -> str:
        return self._collection

    def append_operation(self, checkpoint: Checkpoint) -> WriteOperation:
        tail = self._tails.get((checkpoint.job_id, checkpoint.partition))
        if tail is not None:
            if checkpoint.sequence_number <= tail.sequence_number:
                raise CheckpointError(
                    f"Checkpoint sequence {checkpoint.sequence_number} does not follow "
                    f"partition {checkpoint.partition} tail {tail.sequence_number}",
                    job_id=checkpoint.job_id,
                )
            if checkpoint.last_processed_key <= tail.last_processed_key:
                raise CheckpointError(
                    f"Checkpoint key {checkpoint.last_processed_key!r} does not advance "
                    f"partition {checkpoint.partition} past {tail.last_processed_key!r}",
                    job_id=checkpoint.job_id,
                )
        return WriteOperation.create(
            self._collection,
            checkpoint_key(checkpoint.job_id, checkpoint.partition, checkpoint.sequence_number),
            checkpoint.to_dict(),
        )

    def note_committed(self, checkpoint: Checkpoint) -> None:
        key = (checkpoint.job_id, checkpoint.partition)
        tail = self._tails.get(key)
        if tail is None or checkpoint.sequence_number > tail.sequence_number:
            self._tails[key] = checkpoint
        current_max = self._max_sequence.get(checkpoint.job_id, 0)
        self._max_sequence[checkpoint.job_id] = max(current_max, checkpoint.sequence_number)

    async def append(self, checkpoint: Checkpoint) -> None:
        await self._ensure_loaded(checkpoint.job_id)
        with self._tracer.span(
            "docmigrate.checkpoints.append",
            {
                ATTR_JOB_ID: str(checkpoint.job_id),
                ATTR_PARTITION: checkpoint.partition,
                ATTR_SEQUENCE_NUMBER: checkpoint.sequence_number,
            },
        ):
            await self._store.commit([self.append_operation(checkpoint)])
        self.note_committed(checkpoint)

    async def list_checkpoints(
        self,
        job_id: UUID,
        after_sequence: int | None = None,
    ) -> list[Checkpoint]:
        start, end = _job_bounds(job_id)
        checkpoints = [
            Checkpoint.from_dict(document.data)
            async for document in self._store.scan(
                self._collection, start_at=start, end_before=end
            )
        ]
        if after_sequence is not None:
            checkpoints = [c for c in checkpoints if c.sequence_number > after_sequence]
        checkpoints.sort(key=lambda c: c.sequence_number)
        return checkpoints

    async def get(self, job_id: UUID, sequence_number: int) -> Checkpoint | None:
        for checkpoint in await self.list_checkpoints(job_id):
            if checkpoint.sequence_number == sequence_number:
                return checkpoint
        return None

    async def partition_tail(self, job_id: UUID, partition: int) -> Checkpoint | None:
        await self._ensure_loaded(job_id)
        return self._tails.get((job_id, partition))

    async def partition_tails(self, job_id: UUID) -> dict[int, Checkpoint]:
        await self._ensure_loaded(job_id)
        return {
            partition: checkpoint
            for (owner, partition), checkpoint in self._tails.items()
            if owner == job_id
        }

    async def latest(self, job_id: UUID) -> Checkpoint | None:
        tails = await self.partition_tails(job_id)
        if not tails:
            return None
        return max(tails.values(), key=lambda c: c.sequence_number)

    async def max_sequence(self, job_id: UUID) -> int:
        await self._ensure_loaded(job_id)
        return self._max_sequence.get(job_id, 0)

    async def count(self, job_id: UUID) -> int:
        start, end = _job_bounds(job_id)
        return await self._store.count(self._collection, start_at=start, end_before=end)

    async def failed_keys(self, job_id: UUID) -> set[str]:
        failed: set[str] = set()
        for checkpoint in await self.list_checkpoints(job_id):
            failed.update(checkpoint.failed_keys)
        return failed

    async def reload(self, job_id: UUID) -> None:
        """Drop cached tails for a job and read them again from the store."""
        self._loaded.discard(job_id)
        for key in [key for key in self._tails if key[0] == job_id]:
            del self._tails[key]
        self._max_sequence.pop(job_id, None)
        await self._ensure_loaded(job_id)

    async def _ensure_loaded(self, job_id: UUID) -> None:
        if job_id in self._loaded:
            return
        for checkpoint in await self.list_checkpoints(job_id):
            self.note_committed(checkpoint)
        self._loaded.add(job_id)
        logger.debug(
            "Loaded checkpoint ledger for job %s (max sequence %d)",
            job_id,
            self._max_sequence.get(job_id, 0),
        )


__all__ = [
    "CHECKPOINTS_COLLECTION",
    "CheckpointStore",
    "DocumentCheckpointStore",
    "checkpoint_key",
]
