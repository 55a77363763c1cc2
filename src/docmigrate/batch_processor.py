"""
Batch Processor - transactional, resumable document transformation.

Each call to ``process_next_batch`` pulls up to ``batch_size`` documents
following a partition cursor, transforms them, and commits the results
together with one Checkpoint in a single atomic transaction. The ledger
therefore never claims progress the collection does not reflect, and the
collection never holds transformed documents the ledger does not cover.

Replaying a batch is safe:
    - A cursor behind its partition's ledger tail is fast-forwarded
      without touching any document.
    - Documents already carrying this job's marker are skipped, never
      transformed a second time.
    - Document writes carry the version read in the same attempt, so a
      concurrent writer turns the commit into a retried conflict instead
      of a lost update.

Transaction sizing:
    operations = reads + writes x (1 + index updates per document) + 1
    (the trailing 1 is the checkpoint). A config whose worst case exceeds
    the effective ceiling is rejected before any batch runs.
    Writes are also held to the store's request-byte quota: a batch whose
    transformed documents would not fit ends early, and the next batch
    starts after the last document committed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Collection
from uuid import UUID

from docmigrate.exceptions import (
    InvalidConfigError,
    MigrationError,
    RetryConfig,
    ThresholdExceededError,
    TransformError,
)
from docmigrate.metrics import MigrationMetrics
from docmigrate.models import (
    BatchOperation,
    BatchResult,
    BatchStatus,
    Checkpoint,
    KeyRange,
    MigrationConfig,
    MigrationJob,
    PartitionCursor,
)
from docmigrate.monitor import HealthMonitor
from docmigrate.observability import (
    ATTR_ATTEMPTS,
    ATTR_BATCH_SIZE,
    ATTR_DOCUMENTS_FAILED,
    ATTR_DOCUMENTS_MIGRATED,
    ATTR_JOB_ID,
    ATTR_PARTITION,
    ATTR_SEQUENCE_NUMBER,
    Tracer,
    create_tracer,
)
from docmigrate.repositories.checkpoints import DocumentCheckpointStore
from docmigrate.retry import run_with_retry
from docmigrate.stores.interface import Document, DocumentStore, WriteOperation, payload_size
from docmigrate.transforms import DocumentTransform, apply_forward, is_marked_by, stamp_marker

logger = logging.getLogger(__name__)


def transaction_operation_count(batch_size: int, estimated_index_updates: int = 0) -> int:
    """Worst-case operations of one batch transaction."""
    return batch_size + batch_size * (1 + estimated_index_updates) + 1


def max_batch_size(operation_ceiling: int, estimated_index_updates: int = 0) -> int:
    """Largest batch size whose transaction fits within ``operation_ceiling``."""
    return max(0, (operation_ceiling - 1) // (2 + estimated_index_updates))


def ensure_within_quota(
    config: MigrationConfig,
    store_ceiling: int,
    estimated_index_updates: int = 0,
) -> int:
    """
    Check that a batch of ``config.batch_size`` fits the operation ceiling.

    Returns:
        The effective per-transaction operation ceiling.

    Raises:
        InvalidConfigError: If the worst-case batch would exceed the ceiling.
    """
    ceiling = config.effective_operation_ceiling(store_ceiling)
    count = transaction_operation_count(config.batch_size, estimated_index_updates)
    if count > ceiling:
        raise InvalidConfigError(
            f"batch_size {config.batch_size} needs up to {count} operations per transaction, "
            f"ceiling is {ceiling}; use batch_size <= "
            f"{max_batch_size(ceiling, estimated_index_updates)}",
            field_name="batch_size",
        )
    return ceiling


class SequenceAllocator:
    """
    Job-wide checkpoint sequence numbers.

    Seeded from the ledger maximum; numbers are strictly increasing and a
    failed commit leaves a gap.
    """

    def __init__(self, last: int = 0) -> None:
        self._last = last

    @property
    def last(self) -> int:
        return self._last

    def next(self) -> int:
        self._last += 1
        return self._last


class BatchProcessor:
    """
    Executes batches for migration jobs.

    Example:
        >>> processor = BatchProcessor(store, checkpoints, transform)
        >>> cursor = PartitionCursor(job.partitions[0])
        >>> while True:
        ...     result = await processor.process_next_batch(job, cursor)
        ...     if result.is_exhausted_partition:
        ...         break
        ...     cursor = result.cursor
    """

    def __init__(
        self,
        store: DocumentStore,
        checkpoints: DocumentCheckpointStore,
        transform: DocumentTransform,
        *,
        metrics: MigrationMetrics | None = None,
        monitor: HealthMonitor | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._checkpoints = checkpoints
        self._transform = transform
        self._metrics = metrics
        self._monitor = monitor
        self._clock = clock
        self._sleep = sleep
        self._sequences: dict[UUID, SequenceAllocator] = {}

        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    @property
    def transform(self) -> DocumentTransform:
        return self._transform

    async def sequence_for(self, job_id: UUID) -> SequenceAllocator:
        allocator = self._sequences.get(job_id)
        if allocator is None:
            allocator = SequenceAllocator(await self._checkpoints.max_sequence(job_id))
            self._sequences[job_id] = allocator
        return allocator

    async def process_next_batch(
        self,
        job: MigrationJob,
        cursor: PartitionCursor,
        *,
        exclude: Collection[str] = (),
    ) -> BatchResult:
        """
        Process the next batch of ``cursor``'s partition.

        Args:
            job: The running job; its counters are updated in place
            cursor: Position inside one partition
            exclude: Keys to leave untouched (recorded failures during the sweep)

        Returns:
            BatchResult with the advanced cursor.

        Raises:
            InvalidConfigError: The batch cannot fit the operation ceiling
            ThresholdExceededError: The job's failed-document ratio crossed its threshold
            MigrationError: A non-retryable store error, or retries exhausted
                before any document could be read
        """
        config = job.config
        ensure_within_quota(
            config,
            self._store.max_operations_per_transaction,
            self._transform.estimated_index_updates,
        )
        started = self._clock()
        partition = cursor.partition

        tail = await self._checkpoints.partition_tail(job.id, partition.index)
        if tail is not None and (
            cursor.after_key is None or tail.last_processed_key > cursor.after_key
        ):
            logger.info(
                "Partition %d of job %s already committed through %s; fast-forwarding",
                partition.index,
                job.id,
                tail.last_processed_key,
                extra={"job_id": str(job.id)},
            )
            return BatchResult(
                status=BatchStatus.REPLAYED,
                cursor=cursor.advance(tail.last_processed_key),
                checkpoint=tail,
            )

        allocator = await self.sequence_for(job.id)
        retry_config = RetryConfig(
            max_attempts=config.max_retries + 1,
            base_delay_ms=config.retry_base_delay_ms,
            max_delay_ms=config.retry_max_delay_ms,
        )
        deadline = started + config.batch_timeout_seconds
        attempts = 0
        last_read: list[Document] = []

        async def attempt() -> BatchResult:
            nonlocal attempts, last_read
            attempts += 1
            documents = await self._read_batch(job, cursor)
            last_read = documents
            return await self._commit_batch(
                job, cursor, documents, allocator, exclude, attempts, deadline, started
            )

        with self._tracer.span(
            "docmigrate.batch.process",
            {
                ATTR_JOB_ID: str(job.id),
                ATTR_PARTITION: partition.index,
                ATTR_BATCH_SIZE: config.batch_size,
            },
        ):
            outcome = await run_with_retry(
                attempt,
                retry_config=retry_config,
                deadline=deadline,
                operation_name=f"batch {job.id}/{partition.index}",
                on_retry=self._on_retry,
                sleep=self._sleep,
            )

        if outcome.succeeded and outcome.value is not None:
            result = outcome.value
        else:
            result = await self._record_exhausted(
                job, cursor, last_read, exclude, allocator, attempts, started, outcome.last_error
            )

        self._account(job, result)
        return result

    async def sweep(
        self,
        job: MigrationJob,
        exclude: Collection[str] = (),
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> list[BatchResult]:
        """
        Catch-up pass over the whole collection.

        Transforms documents still lacking this job's marker, such as
        documents inserted ahead of a partition cursor during cutover.
        Checkpoints go to a dedicated partition index after the static ones.
        """
        sweep_range = KeyRange(index=len(job.partitions))
        cursor = PartitionCursor(sweep_range)
        tail = await self._checkpoints.partition_tail(job.id, sweep_range.index)
        if tail is not None:
            cursor = cursor.advance(tail.last_processed_key)

        results: list[BatchResult] = []
        with self._tracer.span("docmigrate.batch.sweep", {ATTR_JOB_ID: str(job.id)}):
            while should_stop is None or not should_stop():
                result = await self.process_next_batch(job, cursor, exclude=exclude)
                if result.is_exhausted_partition:
                    break
                results.append(result)
                cursor = result.cursor

        migrated = sum(result.documents_migrated for result in results)
        logger.info(
            "Catch-up sweep for job %s migrated %d document(s)",
            job.id,
            migrated,
            extra={"job_id": str(job.id)},
        )
        return results

    async def _read_batch(self, job: MigrationJob, cursor: PartitionCursor) -> list[Document]:
        partition = cursor.partition
        if cursor.after_key is None:
            return await self._store.query(
                job.collection,
                start_at=partition.start_key,
                end_before=partition.end_key,
                limit=job.config.batch_size,
            )
        return await self._store.query(
            job.collection,
            start_after=cursor.after_key,
            end_before=partition.end_key,
            limit=job.config.batch_size,
        )

    async def _commit_batch(
        self,
        job: MigrationJob,
        cursor: PartitionCursor,
        documents: list[Document],
        allocator: SequenceAllocator,
        exclude: Collection[str],
        attempt: int,
        deadline: float,
        started: float,
    ) -> BatchResult:
        if not documents:
            return BatchResult(status=BatchStatus.EMPTY, cursor=cursor, attempts=attempt)

        budget = self._store.max_request_bytes - self._checkpoint_reserve(job, cursor, documents)
        writes: list[WriteOperation] = []
        failed: list[str] = []
        included = 0
        size = 0
        for document in documents:
            if document.key in exclude or is_marked_by(document.data, job.id):
                included += 1
                continue
            try:
                transformed = apply_forward(self._transform, document.data, document.key)
            except TransformError as e:
                logger.debug("Transform failed for %s/%s: %s", job.collection, document.key, e)
                failed.append(document.key)
                included += 1
                continue
            write = WriteOperation.set(
                job.collection,
                document.key,
                stamp_marker(transformed, job.id, self._transform.target_version),
                expected_version=document.version,
            )
            write_size = payload_size(write.data)
            if write_size > budget:
                logger.warning(
                    "Transformed %s/%s is %d bytes, over the %d byte request budget",
                    job.collection,
                    document.key,
                    write_size,
                    budget,
                    extra={"job_id": str(job.id)},
                )
                failed.append(document.key)
                included += 1
                continue
            if size + write_size > budget:
                break
            writes.append(write)
            size += write_size
            included += 1

        if included < len(documents):
            logger.debug(
                "Batch in partition %d of job %s cut to %d of %d document(s) to fit %d bytes",
                cursor.partition.index,
                job.id,
                included,
                len(documents),
                budget,
            )
            documents = documents[:included]

        operation = BatchOperation(
            job_id=job.id,
            partition=cursor.partition.index,
            keys=tuple(document.key for document in documents),
            transform_name=self._transform.name,
            deadline=deadline,
            attempt=attempt,
        )
        next_cursor = cursor.advance(documents[-1].key)
        if not writes and not failed:
            return BatchResult(status=BatchStatus.SKIPPED, cursor=next_cursor, attempts=attempt)

        checkpoint = Checkpoint(
            job_id=job.id,
            sequence_number=allocator.next(),
            partition=operation.partition,
            first_key=operation.keys[0],
            last_processed_key=operation.keys[-1],
            documents_migrated=len(writes),
            documents_failed=len(failed),
            failed_keys=tuple(failed),
            batch_duration_ms=(self._clock() - started) * 1000,
        )
        with self._tracer.span(
            "docmigrate.batch.commit",
            {
                ATTR_JOB_ID: str(job.id),
                ATTR_PARTITION: operation.partition,
                ATTR_SEQUENCE_NUMBER: checkpoint.sequence_number,
                ATTR_DOCUMENTS_MIGRATED: len(writes),
                ATTR_DOCUMENTS_FAILED: len(failed),
                ATTR_ATTEMPTS: attempt,
            },
        ):
            await self._store.commit([*writes, self._checkpoints.append_operation(checkpoint)])
        self._checkpoints.note_committed(checkpoint)

        return BatchResult(
            status=BatchStatus.COMMITTED,
            cursor=next_cursor,
            checkpoint=checkpoint,
            documents_migrated=len(writes),
            documents_failed=len(failed),
            attempts=attempt,
            duration_ms=checkpoint.batch_duration_ms,
        )

    @staticmethod
    def _checkpoint_reserve(
        job: MigrationJob, cursor: PartitionCursor, documents: list[Document]
    ) -> int:
        """Upper bound on the checkpoint write's payload for a batch of ``documents``."""
        keys = tuple(document.key for document in documents)
        longest = max(keys, key=len)
        bound = Checkpoint(
            job_id=job.id,
            sequence_number=2**63 - 1,
            partition=cursor.partition.index,
            first_key=longest,
            last_processed_key=longest,
            documents_migrated=len(keys),
            documents_failed=len(keys),
            failed_keys=keys,
            batch_duration_ms=float(2**53),
        )
        return payload_size(bound.to_dict())

    async def _record_exhausted(
        self,
        job: MigrationJob,
        cursor: PartitionCursor,
        documents: list[Document],
        exclude: Collection[str],
        allocator: SequenceAllocator,
        attempts: int,
        started: float,
        error: MigrationError | None,
    ) -> BatchResult:
        if self._metrics is not None:
            self._metrics.record_exhausted_batch()
        if not documents:
            logger.error(
                "Batch in partition %d of job %s exhausted retries before reading any document",
                cursor.partition.index,
                job.id,
                extra={"job_id": str(job.id)},
            )
            if error is not None:
                raise error
            raise MigrationError("Batch exhausted its retry budget", job_id=job.id)

        failed = tuple(
            document.key
            for document in documents
            if document.key not in exclude and not is_marked_by(document.data, job.id)
        )
        duration_ms = (self._clock() - started) * 1000
        checkpoint = Checkpoint(
            job_id=job.id,
            sequence_number=allocator.next(),
            partition=cursor.partition.index,
            first_key=documents[0].key,
            last_processed_key=documents[-1].key,
            documents_migrated=0,
            documents_failed=len(failed),
            failed_keys=failed,
            batch_duration_ms=duration_ms,
        )
        await self._checkpoints.append(checkpoint)
        logger.error(
            "Batch %s..%s in partition %d of job %s failed after %d attempt(s): %s",
            checkpoint.first_key,
            checkpoint.last_processed_key,
            cursor.partition.index,
            job.id,
            attempts,
            error,
            extra={"job_id": str(job.id)},
        )
        return BatchResult(
            status=BatchStatus.FAILED,
            cursor=cursor.advance(checkpoint.last_processed_key),
            checkpoint=checkpoint,
            documents_failed=len(failed),
            attempts=attempts,
            duration_ms=duration_ms,
            error=str(error) if error else None,
        )

    def _account(self, job: MigrationJob, result: BatchResult) -> None:
        if result.status not in (BatchStatus.COMMITTED, BatchStatus.FAILED):
            return
        job.documents_migrated += result.documents_migrated
        job.documents_failed += result.documents_failed
        job.checkpoints_written += 1

        if self._metrics is not None:
            self._metrics.record_batch(
                result.documents_migrated, result.documents_failed, result.duration_ms
            )
        if self._monitor is not None:
            self._monitor.record_batch(
                result.duration_ms, result.documents_processed, result.documents_failed
            )

        if job.exceeds_failure_threshold():
            raise ThresholdExceededError(job.id, job.failure_ratio, job.config.failure_threshold)

    def _on_retry(self, attempt: int, error: MigrationError, delay_ms: float) -> None:
        if self._metrics is not None:
            self._metrics.record_retry()
        if self._monitor is not None:
            self._monitor.record_error()


__all__ = [
    "BatchProcessor",
    "SequenceAllocator",
    "ensure_within_quota",
    "max_batch_size",
    "transaction_operation_count",
]
