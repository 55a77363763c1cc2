"""
Rollback Manager - reverts documents a job has migrated.

Strategies:
    partial:        inverse-transform documents recorded in checkpoints after
                    a target sequence number, newest first
    complete:       partial with target 0, i.e. every document the job touched
    backupRestore:  restore touched documents from the pre-migration snapshot,
                    falling back to the inverse transform for documents the
                    snapshot never saw (inserted during cutover)

A document is "touched" when it carries this job's marker. Reverted
documents lose the marker, so running a rollback twice leaves already
reverted documents alone.

Rollback writes are bounded like batches and retried a fixed number of
times. When the budget runs out the plan is recorded as failed and
RollbackFailureError is raised; rollback failures are never retried
automatically beyond that.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from docmigrate.exceptions import (
    InvalidRollbackTargetError,
    RetryConfig,
    RollbackFailureError,
)
from docmigrate.metrics import MigrationMetrics
from docmigrate.models import (
    Checkpoint,
    MigrationJob,
    RollbackOutcome,
    RollbackPlan,
    RollbackStrategy,
)
from docmigrate.observability import (
    ATTR_JOB_ID,
    ATTR_ROLLBACK_STRATEGY,
    ATTR_ROLLBACK_TARGET,
    Tracer,
    create_tracer,
)
from docmigrate.repositories.backups import BackupStore
from docmigrate.repositories.checkpoints import DocumentCheckpointStore
from docmigrate.repositories.jobs import JobRepository
from docmigrate.retry import run_with_retry
from docmigrate.stores.interface import DocumentStore, WriteOperation, payload_size
from docmigrate.transforms import DocumentTransform, is_marked_by, strip_marker

logger = logging.getLogger(__name__)

_PAGE_SIZE = 500


@dataclass(frozen=True)
class RevertRange:
    """Key bounds of one reverted checkpoint."""

    start_at: str | None = None
    start_after: str | None = None
    end_at: str | None = None


class RollbackManager:
    """
    Executes RollbackPlans.

    Example:
        >>> manager = RollbackManager(store, checkpoints, backups, transform)
        >>> plan = await manager.rollback(job, RollbackStrategy.COMPLETE)
        >>> plan.outcome
        <RollbackOutcome.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        store: DocumentStore,
        checkpoints: DocumentCheckpointStore,
        backups: BackupStore,
        transform: DocumentTransform,
        *,
        jobs: JobRepository | None = None,
        metrics: MigrationMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._checkpoints = checkpoints
        self._backups = backups
        self._transform = transform
        self._jobs = jobs
        self._metrics = metrics
        self._sleep = sleep

        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def validate_target(
        self,
        job: MigrationJob,
        strategy: RollbackStrategy,
        target_checkpoint: int | None = None,
    ) -> int:
        """
        Resolve the checkpoint a rollback reverts back to.

        ``complete`` always targets 0; ``partial`` without a target does too.

        Raises:
            InvalidRollbackTargetError: If the target is not one of the job's checkpoints
        """
        if strategy == RollbackStrategy.COMPLETE or target_checkpoint is None:
            return 0
        if target_checkpoint == 0:
            return 0
        if target_checkpoint < 0 or await self._checkpoints.get(job.id, target_checkpoint) is None:
            raise InvalidRollbackTargetError(job.id, target_checkpoint)
        return target_checkpoint

    async def plan(
        self,
        job: MigrationJob,
        strategy: RollbackStrategy,
        target_checkpoint: int | None = None,
        *,
        reason: str | None = None,
    ) -> RollbackPlan:
        """
        Create and persist a pending plan.

        Raises:
            InvalidRollbackTargetError: If the target is not one of the job's checkpoints
        """
        plan = RollbackPlan(
            job_id=job.id,
            strategy=strategy,
            target_checkpoint=await self.validate_target(job, strategy, target_checkpoint),
            reason=reason,
        )
        await self._save(plan)
        return plan

    async def noop(self, job: MigrationJob, *, reason: str | None = None) -> RollbackPlan:
        """Record a plan for a job that never touched any document."""
        plan = RollbackPlan(
            job_id=job.id,
            strategy=RollbackStrategy.COMPLETE,
            target_checkpoint=0,
            reason=reason,
            outcome=RollbackOutcome.NOOP,
            executed_at=datetime.now(UTC),
        )
        await self._save(plan)
        logger.info(
            "Job %s has no checkpoints; nothing to roll back",
            job.id,
            extra={"job_id": str(job.id)},
        )
        return plan

    async def rollback(
        self,
        job: MigrationJob,
        strategy: RollbackStrategy,
        target_checkpoint: int | None = None,
        *,
        reason: str | None = None,
    ) -> RollbackPlan:
        """
        Plan and execute a rollback.

        Returns:
            The executed plan with outcome SUCCEEDED.

        Raises:
            InvalidRollbackTargetError: The target does not belong to the job
            RollbackFailureError: The rollback could not complete
        """
        plan = await self.plan(job, strategy, target_checkpoint, reason=reason)
        return await self.execute(job, plan)

    async def execute(self, job: MigrationJob, plan: RollbackPlan) -> RollbackPlan:
        logger.warning(
            "Rolling back job %s with strategy %s (target checkpoint %s)",
            job.id,
            plan.strategy.value,
            plan.target_checkpoint,
            extra={"job_id": str(job.id), "rollback_id": str(plan.id)},
        )
        with self._tracer.span(
            "docmigrate.rollback.execute",
            {
                ATTR_JOB_ID: str(job.id),
                ATTR_ROLLBACK_STRATEGY: plan.strategy.value,
                ATTR_ROLLBACK_TARGET: plan.target_checkpoint or 0,
            },
        ):
            try:
                if plan.strategy == RollbackStrategy.PARTIAL and plan.target_checkpoint:
                    keys = await self._partial_keys(job, plan.target_checkpoint)
                else:
                    keys = await self._marked_keys(job, RevertRange())
                if plan.strategy == RollbackStrategy.BACKUP_RESTORE and not (
                    await self._backups.has_snapshot(job.id)
                ):
                    raise RollbackFailureError(
                        f"Job {job.id} has no backup snapshot to restore from",
                        job_id=job.id,
                        plan=plan,
                    )
                reverted, unrecoverable = await self._revert(job, plan, keys)
                if unrecoverable:
                    plan.documents_reverted = reverted
                    raise RollbackFailureError(
                        f"{len(unrecoverable)} document(s) could not be reverted, "
                        f"first: {unrecoverable[0]}",
                        job_id=job.id,
                        plan=plan,
                    )
            except RollbackFailureError as e:
                await self._finish(plan, RollbackOutcome.FAILED, error=str(e))
                raise
            except Exception as e:
                await self._finish(plan, RollbackOutcome.FAILED, error=str(e))
                raise RollbackFailureError(
                    f"Rollback aborted by unexpected error: {e}",
                    job_id=job.id,
                    plan=plan,
                ) from e

        plan.documents_reverted = reverted
        await self._finish(plan, RollbackOutcome.SUCCEEDED)
        if self._metrics is not None:
            self._metrics.record_reverted(reverted)
        logger.info(
            "Rollback %s of job %s reverted %d document(s)",
            plan.id,
            job.id,
            reverted,
            extra={"job_id": str(job.id), "rollback_id": str(plan.id)},
        )
        return plan

    async def _partial_keys(self, job: MigrationJob, target: int) -> list[str]:
        ledger = await self._checkpoints.list_checkpoints(job.id)
        kept_tails: dict[int, str] = {}
        previous: dict[int, Checkpoint] = {}
        ranges: list[tuple[int, RevertRange]] = []
        static_count = len(job.partitions)

        for checkpoint in ledger:
            if checkpoint.sequence_number <= target:
                kept_tails[checkpoint.partition] = checkpoint.last_processed_key
            else:
                ranges.append(
                    (
                        checkpoint.sequence_number,
                        self._range_for(
                            job, checkpoint, previous.get(checkpoint.partition), static_count
                        ),
                    )
                )
            previous[checkpoint.partition] = checkpoint

        keys: list[str] = []
        seen: set[str] = set()
        for _, revert_range in sorted(ranges, key=lambda item: item[0], reverse=True):
            for key in await self._marked_keys(job, revert_range):
                if key in seen or self._is_kept(job, key, kept_tails):
                    continue
                seen.add(key)
                keys.append(key)
        return keys

    @staticmethod
    def _range_for(
        job: MigrationJob,
        checkpoint: Checkpoint,
        previous: Checkpoint | None,
        static_count: int,
    ) -> RevertRange:
        if checkpoint.partition >= static_count:
            return RevertRange(start_at=checkpoint.first_key, end_at=checkpoint.last_processed_key)
        if previous is not None:
            return RevertRange(
                start_after=previous.last_processed_key,
                end_at=checkpoint.last_processed_key,
            )
        return RevertRange(
            start_at=job.partitions[checkpoint.partition].start_key,
            end_at=checkpoint.last_processed_key,
        )

    @staticmethod
    def _is_kept(job: MigrationJob, key: str, kept_tails: dict[int, str]) -> bool:
        for partition in job.partitions:
            if partition.contains(key):
                tail = kept_tails.get(partition.index)
                return tail is not None and key <= tail
        return False

    async def _marked_keys(self, job: MigrationJob, bounds: RevertRange) -> list[str]:
        keys: list[str] = []
        after = bounds.start_after
        first_page = True
        while True:
            if first_page and after is None:
                page = await self._store.query(
                    job.collection, start_at=bounds.start_at, end_at=bounds.end_at, limit=_PAGE_SIZE
                )
            else:
                page = await self._store.query(
                    job.collection, start_after=after, end_at=bounds.end_at, limit=_PAGE_SIZE
                )
            first_page = False
            keys.extend(document.key for document in page if is_marked_by(document.data, job.id))
            if len(page) < _PAGE_SIZE:
                return keys
            after = page[-1].key

    async def _revert(
        self,
        job: MigrationJob,
        plan: RollbackPlan,
        keys: list[str],
    ) -> tuple[int, list[str]]:
        ceiling = job.config.effective_operation_ceiling(self._store.max_operations_per_transaction)
        # Each reverted document costs one read and one write.
        chunk_size = max(1, ceiling // 2)
        retry_config = RetryConfig(
            max_attempts=job.config.max_rollback_retries + 1,
            base_delay_ms=job.config.retry_base_delay_ms,
            max_delay_ms=job.config.retry_max_delay_ms,
        )
        reverted = 0
        unrecoverable: list[str] = []

        for offset in range(0, len(keys), chunk_size):
            chunk = keys[offset : offset + chunk_size]
            failures: list[str] = []
            committed = 0

            async def attempt() -> None:
                nonlocal committed
                failures.clear()
                operations = await self._build_operations(job, plan, chunk, failures)
                for batch in self._split_by_bytes(operations):
                    await self._store.commit(batch)
                    committed += len(batch)

            outcome = await run_with_retry(
                attempt,
                retry_config=retry_config,
                operation_name=f"rollback {job.id}",
                sleep=self._sleep,
            )
            reverted += committed
            if not outcome.succeeded:
                plan.documents_reverted = reverted
                raise RollbackFailureError(
                    f"Rollback writes failed after {outcome.attempts} attempt(s): "
                    f"{outcome.last_error}",
                    job_id=job.id,
                    plan=plan,
                )
            unrecoverable.extend(failures)

        return reverted, unrecoverable

    async def _build_operations(
        self,
        job: MigrationJob,
        plan: RollbackPlan,
        keys: list[str],
        failures: list[str],
    ) -> list[WriteOperation]:
        operations: list[WriteOperation] = []
        for key in keys:
            document = await self._store.get(job.collection, key)
            if document is None or not is_marked_by(document.data, job.id):
                continue
            restored = await self._restored_body(job, plan, key, document.data)
            if restored is None:
                failures.append(key)
                continue
            operations.append(
                WriteOperation.set(job.collection, key, restored, expected_version=document.version)
            )
        return operations

    async def _restored_body(
        self,
        job: MigrationJob,
        plan: RollbackPlan,
        key: str,
        data: dict[str, Any],
    ) -> dict[str, Any] | None:
        if plan.strategy == RollbackStrategy.BACKUP_RESTORE:
            backup = await self._backups.get_backup(job.id, key)
            if backup is not None:
                return backup
        try:
            return self._transform.inverse(strip_marker(data))
        except Exception as e:
            logger.error(
                "Inverse transform failed for %s/%s: %s",
                job.collection,
                key,
                e,
                extra={"job_id": str(job.id)},
            )
            return None

    def _split_by_bytes(self, operations: list[WriteOperation]) -> list[list[WriteOperation]]:
        budget = self._store.max_request_bytes
        batches: list[list[WriteOperation]] = []
        current: list[WriteOperation] = []
        size = 0
        for operation in operations:
            op_size = payload_size(operation.data)
            if current and size + op_size > budget:
                batches.append(current)
                current, size = [], 0
            current.append(operation)
            size += op_size
        if current:
            batches.append(current)
        return batches

    async def _finish(
        self,
        plan: RollbackPlan,
        outcome: RollbackOutcome,
        *,
        error: str | None = None,
    ) -> None:
        plan.outcome = outcome
        plan.executed_at = datetime.now(UTC)
        plan.error = error
        await self._save(plan)

    async def _save(self, plan: RollbackPlan) -> None:
        if self._jobs is not None:
            await self._jobs.save_rollback_plan(plan)


__all__ = ["RollbackManager", "RevertRange"]
