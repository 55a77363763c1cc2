"""
Unit tests for the RollbackManager.

Tests cover:
- Target validation
- partial, complete and backupRestore strategies
- Byte-identical restoration
- Failure reporting for documents that cannot be reverted
"""

import json
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock

import pytest

from docmigrate.batch_processor import BatchProcessor
from docmigrate.compat import CompatibilityShim
from docmigrate.exceptions import InvalidRollbackTargetError, RollbackFailureError
from docmigrate.metrics import MigrationMetrics
from docmigrate.models import (
    JobStatus,
    MigrationJob,
    PartitionCursor,
    RollbackOutcome,
    RollbackStrategy,
)
from docmigrate.repositories import BackupStore, DocumentCheckpointStore, DocumentJobRepository
from docmigrate.rollback import RollbackManager
from docmigrate.stores import InMemoryDocumentStore
from docmigrate.transforms import MARKER_FIELD, FieldMappingTransform, is_marked_by
from tests.fixtures import (
    FlakyStore,
    make_config,
    make_rename_transform,
    seed_users,
    snapshot_bodies,
    user_key,
)


class BrokenInverseTransform(FieldMappingTransform):
    def __init__(self) -> None:
        super().__init__(make_rename_transform().operations)

    def inverse(self, data: dict[str, Any]) -> dict[str, Any]:
        raise ValueError("inverse not available")


async def _migrate(
    store: InMemoryDocumentStore,
    job: MigrationJob,
    checkpoints: DocumentCheckpointStore,
) -> None:
    processor = BatchProcessor(store, checkpoints, make_rename_transform(), enable_tracing=False)
    cursor = PartitionCursor(job.partitions[0])
    while True:
        result = await processor.process_next_batch(job, cursor)
        if result.is_exhausted_partition:
            return
        cursor = result.cursor


def _manager(
    store: InMemoryDocumentStore,
    checkpoints: DocumentCheckpointStore,
    *,
    transform: FieldMappingTransform | None = None,
    jobs: DocumentJobRepository | None = None,
    metrics: MigrationMetrics | None = None,
) -> RollbackManager:
    return RollbackManager(
        store,
        checkpoints,
        BackupStore(store, enable_tracing=False),
        transform or make_rename_transform(),
        jobs=jobs,
        metrics=metrics,
        enable_tracing=False,
        sleep=AsyncMock(),
    )


def _dump(bodies: dict[str, Any]) -> str:
    return json.dumps(bodies)


class TestValidateTarget:
    """Tests for rollback target resolution."""

    @pytest.mark.asyncio
    async def test_resolution(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        await seed_users(memory_store, 4)
        job = job_factory(config=make_config(batch_size=2))
        await _migrate(memory_store, job, checkpoints)
        manager = _manager(memory_store, checkpoints)

        assert await manager.validate_target(job, RollbackStrategy.COMPLETE, 2) == 0
        assert await manager.validate_target(job, RollbackStrategy.PARTIAL, None) == 0
        assert await manager.validate_target(job, RollbackStrategy.PARTIAL, 0) == 0
        assert await manager.validate_target(job, RollbackStrategy.PARTIAL, 1) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", [42, -1])
    async def test_unknown_target(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        job_factory: Callable[..., MigrationJob],
        target: int,
    ) -> None:
        """Test that a plan may only target one of the job's own checkpoints."""
        job = job_factory()
        manager = _manager(memory_store, checkpoints)
        with pytest.raises(InvalidRollbackTargetError):
            await manager.plan(job, RollbackStrategy.PARTIAL, target)


class TestStrategies:
    """Tests for executing each rollback strategy."""

    @pytest.mark.asyncio
    async def test_partial_reverts_after_target(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        """Test that only documents recorded after the target checkpoint are reverted."""
        await seed_users(memory_store, 10)
        original = await snapshot_bodies(memory_store)
        job = job_factory(config=make_config(batch_size=2))
        await _migrate(memory_store, job, checkpoints)

        plan = await _manager(memory_store, checkpoints).rollback(
            job, RollbackStrategy.PARTIAL, 3
        )

        assert plan.outcome == RollbackOutcome.SUCCEEDED
        assert plan.documents_reverted == 4
        for index in range(10):
            document = await memory_store.get("users", user_key(index))
            assert document is not None
            if index < 6:
                assert is_marked_by(document.data, job.id)
            else:
                assert document.data == original[user_key(index)]

    @pytest.mark.asyncio
    async def test_complete_restores_byte_identical(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        await seed_users(memory_store, 25)
        before = _dump(await snapshot_bodies(memory_store))
        job = job_factory(config=make_config(batch_size=4))
        await _migrate(memory_store, job, checkpoints)
        metrics = MigrationMetrics(str(job.id), "users", enable_metrics=False)

        plan = await _manager(memory_store, checkpoints, metrics=metrics).rollback(
            job, RollbackStrategy.COMPLETE
        )

        assert plan.documents_reverted == 25
        assert _dump(await snapshot_bodies(memory_store)) == before
        assert metrics.get_snapshot().documents_reverted == 25

    @pytest.mark.asyncio
    async def test_rollback_twice_is_harmless(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        await seed_users(memory_store, 6)
        job = job_factory(config=make_config(batch_size=2))
        await _migrate(memory_store, job, checkpoints)
        manager = _manager(memory_store, checkpoints)

        await manager.rollback(job, RollbackStrategy.COMPLETE)
        second = await manager.rollback(job, RollbackStrategy.COMPLETE)

        assert second.outcome == RollbackOutcome.SUCCEEDED
        assert second.documents_reverted == 0

    @pytest.mark.asyncio
    async def test_backup_restore(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        """Test that snapshot copies are restored and cutover inserts fall back to the inverse."""
        await seed_users(memory_store, 6)
        original = await snapshot_bodies(memory_store)
        job = job_factory(config=make_config(batch_size=2), status=JobStatus.RUNNING)
        await BackupStore(memory_store, enable_tracing=False).take_snapshot(job)
        await _migrate(memory_store, job, checkpoints)
        shim = CompatibilityShim(
            job, memory_store, checkpoints, make_rename_transform(), enable_tracing=False
        )
        await shim.write("user-000000a", {"email": "new@x.io", "active": True})

        plan = await _manager(memory_store, checkpoints).rollback(
            job, RollbackStrategy.BACKUP_RESTORE
        )

        assert plan.documents_reverted == 7
        restored = await snapshot_bodies(memory_store)
        inserted = restored.pop("user-000000a")
        assert restored == original
        assert MARKER_FIELD not in inserted
        assert inserted["mail"] == "new@x.io"

    @pytest.mark.asyncio
    async def test_backup_restore_without_snapshot(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        jobs_repo: DocumentJobRepository,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        """Test that backupRestore fails rather than guessing when no snapshot exists."""
        await seed_users(memory_store, 2)
        job = job_factory(config=make_config(batch_size=2))
        await _migrate(memory_store, job, checkpoints)

        with pytest.raises(RollbackFailureError) as exc_info:
            await _manager(memory_store, checkpoints, jobs=jobs_repo).rollback(
                job, RollbackStrategy.BACKUP_RESTORE
            )

        assert exc_info.value.plan is not None
        plans = await jobs_repo.list_rollback_plans(job.id)
        assert [p.outcome for p in plans] == [RollbackOutcome.FAILED]
        assert "no backup snapshot" in (plans[0].error or "")

    @pytest.mark.asyncio
    async def test_noop(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        jobs_repo: DocumentJobRepository,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        job = job_factory()
        plan = await _manager(memory_store, checkpoints, jobs=jobs_repo).noop(job, reason="aborted")
        assert plan.outcome == RollbackOutcome.NOOP
        assert plan.is_finished
        assert len(await jobs_repo.list_rollback_plans(job.id)) == 1


class TestRollbackFailures:
    """Tests for rollbacks that cannot complete."""

    @pytest.mark.asyncio
    async def test_inverse_failure_is_unrecoverable(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        jobs_repo: DocumentJobRepository,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        await seed_users(memory_store, 4)
        job = job_factory(config=make_config(batch_size=2))
        await _migrate(memory_store, job, checkpoints)
        manager = _manager(
            memory_store, checkpoints, transform=BrokenInverseTransform(), jobs=jobs_repo
        )

        with pytest.raises(RollbackFailureError) as exc_info:
            await manager.rollback(job, RollbackStrategy.COMPLETE)

        assert "4 document(s) could not be reverted" in str(exc_info.value)
        plans = await jobs_repo.list_rollback_plans(job.id)
        assert plans[0].outcome == RollbackOutcome.FAILED
        document = await memory_store.get("users", user_key(0))
        assert document is not None
        assert is_marked_by(document.data, job.id)

    @pytest.mark.asyncio
    async def test_write_failures_exhaust_retry_budget(
        self,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        """Test that rollback writes are retried a bounded number of times."""
        store = FlakyStore(failures=None)
        checkpoints = DocumentCheckpointStore(store, enable_tracing=False)
        await seed_users(store, 4)
        job = job_factory(config=make_config(batch_size=2, max_rollback_retries=1))
        await _migrate(store, job, checkpoints)
        store.armed = True

        with pytest.raises(RollbackFailureError) as exc_info:
            await _manager(store, checkpoints).rollback(job, RollbackStrategy.COMPLETE)

        assert store.failed_commits == 2
        assert "after 2 attempt(s)" in str(exc_info.value)
