"""
Unit tests for span creation across the migration components.

Tests for:
- Tracer injection for BatchProcessor, RollbackManager, ReadinessValidator,
  CompatibilityShim and HealthMonitor
- Span names and their standard ATTR_* attributes
- Tracing disabled behavior
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from docmigrate.batch_processor import BatchProcessor
from docmigrate.compat import CompatibilityShim
from docmigrate.models import JobStatus, MigrationJob, PartitionCursor, RollbackStrategy
from docmigrate.monitor import HealthMonitor
from docmigrate.observability import (
    ATTR_COLLECTION,
    ATTR_DOCUMENTS_FAILED,
    ATTR_DOCUMENTS_MIGRATED,
    ATTR_JOB_ID,
    ATTR_KEY,
    ATTR_PARTITION,
    ATTR_ROLLBACK_STRATEGY,
    ATTR_ROLLBACK_TARGET,
    ATTR_SEQUENCE_NUMBER,
)
from docmigrate.observability.tracer import MockTracer, NullTracer
from docmigrate.repositories import BackupStore, DocumentCheckpointStore
from docmigrate.rollback import RollbackManager
from docmigrate.stores import InMemoryDocumentStore
from docmigrate.validator import ReadinessValidator
from tests.fixtures import (
    FailingKeysTransform,
    make_config,
    make_rename_transform,
    seed_users,
    user_key,
)


def _spans(tracer: MockTracer, name: str) -> list[dict[str, Any]]:
    return [attributes or {} for span_name, attributes in tracer.spans if span_name == name]


async def _migrate(
    store: InMemoryDocumentStore,
    checkpoints: DocumentCheckpointStore,
    job: MigrationJob,
    tracer: MockTracer | None = None,
) -> BatchProcessor:
    processor = BatchProcessor(
        store,
        checkpoints,
        make_rename_transform(),
        tracer=tracer,
        enable_tracing=tracer is not None,
        sleep=AsyncMock(),
    )
    cursor = PartitionCursor(job.partitions[0])
    while True:
        result = await processor.process_next_batch(job, cursor)
        if result.is_exhausted_partition:
            return processor
        cursor = result.cursor


class TestTracerInjection:
    """Tests that every component takes the tracer it is given."""

    def test_accepts_custom_tracer(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        tracer = MockTracer()
        transform = make_rename_transform()
        components = [
            BatchProcessor(memory_store, checkpoints, transform, tracer=tracer),
            RollbackManager(
                memory_store,
                checkpoints,
                BackupStore(memory_store, enable_tracing=False),
                transform,
                tracer=tracer,
            ),
            ReadinessValidator(memory_store, environ={}, tracer=tracer),
            CompatibilityShim(job_factory(), memory_store, checkpoints, transform, tracer=tracer),
            HealthMonitor(uuid4(), tracer=tracer),
        ]

        for component in components:
            assert component._tracer is tracer
            assert component._enable_tracing is True

    def test_tracing_disabled_when_requested(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
    ) -> None:
        processor = BatchProcessor(
            memory_store, checkpoints, make_rename_transform(), enable_tracing=False
        )

        assert processor._enable_tracing is False
        assert isinstance(processor._tracer, NullTracer)


class TestBatchProcessorSpans:
    """Tests for batch, commit and sweep spans."""

    @pytest.mark.asyncio
    async def test_each_batch_traces_process_then_commit(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        await seed_users(memory_store, 4)
        job = job_factory(config=make_config(batch_size=2))
        tracer = MockTracer()

        await _migrate(memory_store, checkpoints, job, tracer)

        assert tracer.span_names[:4] == [
            "docmigrate.batch.process",
            "docmigrate.batch.commit",
            "docmigrate.batch.process",
            "docmigrate.batch.commit",
        ]
        process = _spans(tracer, "docmigrate.batch.process")[0]
        assert process[ATTR_JOB_ID] == str(job.id)
        assert process[ATTR_PARTITION] == 0

        commits = _spans(tracer, "docmigrate.batch.commit")
        assert [span[ATTR_SEQUENCE_NUMBER] for span in commits] == [1, 2]
        assert all(span[ATTR_DOCUMENTS_MIGRATED] == 2 for span in commits)
        assert all(span[ATTR_JOB_ID] == str(job.id) for span in commits)

    @pytest.mark.asyncio
    async def test_commit_span_counts_failed_documents(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        await seed_users(memory_store, 4)
        job = job_factory(config=make_config(batch_size=4, failure_threshold=0.5))
        tracer = MockTracer()
        processor = BatchProcessor(
            memory_store,
            checkpoints,
            FailingKeysTransform({user_key(1)}),
            tracer=tracer,
            sleep=AsyncMock(),
        )

        await processor.process_next_batch(job, PartitionCursor(job.partitions[0]))

        (commit,) = _spans(tracer, "docmigrate.batch.commit")
        assert commit[ATTR_SEQUENCE_NUMBER] == 1
        assert commit[ATTR_DOCUMENTS_MIGRATED] == 3
        assert commit[ATTR_DOCUMENTS_FAILED] == 1

    @pytest.mark.asyncio
    async def test_sweep_is_wrapped_in_a_span(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        await seed_users(memory_store, 2)
        job = job_factory()
        tracer = MockTracer()
        processor = BatchProcessor(
            memory_store, checkpoints, make_rename_transform(), tracer=tracer, sleep=AsyncMock()
        )

        await processor.sweep(job)

        assert tracer.span_names[0] == "docmigrate.batch.sweep"
        assert _spans(tracer, "docmigrate.batch.sweep") == [{ATTR_JOB_ID: str(job.id)}]


class TestRollbackSpans:
    """Tests for the rollback execution span."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("strategy", "target", "expected_target"),
        [
            (RollbackStrategy.PARTIAL, 1, 1),
            (RollbackStrategy.COMPLETE, None, 0),
        ],
    )
    async def test_execute_records_strategy_and_target(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        job_factory: Callable[..., MigrationJob],
        strategy: RollbackStrategy,
        target: int | None,
        expected_target: int,
    ) -> None:
        await seed_users(memory_store, 4)
        job = job_factory(config=make_config(batch_size=2))
        await _migrate(memory_store, checkpoints, job)
        tracer = MockTracer()
        manager = RollbackManager(
            memory_store,
            checkpoints,
            BackupStore(memory_store, enable_tracing=False),
            make_rename_transform(),
            tracer=tracer,
            sleep=AsyncMock(),
        )

        await manager.rollback(job, strategy, target)

        assert tracer.span_names == ["docmigrate.rollback.execute"]
        (span,) = _spans(tracer, "docmigrate.rollback.execute")
        assert span[ATTR_JOB_ID] == str(job.id)
        assert span[ATTR_ROLLBACK_STRATEGY] == strategy.value
        assert span[ATTR_ROLLBACK_TARGET] == expected_target


class TestValidatorSpans:
    @pytest.mark.asyncio
    async def test_validate_creates_span(
        self,
        populated_store: InMemoryDocumentStore,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        tracer = MockTracer()
        validator = ReadinessValidator(populated_store, environ={}, tracer=tracer)
        job = job_factory()

        await validator.validate(job)

        assert tracer.span_names == ["docmigrate.validator.validate"]
        assert tracer.spans[0][1] == {ATTR_JOB_ID: str(job.id), ATTR_COLLECTION: "users"}


class TestCompatibilityShimSpans:
    """Tests for shim read and write spans."""

    @pytest.mark.asyncio
    async def test_read_and_write_spans_name_the_key(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        await seed_users(memory_store, 2)
        job = job_factory(status=JobStatus.RUNNING)
        tracer = MockTracer()
        shim = CompatibilityShim(
            job, memory_store, checkpoints, make_rename_transform(), tracer=tracer
        )

        await shim.read(user_key(0))
        await shim.write(user_key(1), {"email": "new@x.io", "name": "Renamed", "active": True})

        assert tracer.span_names == ["docmigrate.shim.read", "docmigrate.shim.write"]
        expected = [
            {ATTR_JOB_ID: str(job.id), ATTR_COLLECTION: "users", ATTR_KEY: user_key(0)},
            {ATTR_JOB_ID: str(job.id), ATTR_COLLECTION: "users", ATTR_KEY: user_key(1)},
        ]
        assert [attributes for _, attributes in tracer.spans] == expected

    @pytest.mark.asyncio
    async def test_retired_shim_writes_without_span(
        self,
        memory_store: InMemoryDocumentStore,
        checkpoints: DocumentCheckpointStore,
        job_factory: Callable[..., MigrationJob],
    ) -> None:
        await seed_users(memory_store, 1)
        tracer = MockTracer()
        shim = CompatibilityShim(
            job_factory(status=JobStatus.COMPLETED),
            memory_store,
            checkpoints,
            make_rename_transform(),
            tracer=tracer,
        )
        shim.retire()

        await shim.write(user_key(0), {"email": "new@x.io"})

        assert tracer.spans == []


class TestMonitorSpans:
    @pytest.mark.asyncio
    async def test_periodic_collection_creates_span(self) -> None:
        job_id = uuid4()
        tracer = MockTracer()
        monitor = HealthMonitor(job_id, interval=0.01, tracer=tracer)

        await monitor.start()
        try:
            for _ in range(200):
                if monitor.latest is not None:
                    break
                await asyncio.sleep(0.01)
        finally:
            await monitor.stop()

        assert monitor.latest is not None
        assert "docmigrate.monitor.collect" in tracer.span_names
        assert _spans(tracer, "docmigrate.monitor.collect")[0] == {ATTR_JOB_ID: str(job_id)}
