"""
Shared pytest fixtures for the docmigrate tests.

This module provides:
- Store fixtures (memory_store, populated_store, sqlite_store)
- Repository fixtures (checkpoints, jobs_repo, backups)
- Transform fixtures (rename_transform)
- Job fixtures (job_factory, fast_config)
- OpenTelemetry metrics fixtures (metric_reader)
- Orchestrator fixtures (orchestrator, alerts)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Generator
from typing import Any

import pytest
import pytest_asyncio
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from docmigrate import metrics as metrics_module
from docmigrate.exceptions import MigrationError
from docmigrate.metrics import clear_metrics_registry
from docmigrate.models import KeyRange, MigrationConfig, MigrationJob
from docmigrate.orchestrator import MigrationOrchestrator
from docmigrate.repositories import BackupStore, DocumentCheckpointStore, DocumentJobRepository
from docmigrate.stores import InMemoryDocumentStore, SQLiteDocumentStore
from docmigrate.transforms import FieldMappingTransform

# Import shared fixtures from fixtures module
from tests.fixtures import COLLECTION, make_config, make_rename_transform, seed_users

# ============================================================================
# Metrics
# ============================================================================


@pytest.fixture(autouse=True)
def reset_metrics_registry() -> Generator[None, None, None]:
    """Give every test its own per-job metric instruments."""
    clear_metrics_registry()
    yield
    clear_metrics_registry()


@pytest.fixture
def metric_reader(monkeypatch: pytest.MonkeyPatch) -> InMemoryMetricReader:
    """
    Provide an InMemoryMetricReader wired to the docmigrate meter.

    The meter is patched directly because the global MeterProvider can
    only be set once per process.
    """
    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    monkeypatch.setattr(metrics_module, "_meter", provider.get_meter("docmigrate"))
    return reader


# ============================================================================
# Stores and repositories
# ============================================================================


@pytest.fixture
def memory_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore(enable_tracing=False)


@pytest_asyncio.fixture
async def populated_store(memory_store: InMemoryDocumentStore) -> InMemoryDocumentStore:
    """In-memory store holding 1,000 source-shape users."""
    await seed_users(memory_store, 1000)
    return memory_store


@pytest_asyncio.fixture
async def sqlite_store(tmp_path: Any) -> AsyncGenerator[SQLiteDocumentStore, None]:
    store = SQLiteDocumentStore(str(tmp_path / "docmigrate.db"), enable_tracing=False)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def checkpoints(memory_store: InMemoryDocumentStore) -> DocumentCheckpointStore:
    return DocumentCheckpointStore(memory_store, enable_tracing=False)


@pytest.fixture
def jobs_repo(memory_store: InMemoryDocumentStore) -> DocumentJobRepository:
    return DocumentJobRepository(memory_store, enable_tracing=False)


@pytest.fixture
def backups(memory_store: InMemoryDocumentStore) -> BackupStore:
    return BackupStore(memory_store, enable_tracing=False)


# ============================================================================
# Jobs and transforms
# ============================================================================


@pytest.fixture
def rename_transform() -> FieldMappingTransform:
    return make_rename_transform()


@pytest.fixture
def fast_config() -> MigrationConfig:
    return make_config()


@pytest.fixture
def job_factory() -> Callable[..., MigrationJob]:
    """Create jobs with a single unbounded partition unless told otherwise."""

    def factory(
        collection: str = COLLECTION,
        config: MigrationConfig | None = None,
        partitions: list[KeyRange] | None = None,
        **kwargs: Any,
    ) -> MigrationJob:
        return MigrationJob(
            collection=collection,
            source_shape_version="1",
            target_shape_version="2",
            config=config or make_config(),
            partitions=partitions if partitions is not None else [KeyRange(index=0)],
            **kwargs,
        )

    return factory


# ============================================================================
# Orchestrator
# ============================================================================


@pytest.fixture
def alerts() -> list[MigrationError]:
    """Collects every alert the orchestrator raises."""
    return []


@pytest_asyncio.fixture
async def orchestrator(
    memory_store: InMemoryDocumentStore,
    alerts: list[MigrationError],
) -> AsyncGenerator[MigrationOrchestrator, None]:
    orchestrator = MigrationOrchestrator(
        memory_store,
        memory_probe=lambda: 10.0,
        alert_callback=alerts.append,
        enable_tracing=False,
    )
    yield orchestrator
    await orchestrator.close()
