"""
Job repository for migration state persistence.

MigrationJob records, operator control requests and rollback plans are
kept in administrative collections of the same document store as the
application data, so job history survives process restarts and a second
process (the CLI) can inspect or steer a running job.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable
from uuid import UUID

from docmigrate.exceptions import JobNotFoundError, WriteConflictError
from docmigrate.models import ControlAction, MigrationJob, RollbackPlan
from docmigrate.observability import ATTR_JOB_ID, ATTR_JOB_STATUS, Tracer, create_tracer
from docmigrate.stores.interface import DocumentStore, WriteOperation

logger = logging.getLogger(__name__)

JOBS_COLLECTION = "_migration_jobs"
CONTROL_COLLECTION = "_migration_control"
ROLLBACKS_COLLECTION = "_migration_rollbacks"


@runtime_checkable
class JobRepository(Protocol):
    """Protocol for job persistence."""

    async def create(self, job: MigrationJob) -> None:
        """
        Persist a new job.

        Raises:
            WriteConflictError: If a job with the same id exists
        """
        ...

    async def get(self, job_id: UUID) -> MigrationJob:
        """
        Raises:
            JobNotFoundError: If the job does not exist
        """
        ...

    async def save(self, job: MigrationJob) -> None:
        """Overwrite the stored record with ``job``."""
        ...

    async def list_jobs(self) -> list[MigrationJob]:
        ...

    async def submit_control(self, job_id: UUID, action: ControlAction) -> None:
        """Queue an operator request for the process running ``job_id``."""
        ...

    async def pop_control(self, job_id: UUID) -> ControlAction | None:
        """Take the pending operator request, if any."""
        ...

    async def save_rollback_plan(self, plan: RollbackPlan) -> None:
        ...

    async def list_rollback_plans(self, job_id: UUID) -> list[RollbackPlan]:
        ...


class DocumentJobRepository:
    """
    JobRepository backed by the document store.

    Example:
        >>> jobs = DocumentJobRepository(store)
        >>> await jobs.create(job)
        >>> job.status = JobStatus.VALIDATING
        >>> await jobs.save(job)
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

    async def create(self, job: MigrationJob) -> None:
        with self._tracer.span("docmigrate.jobs.create", {ATTR_JOB_ID: str(job.id)}):
            await self._store.commit(
                [WriteOperation.create(JOBS_COLLECTION, str(job.id), job.to_dict())]
            )
        logger.info(
            "Created migration job %s for collection %s (%s -> %s)",
            job.id,
            job.collection,
            job.source_shape_version,
            job.target_shape_version,
            extra={"job_id": str(job.id)},
        )

    async def get(self, job_id: UUID) -> MigrationJob:
        document = await self._store.get(JOBS_COLLECTION, str(job_id))
        if document is None:
            raise JobNotFoundError(job_id)
        return MigrationJob.from_dict(document.data)

    async def exists(self, job_id: UUID) -> bool:
        return await self._store.get(JOBS_COLLECTION, str(job_id)) is not None

    async def save(self, job: MigrationJob) -> None:
        job.updated_at = datetime.now(UTC)
        with self._tracer.span(
            "docmigrate.jobs.save",
            {ATTR_JOB_ID: str(job.id), ATTR_JOB_STATUS: job.status.value},
        ):
            await self._store.put(JOBS_COLLECTION, str(job.id), job.to_dict())

    async def list_jobs(self) -> list[MigrationJob]:
        jobs = [
            MigrationJob.from_dict(document.data)
            async for document in self._store.scan(JOBS_COLLECTION)
        ]
        jobs.sort(key=lambda job: job.started_at)
        return jobs

    async def submit_control(self, job_id: UUID, action: ControlAction) -> None:
        await self._store.put(
            CONTROL_COLLECTION,
            str(job_id),
            {"action": action.value, "requested_at": datetime.now(UTC).isoformat()},
        )
        logger.info("Queued %s request for job %s", action.value, job_id)

    async def pop_control(self, job_id: UUID) -> ControlAction | None:
        document = await self._store.get(CONTROL_COLLECTION, str(job_id))
        if document is None:
            return None
        try:
            await self._store.commit(
                [WriteOperation.delete(CONTROL_COLLECTION, str(job_id), document.version)]
            )
        except WriteConflictError:
            # A newer request replaced this one; pick it up on the next poll.
            return None
        return ControlAction(document.data["action"])

    async def save_rollback_plan(self, plan: RollbackPlan) -> None:
        await self._store.put(ROLLBACKS_COLLECTION, f"{plan.job_id}:{plan.id}", plan.to_dict())

    async def list_rollback_plans(self, job_id: UUID) -> list[RollbackPlan]:
        plans = [
            RollbackPlan.from_dict(document.data)
            async for document in self._store.scan(
                ROLLBACKS_COLLECTION, start_at=f"{job_id}:", end_before=f"{job_id};"
            )
        ]
        plans.sort(key=lambda plan: plan.created_at)
        return plans


__all__ = [
    "JOBS_COLLECTION",
    "CONTROL_COLLECTION",
    "ROLLBACKS_COLLECTION",
    "JobRepository",
    "DocumentJobRepository",
]
