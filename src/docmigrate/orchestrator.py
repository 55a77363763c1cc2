"""
MigrationOrchestrator - drives migration jobs end to end.

The orchestrator owns the job state machine. It validates readiness,
partitions the collection, runs one worker per partition, listens to the
HealthMonitor's reports, and decides between continuing, pausing,
completing and rolling back. It is the only component that changes a
job's status.

Each job lives in its own runtime (workers, monitor, shim, processor),
keyed by job id, so several jobs can run in one process without sharing
mutable state.

Coordination:
    - Workers observe pause, abort and rollback requests at batch
      boundaries only; an in-flight transaction always runs to commit or
      failure first.
    - The HealthMonitor pushes reports into a queue consumed by the
      orchestrator; the monitor never calls back into job state.
    - Operators in another process queue control requests in the
      ``_migration_control`` collection; workers poll it between batches.

Emergency stop:
    ``critical_reports_to_abort`` consecutive critical reports, or one
    report whose error rate exceeds ``failure_threshold`` over at least
    ``batch_size x concurrency_limit`` documents, force an automatic
    rollback from validating, running or pausedDegraded.

Usage:
    >>> orchestrator = MigrationOrchestrator(store)
    >>> job = await orchestrator.start("users", transform, MigrationConfig(batch_size=200))
    >>> await orchestrator.pause(job.id)
    >>> await orchestrator.resume(job.id)
    >>> job = await orchestrator.wait(job.id)
    >>> job.status
    <JobStatus.COMPLETED: 'completed'>
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from docmigrate.batch_processor import BatchProcessor, ensure_within_quota
from docmigrate.compat import CompatibilityShim
from docmigrate.exceptions import (
    AlertDispatcher,
    IllegalStateTransitionError,
    InvalidConfigError,
    JobNotFoundError,
    MigrationError,
    RollbackFailureError,
    ThresholdExceededError,
    ValidationError,
)
from docmigrate.metrics import MigrationMetrics, get_job_metrics, release_job_metrics
from docmigrate.models import (
    AlertThresholds,
    ControlAction,
    HealthReport,
    HealthStatus,
    JobStatus,
    JobStatusReport,
    KeyRange,
    MigrationConfig,
    MigrationJob,
    PartitionCursor,
    RollbackOutcome,
    RollbackPlan,
    RollbackStrategy,
    ServiceDependency,
)
from docmigrate.monitor import HealthMonitor, MemoryProbe
from docmigrate.observability import (
    ATTR_COLLECTION,
    ATTR_JOB_ID,
    ATTR_SOURCE_SHAPE,
    ATTR_TARGET_SHAPE,
    Tracer,
    create_tracer,
)
from docmigrate.partitioning import compute_partitions
from docmigrate.repositories import (
    ADMIN_COLLECTIONS,
    BackupStore,
    DocumentCheckpointStore,
    DocumentJobRepository,
    JobRepository,
)
from docmigrate.rollback import RollbackManager
from docmigrate.stores.interface import DocumentStore
from docmigrate.transforms import DocumentTransform, load_transform
from docmigrate.validator import ReadinessValidator

logger = logging.getLogger(__name__)

TransformSpec = DocumentTransform | str | Mapping[str, Any]


class EmergencyStopPolicy:
    """
    Decides when health reports force an automatic rollback.

    Critical reports are counted consecutively; any non-critical report
    resets the count. A report covering fewer than ``min_documents``
    documents is too small a sample for its error rate to stop the job.
    """

    def __init__(
        self,
        failure_threshold: float,
        critical_reports_to_abort: int = 3,
        min_documents: int = 0,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.critical_reports_to_abort = critical_reports_to_abort
        self.min_documents = min_documents
        self._consecutive_critical = 0

    @property
    def consecutive_critical(self) -> int:
        return self._consecutive_critical

    def evaluate(self, report: HealthReport) -> str | None:
        """Return the stop reason, or None to keep going."""
        if report.status == HealthStatus.CRITICAL:
            self._consecutive_critical += 1
        else:
            self._consecutive_critical = 0

        if (
            report.documents_processed >= self.min_documents
            and report.error_rate > self.failure_threshold
        ):
            return (
                f"error rate {report.error_rate:.4f} exceeds failure threshold "
                f"{self.failure_threshold:.4f}"
            )
        if self._consecutive_critical >= self.critical_reports_to_abort:
            return f"{self._consecutive_critical} consecutive critical health reports"
        return None


@dataclass
class RollbackRequest:
    strategy: RollbackStrategy
    target_checkpoint: int | None
    reason: str | None


@dataclass
class JobRuntime:
    """In-process state of one job run by this orchestrator."""

    job: MigrationJob
    transform: DocumentTransform
    processor: BatchProcessor
    rollback: RollbackManager
    monitor: HealthMonitor
    metrics: MigrationMetrics
    shim: CompatibilityShim
    policy: EmergencyStopPolicy
    alerts: AlertDispatcher
    run_gate: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    stopping: bool = False
    detached: bool = False
    rollback_request: RollbackRequest | None = None
    last_plan: RollbackPlan | None = None
    last_control_poll: float = 0.0
    supervisor: asyncio.Task[None] | None = None
    health_consumer: asyncio.Task[None] | None = None
    retire_task: asyncio.Task[None] | None = None


class MigrationOrchestrator:
    """
    Runs and controls migration jobs against one document store.

    Example:
        >>> orchestrator = MigrationOrchestrator(store, alert_callback=pager.send)
        >>> job = await orchestrator.start(
        ...     "users",
        ...     transform,
        ...     MigrationConfig(batch_size=200, concurrency_limit=4),
        ...     dependencies=[ServiceDependency(DependencyKind.INDEX, "by_email")],
        ... )
        >>> report = await orchestrator.status(job.id)
        >>> print(report.job.status, report.health)
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        jobs: JobRepository | None = None,
        checkpoints: DocumentCheckpointStore | None = None,
        backups: BackupStore | None = None,
        validator: ReadinessValidator | None = None,
        thresholds: AlertThresholds | None = None,
        memory_probe: MemoryProbe | None = None,
        alert_callback: Callable[[MigrationError], None] | None = None,
        enable_metrics: bool = True,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._store = store
        self._jobs = jobs or DocumentJobRepository(store, tracer=self._tracer)
        self._checkpoints = checkpoints or DocumentCheckpointStore(store, tracer=self._tracer)
        self._backups = backups or BackupStore(store, tracer=self._tracer)
        self._validator = validator or ReadinessValidator(store, tracer=self._tracer)
        self._thresholds = thresholds or AlertThresholds()
        self._memory_probe = memory_probe
        self._alert_callback = alert_callback
        self._enable_metrics = enable_metrics

        self._runtimes: dict[UUID, JobRuntime] = {}

    @property
    def store(self) -> DocumentStore:
        return self._store

    @property
    def checkpoints(self) -> DocumentCheckpointStore:
        return self._checkpoints

    @property
    def jobs(self) -> JobRepository:
        return self._jobs

    def is_local(self, job_id: UUID) -> bool:
        """True if this process runs the job."""
        return job_id in self._runtimes

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(
        self,
        collection: str,
        transform: TransformSpec,
        config: MigrationConfig | None = None,
        *,
        dependencies: Iterable[ServiceDependency] = (),
        required_env: Iterable[str] = (),
        created_by: str | None = None,
    ) -> MigrationJob:
        """
        Validate readiness and start migrating ``collection``.

        Nothing is persisted unless validation passes.

        Returns:
            The job, already ``running``.

        Raises:
            InvalidConfigError: The config is out of range or cannot fit the quota
            ValidationError: A readiness check failed
        """
        config = config or MigrationConfig()
        if collection in ADMIN_COLLECTIONS or not collection:
            raise InvalidConfigError(
                f"Cannot migrate administrative collection {collection!r}",
                field_name="collection",
            )
        resolved = load_transform(transform)
        ensure_within_quota(
            config,
            self._store.max_operations_per_transaction,
            resolved.estimated_index_updates,
        )

        job = MigrationJob(
            collection=collection,
            source_shape_version=resolved.source_version,
            target_shape_version=resolved.target_version,
            config=config,
            created_by=created_by,
        )
        with self._tracer.span(
            "docmigrate.orchestrator.start",
            {
                ATTR_JOB_ID: str(job.id),
                ATTR_COLLECTION: collection,
                ATTR_SOURCE_SHAPE: job.source_shape_version,
                ATTR_TARGET_SHAPE: job.target_shape_version,
            },
        ):
            job.status = JobStatus.VALIDATING
            result = await self._validator.validate(
                job,
                dependencies,
                required_env,
                estimated_index_updates=resolved.estimated_index_updates,
            )
            if not result.passed:
                names = ", ".join(check.name for check in result.failures)
                raise ValidationError(
                    f"Readiness validation failed: {names}",
                    result=result,
                    job_id=job.id,
                )

            job.partitions = await compute_partitions(self._store, collection, config)
            job.documents_total = sum(p.estimated_documents for p in job.partitions)
            if config.take_backup_snapshot:
                await self._backups.take_snapshot(job)
            await self._jobs.create(job)

            runtime = self._attach(job, resolved)
            await self._transition(runtime, JobStatus.RUNNING)
            self._launch(runtime)

        logger.info(
            "Started job %s on %s: %d documents in %d partition(s)",
            job.id,
            collection,
            job.documents_total,
            len(job.partitions),
            extra={"job_id": str(job.id)},
        )
        return job

    async def recover(self, job_id: UUID, transform: TransformSpec) -> MigrationJob:
        """
        Resume a job left non-terminal by a process that stopped.

        Progress counters are rebuilt from the checkpoint ledger and workers
        resume from each partition's tail.

        Raises:
            JobNotFoundError: The job does not exist
            IllegalStateTransitionError: The job is terminal or already runs here
        """
        if job_id in self._runtimes:
            raise IllegalStateTransitionError(
                job_id, self._runtimes[job_id].job.status, operation="recover"
            )
        job = await self._jobs.get(job_id)
        if job.status.is_terminal:
            raise IllegalStateTransitionError(job_id, job.status, operation="recover")

        await self._checkpoints.reload(job.id)
        ledger = await self._checkpoints.list_checkpoints(job.id)
        job.documents_migrated = sum(c.documents_migrated for c in ledger)
        job.documents_failed = sum(c.documents_failed for c in ledger)
        job.checkpoints_written = len(ledger)

        runtime = self._attach(job, load_transform(transform))
        if job.status == JobStatus.ROLLING_BACK:
            pending = [
                plan
                for plan in await self._jobs.list_rollback_plans(job.id)
                if plan.outcome == RollbackOutcome.PENDING
            ]
            if pending:
                latest = pending[-1]
                runtime.rollback_request = RollbackRequest(
                    latest.strategy, latest.target_checkpoint, latest.reason
                )
            else:
                runtime.rollback_request = RollbackRequest(
                    RollbackStrategy.COMPLETE, 0, job.status_reason
                )
            runtime.stopping = True
        elif job.status in (JobStatus.PENDING, JobStatus.VALIDATING):
            if job.status == JobStatus.PENDING:
                job.status = JobStatus.VALIDATING
            await self._transition(runtime, JobStatus.RUNNING, "recovered")
        elif job.status == JobStatus.PAUSED_DEGRADED:
            await self._transition(runtime, JobStatus.RUNNING, "recovered")

        if job.status != JobStatus.PAUSED_MANUAL:
            runtime.run_gate.set()
        self._launch(runtime)
        logger.info(
            "Recovered job %s in status %s with %d checkpoint(s)",
            job.id,
            job.status.value,
            len(ledger),
            extra={"job_id": str(job.id)},
        )
        return job

    async def wait(self, job_id: UUID, timeout: float | None = None) -> MigrationJob:
        """
        Wait until the job stops running.

        Jobs run by another process are polled through the job repository.

        Raises:
            TimeoutError: If ``timeout`` elapses first
        """
        runtime = self._runtimes.get(job_id)
        if runtime is not None:
            await asyncio.wait_for(runtime.done.wait(), timeout)
            return runtime.job

        async def poll() -> MigrationJob:
            while True:
                job = await self._jobs.get(job_id)
                if job.status.is_terminal:
                    return job
                await asyncio.sleep(job.config.control_poll_interval_seconds)

        return await asyncio.wait_for(poll(), timeout)

    async def close(self) -> None:
        """
        Detach every job from this process.

        Running jobs stop at their next batch boundary and keep their
        status so ``recover`` can pick them up later.
        """
        for runtime in list(self._runtimes.values()):
            if runtime.supervisor is not None and not runtime.supervisor.done():
                runtime.detached = True
                runtime.stopping = True
                runtime.run_gate.set()
                await runtime.supervisor
            if runtime.retire_task is not None:
                runtime.retire_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await runtime.retire_task
            runtime.shim.retire()
            release_job_metrics(str(runtime.job.id))
        self._runtimes.clear()

    # =========================================================================
    # Operator controls
    # =========================================================================

    async def status(self, job_id: UUID) -> JobStatusReport:
        """Current job status plus the latest HealthReport."""
        runtime = self._runtimes.get(job_id)
        if runtime is not None:
            job = runtime.job
            health = runtime.monitor.latest or job.last_health
        else:
            job = await self._jobs.get(job_id)
            health = job.last_health
        return JobStatusReport(
            job=job,
            health=health,
            checkpoint_count=await self._checkpoints.count(job_id),
            rollback_plans=tuple(await self._jobs.list_rollback_plans(job_id)),
        )

    async def list_jobs(self) -> list[MigrationJob]:
        jobs = await self._jobs.list_jobs()
        return [self._runtimes[job.id].job if job.id in self._runtimes else job for job in jobs]

    async def pause(self, job_id: UUID) -> MigrationJob:
        """
        Pause a running job at its next batch boundary.

        Raises:
            IllegalStateTransitionError: The job is not ``running``
        """
        runtime = self._runtimes.get(job_id)
        if runtime is None:
            return await self._submit_remote(job_id, ControlAction.PAUSE)
        if runtime.job.status != JobStatus.RUNNING:
            raise IllegalStateTransitionError(
                job_id, runtime.job.status, JobStatus.PAUSED_MANUAL
            )
        runtime.run_gate.clear()
        await self._transition(runtime, JobStatus.PAUSED_MANUAL, "paused by operator")
        return runtime.job

    async def resume(self, job_id: UUID) -> MigrationJob:
        """
        Resume a manually paused job.

        Raises:
            IllegalStateTransitionError: The job is not ``pausedManual``
        """
        runtime = self._runtimes.get(job_id)
        if runtime is None:
            return await self._submit_remote(job_id, ControlAction.RESUME)
        if runtime.job.status != JobStatus.PAUSED_MANUAL:
            raise IllegalStateTransitionError(job_id, runtime.job.status, JobStatus.RUNNING)
        await self._transition(runtime, JobStatus.RUNNING, "resumed by operator")
        runtime.run_gate.set()
        return runtime.job

    async def abort(self, job_id: UUID, reason: str | None = None) -> RollbackPlan | None:
        """
        Stop the job and roll back everything it touched.

        Returns:
            The executed plan (``noop`` when no checkpoint exists), or None
            when the request was queued for the process running the job.

        Raises:
            IllegalStateTransitionError: The job is already terminal
        """
        runtime = self._runtimes.get(job_id)
        if runtime is None:
            await self._submit_remote(job_id, ControlAction.ABORT)
            return None
        job = runtime.job
        if job.status.is_terminal:
            raise IllegalStateTransitionError(job_id, job.status, operation="abort")
        if job.status != JobStatus.ROLLING_BACK:
            await self._request_rollback(
                runtime,
                RollbackRequest(RollbackStrategy.COMPLETE, 0, reason or "aborted by operator"),
            )
        await runtime.done.wait()
        return runtime.last_plan

    async def rollback(
        self,
        job_id: UUID,
        strategy: RollbackStrategy,
        target_checkpoint: int | None = None,
        *,
        transform: TransformSpec | None = None,
        reason: str | None = None,
    ) -> RollbackPlan:
        """
        Operator-initiated rollback.

        Legal from any state that may enter ``rollingBack``, including
        ``completed`` and ``rollbackFailed``. A job not run by this process
        can be rolled back here only once it has stopped, and ``transform``
        must then be supplied.

        Raises:
            IllegalStateTransitionError: The job cannot roll back now
            InvalidRollbackTargetError: The target is not one of the job's checkpoints
        """
        runtime = self._runtimes.get(job_id)
        if runtime is None:
            job = await self._jobs.get(job_id)
            if job.status not in (JobStatus.COMPLETED, JobStatus.ROLLBACK_FAILED):
                raise IllegalStateTransitionError(job_id, job.status, operation="rollback")
            if transform is None:
                raise InvalidConfigError(
                    "A transform is required to roll back a job run elsewhere",
                    field_name="transform",
                )
            runtime = self._attach(job, load_transform(transform))
            runtime.done.set()

        job = runtime.job
        if not job.status.can_transition_to(JobStatus.ROLLING_BACK):
            raise IllegalStateTransitionError(job_id, job.status, JobStatus.ROLLING_BACK)
        target = await runtime.rollback.validate_target(job, strategy, target_checkpoint)
        request = RollbackRequest(strategy, target, reason or f"{strategy.value} rollback by operator")

        if runtime.supervisor is not None and not runtime.supervisor.done():
            await self._request_rollback(runtime, request)
            await runtime.done.wait()
            if runtime.last_plan is None:
                raise MigrationError(
                    "Job was detached before its rollback ran", job_id=job_id
                )
            return runtime.last_plan

        if runtime.retire_task is not None:
            runtime.retire_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runtime.retire_task
            runtime.retire_task = None
        await self._request_rollback(runtime, request)
        plan = await self._execute_rollback(runtime)
        if job.status == JobStatus.ROLLED_BACK:
            self._schedule_retirement(runtime)
        return plan

    def compatibility_shim(self, job_id: UUID) -> CompatibilityShim:
        """
        The shim the live application should read and write through.

        Raises:
            JobNotFoundError: The job is not run by this process
        """
        runtime = self._runtimes.get(job_id)
        if runtime is None:
            raise JobNotFoundError(job_id)
        return runtime.shim

    def health_monitor(self, job_id: UUID) -> HealthMonitor:
        runtime = self._runtimes.get(job_id)
        if runtime is None:
            raise JobNotFoundError(job_id)
        return runtime.monitor

    # =========================================================================
    # Runtime wiring
    # =========================================================================

    def _attach(self, job: MigrationJob, transform: DocumentTransform) -> JobRuntime:
        metrics = get_job_metrics(str(job.id), job.collection, self._enable_metrics)
        monitor = HealthMonitor(
            job.id,
            interval=job.config.health_interval_seconds,
            window=job.config.health_window,
            thresholds=self._thresholds,
            store=self._store,
            memory_probe=self._memory_probe,
            tracer=self._tracer,
        )
        runtime = JobRuntime(
            job=job,
            transform=transform,
            processor=BatchProcessor(
                self._store,
                self._checkpoints,
                transform,
                metrics=metrics,
                monitor=monitor,
                tracer=self._tracer,
            ),
            rollback=RollbackManager(
                self._store,
                self._checkpoints,
                self._backups,
                transform,
                jobs=self._jobs,
                metrics=metrics,
                tracer=self._tracer,
            ),
            monitor=monitor,
            metrics=metrics,
            shim=CompatibilityShim(
                job, self._store, self._checkpoints, transform, tracer=self._tracer
            ),
            policy=EmergencyStopPolicy(
                job.config.failure_threshold,
                job.config.critical_reports_to_abort,
                min_documents=job.config.batch_size * job.config.concurrency_limit,
            ),
            alerts=AlertDispatcher(
                alert_callback=self._alert_callback,
                metrics_callback=metrics.record_alert,
            ),
        )
        self._runtimes[job.id] = runtime
        return runtime

    def _launch(self, runtime: JobRuntime) -> None:
        if runtime.job.status == JobStatus.RUNNING:
            runtime.run_gate.set()
        runtime.health_consumer = asyncio.create_task(
            self._consume_health(runtime, runtime.monitor.subscribe()),
            name=f"docmigrate-health-{runtime.job.id}",
        )
        runtime.supervisor = asyncio.create_task(
            self._supervise(runtime), name=f"docmigrate-job-{runtime.job.id}"
        )

    async def _transition(
        self,
        runtime: JobRuntime,
        target: JobStatus,
        reason: str | None = None,
    ) -> None:
        job = runtime.job
        current = job.status
        if not current.can_transition_to(target):
            raise IllegalStateTransitionError(job.id, current, target)
        job.status = target
        job.status_reason = reason
        if target.is_terminal:
            job.completed_at = datetime.now(UTC)
        await self._jobs.save(job)
        logger.info(
            "Job %s: %s -> %s%s",
            job.id,
            current.value,
            target.value,
            f" ({reason})" if reason else "",
            extra={"job_id": str(job.id), "from_status": current.value, "to_status": target.value},
        )

    async def _submit_remote(self, job_id: UUID, action: ControlAction) -> MigrationJob:
        job = await self._jobs.get(job_id)
        legal = {
            ControlAction.PAUSE: job.status == JobStatus.RUNNING,
            ControlAction.RESUME: job.status == JobStatus.PAUSED_MANUAL,
            ControlAction.ABORT: not job.status.is_terminal,
        }[action]
        if not legal:
            raise IllegalStateTransitionError(job_id, job.status, operation=action.value)
        await self._jobs.submit_control(job_id, action)
        return job

    # =========================================================================
    # Supervision
    # =========================================================================

    async def _supervise(self, runtime: JobRuntime) -> None:
        job = runtime.job
        await runtime.monitor.start()
        try:
            if not runtime.stopping:
                await self._run_workers(runtime)
            if not runtime.stopping and await self._batch_boundary(runtime):
                await self._complete(runtime)
            if runtime.rollback_request is not None and not runtime.detached:
                await self._execute_rollback(runtime)
        except Exception as e:
            logger.exception("Supervisor for job %s failed", job.id, extra={"job_id": str(job.id)})
            if runtime.rollback_request is None and job.status.can_transition_to(
                JobStatus.ROLLING_BACK
            ):
                await self._request_rollback(
                    runtime, RollbackRequest(RollbackStrategy.COMPLETE, 0, f"engine error: {e}")
                )
                await self._execute_rollback(runtime)
        finally:
            await runtime.monitor.stop()
            if runtime.health_consumer is not None:
                runtime.health_consumer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await runtime.health_consumer
            job.last_health = runtime.monitor.latest or job.last_health
            await self._jobs.save(job)
            if job.status in (JobStatus.COMPLETED, JobStatus.ROLLED_BACK):
                self._schedule_retirement(runtime)
            runtime.done.set()

    async def _run_workers(self, runtime: JobRuntime) -> None:
        workers = [
            asyncio.create_task(
                self._worker(runtime, partition),
                name=f"docmigrate-worker-{runtime.job.id}-{partition.index}",
            )
            for partition in runtime.job.partitions
        ]
        await asyncio.gather(*workers)

    async def _worker(self, runtime: JobRuntime, partition: KeyRange) -> None:
        job = runtime.job
        tail = await self._checkpoints.partition_tail(job.id, partition.index)
        cursor = PartitionCursor(partition, tail.last_processed_key if tail else None)

        while await self._batch_boundary(runtime):
            try:
                result = await runtime.processor.process_next_batch(job, cursor)
            except ThresholdExceededError as e:
                runtime.alerts.dispatch(e)
                await self._request_rollback(
                    runtime, RollbackRequest(RollbackStrategy.COMPLETE, 0, str(e)), automatic=True
                )
                return
            except Exception as e:
                logger.exception(
                    "Partition %d of job %s failed",
                    partition.index,
                    job.id,
                    extra={"job_id": str(job.id)},
                )
                if isinstance(e, MigrationError):
                    runtime.alerts.dispatch(e, force_alert=True)
                await self._request_rollback(
                    runtime,
                    RollbackRequest(RollbackStrategy.COMPLETE, 0, f"batch escalation: {e}"),
                    automatic=True,
                )
                return
            if result.is_exhausted_partition:
                logger.debug("Partition %d of job %s drained", partition.index, job.id)
                return
            cursor = result.cursor

    async def _batch_boundary(self, runtime: JobRuntime) -> bool:
        """Honour pause, abort and control requests; False means stop working."""
        while True:
            await self._poll_control(runtime)
            if runtime.stopping:
                return False
            if runtime.run_gate.is_set():
                return True
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    runtime.run_gate.wait(),
                    runtime.job.config.control_poll_interval_seconds,
                )

    async def _poll_control(self, runtime: JobRuntime) -> None:
        now = time.monotonic()
        if now - runtime.last_control_poll < runtime.job.config.control_poll_interval_seconds:
            return
        runtime.last_control_poll = now
        action = await self._jobs.pop_control(runtime.job.id)
        if action is None:
            return
        logger.info("Job %s received %s request", runtime.job.id, action.value)
        try:
            if action == ControlAction.PAUSE:
                await self.pause(runtime.job.id)
            elif action == ControlAction.RESUME:
                await self.resume(runtime.job.id)
            elif action == ControlAction.ABORT and runtime.rollback_request is None:
                await self._request_rollback(
                    runtime,
                    RollbackRequest(RollbackStrategy.COMPLETE, 0, "aborted by operator"),
                )
        except IllegalStateTransitionError as e:
            logger.warning("Ignoring %s request for job %s: %s", action.value, runtime.job.id, e)

    async def _complete(self, runtime: JobRuntime) -> None:
        job = runtime.job
        if job.status != JobStatus.COMPLETING:
            await self._transition(runtime, JobStatus.COMPLETING)
        failed = await self._checkpoints.failed_keys(job.id)
        try:
            await runtime.processor.sweep(job, failed, should_stop=lambda: runtime.stopping)
        except ThresholdExceededError as e:
            runtime.alerts.dispatch(e)
            await self._request_rollback(
                runtime, RollbackRequest(RollbackStrategy.COMPLETE, 0, str(e)), automatic=True
            )
            return
        if runtime.rollback_request is None and not runtime.detached:
            await self._transition(runtime, JobStatus.COMPLETED)
            logger.info(
                "Job %s completed: %d migrated, %d failed, %d checkpoint(s)",
                job.id,
                job.documents_migrated,
                job.documents_failed,
                job.checkpoints_written,
                extra={"job_id": str(job.id)},
            )

    async def _request_rollback(
        self,
        runtime: JobRuntime,
        request: RollbackRequest,
        *,
        automatic: bool = False,
    ) -> None:
        if runtime.rollback_request is not None:
            return
        job = runtime.job
        if (
            automatic
            and not job.status.allows_automatic_rollback
            and job.status != JobStatus.COMPLETING
        ):
            logger.warning(
                "Not rolling back job %s automatically from %s: %s",
                job.id,
                job.status.value,
                request.reason,
            )
            return
        runtime.rollback_request = request
        await self._transition(runtime, JobStatus.ROLLING_BACK, request.reason)
        runtime.stopping = True
        runtime.run_gate.set()

    async def _execute_rollback(self, runtime: JobRuntime) -> RollbackPlan:
        job = runtime.job
        request = runtime.rollback_request
        if request is None:
            raise MigrationError("No rollback was requested", job_id=job.id)
        try:
            if await self._checkpoints.count(job.id) == 0:
                plan = await runtime.rollback.noop(job, reason=request.reason)
            else:
                plan = await runtime.rollback.rollback(
                    job, request.strategy, request.target_checkpoint, reason=request.reason
                )
        except Exception as e:
            if isinstance(e, RollbackFailureError) and e.plan is not None:
                failure, plan = e, e.plan
            else:
                plan = RollbackPlan(
                    job_id=job.id,
                    strategy=request.strategy,
                    target_checkpoint=request.target_checkpoint,
                    reason=request.reason,
                    outcome=RollbackOutcome.FAILED,
                    executed_at=datetime.now(UTC),
                    error=str(e),
                )
                failure = RollbackFailureError(
                    f"Rollback of job {job.id} failed: {e}", job_id=job.id, plan=plan
                )
            runtime.last_plan = plan
            runtime.rollback_request = None
            await self._transition(runtime, JobStatus.ROLLBACK_FAILED, str(failure))
            runtime.alerts.dispatch(failure, force_alert=True)
            return plan

        runtime.last_plan = plan
        runtime.rollback_request = None
        await self._transition(runtime, JobStatus.ROLLED_BACK, request.reason)
        return plan

    async def _consume_health(
        self,
        runtime: JobRuntime,
        queue: asyncio.Queue[HealthReport | None],
    ) -> None:
        try:
            while True:
                report = await queue.get()
                if report is None:
                    return
                try:
                    await self._on_health_report(runtime, report)
                except IllegalStateTransitionError as e:
                    logger.debug("Health transition skipped for job %s: %s", runtime.job.id, e)
        finally:
            runtime.monitor.unsubscribe(queue)

    async def _on_health_report(self, runtime: JobRuntime, report: HealthReport) -> None:
        job = runtime.job
        job.last_health = report
        runtime.metrics.record_health(report)

        reason = runtime.policy.evaluate(report)
        if reason is not None and job.status.allows_automatic_rollback:
            logger.critical(
                "Emergency stop for job %s: %s",
                job.id,
                reason,
                extra={"job_id": str(job.id)},
            )
            await self._request_rollback(
                runtime,
                RollbackRequest(RollbackStrategy.COMPLETE, 0, f"emergency stop: {reason}"),
                automatic=True,
            )
            runtime.alerts.dispatch(
                MigrationError(f"Emergency stop: {reason}", job_id=job.id), force_alert=True
            )
            return

        if report.status != HealthStatus.HEALTHY and job.status == JobStatus.RUNNING:
            runtime.run_gate.clear()
            await self._transition(
                runtime, JobStatus.PAUSED_DEGRADED, "; ".join(report.reasons) or report.status.value
            )
        elif report.status == HealthStatus.HEALTHY and job.status == JobStatus.PAUSED_DEGRADED:
            await self._transition(runtime, JobStatus.RUNNING, "health recovered")
            runtime.run_gate.set()
        else:
            await self._jobs.save(job)

    def _schedule_retirement(self, runtime: JobRuntime) -> None:
        if runtime.retire_task is not None or not runtime.shim.is_active:
            return
        delay = runtime.job.config.grace_period_seconds

        async def retire_later() -> None:
            await asyncio.sleep(delay)
            runtime.shim.retire()

        if delay <= 0:
            runtime.shim.retire()
            return
        runtime.retire_task = asyncio.create_task(
            retire_later(), name=f"docmigrate-shim-retire-{runtime.job.id}"
        )


__all__ = [
    "EmergencyStopPolicy",
    "JobRuntime",
    "MigrationOrchestrator",
    "RollbackRequest",
]
