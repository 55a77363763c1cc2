"""
Data models for the docmigrate engine.

This module defines the values that flow between the engine's components:

- JobStatus: The job state machine and its legal transitions
- MigrationConfig: Validated, immutable per-job tuning knobs
- MigrationJob: One migration run, owned by the Orchestrator
- KeyRange / PartitionCursor: Static partitions and a worker's position in one
- Checkpoint: Immutable ledger entry written with every committed batch
- BatchOperation / BatchResult: One transactional attempt and its outcome
- RollbackPlan: A rollback request and its execution outcome
- HealthReport / AlertThresholds: Monitor output and the limits it is judged by
- ServiceDependency / HealthCheckResult: Readiness manifest and its verdict

State machine:
    pending -> validating -> running <-> {pausedManual, pausedDegraded}
    running -> completing -> completed
    {validating, running, pausedDegraded} -> rollingBack (automatic)
    any non-terminal -> rollingBack (operator abort)
    rollingBack -> rolledBack | rollbackFailed

Usage:
    >>> from docmigrate.models import MigrationConfig, JobStatus
    >>> config = MigrationConfig(batch_size=200, concurrency_limit=4)
    >>> JobStatus.RUNNING.can_transition_to(JobStatus.PAUSED_MANUAL)
    True
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from docmigrate.exceptions import InvalidConfigError

MAX_BATCH_SIZE = 500
MAX_CONCURRENCY_LIMIT = 64
MAX_RETRIES_LIMIT = 20


def _now() -> datetime:
    return datetime.now(UTC)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class JobStatus(Enum):
    """
    Status of a migration job.

    ``completed``, ``rolledBack`` and ``rollbackFailed`` are terminal: the
    engine never leaves them on its own.
    """

    PENDING = "pending"
    """Job created, not yet validated."""

    VALIDATING = "validating"
    """Readiness checks, partitioning and backup snapshot in progress."""

    RUNNING = "running"
    """Workers are processing batches."""

    PAUSED_MANUAL = "pausedManual"
    """Paused by an operator; resumes only on operator request."""

    PAUSED_DEGRADED = "pausedDegraded"
    """Paused because health degraded; resumes when health recovers."""

    COMPLETING = "completing"
    """All partitions drained; catch-up sweep and finalization running."""

    COMPLETED = "completed"
    """Every document is in the target shape."""

    ROLLING_BACK = "rollingBack"
    """Reverting documents to the source shape."""

    ROLLED_BACK = "rolledBack"
    """Rollback finished; the collection is back in the source shape."""

    ROLLBACK_FAILED = "rollbackFailed"
    """Rollback could not finish; an operator must intervene."""

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ROLLED_BACK, JobStatus.ROLLBACK_FAILED)

    @property
    def is_paused(self) -> bool:
        return self in (JobStatus.PAUSED_MANUAL, JobStatus.PAUSED_DEGRADED)

    @property
    def is_active(self) -> bool:
        """True while workers may be processing or about to process batches."""
        return self in (
            JobStatus.VALIDATING,
            JobStatus.RUNNING,
            JobStatus.PAUSED_MANUAL,
            JobStatus.PAUSED_DEGRADED,
            JobStatus.COMPLETING,
        )

    @property
    def allows_automatic_rollback(self) -> bool:
        """States from which health or failure thresholds may force a rollback."""
        return self in (JobStatus.VALIDATING, JobStatus.RUNNING, JobStatus.PAUSED_DEGRADED)

    def can_transition_to(self, target: JobStatus) -> bool:
        return target in VALID_TRANSITIONS.get(self, set())


VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.VALIDATING, JobStatus.ROLLING_BACK},
    JobStatus.VALIDATING: {JobStatus.RUNNING, JobStatus.ROLLING_BACK},
    JobStatus.RUNNING: {
        JobStatus.PAUSED_MANUAL,
        JobStatus.PAUSED_DEGRADED,
        JobStatus.COMPLETING,
        JobStatus.ROLLING_BACK,
    },
    JobStatus.PAUSED_MANUAL: {JobStatus.RUNNING, JobStatus.ROLLING_BACK},
    JobStatus.PAUSED_DEGRADED: {JobStatus.RUNNING, JobStatus.ROLLING_BACK},
    JobStatus.COMPLETING: {JobStatus.COMPLETED, JobStatus.ROLLING_BACK},
    JobStatus.ROLLING_BACK: {JobStatus.ROLLED_BACK, JobStatus.ROLLBACK_FAILED},
    # Operator-initiated only.
    JobStatus.COMPLETED: {JobStatus.ROLLING_BACK},
    JobStatus.ROLLBACK_FAILED: {JobStatus.ROLLING_BACK},
    JobStatus.ROLLED_BACK: set(),
}


class ControlAction(Enum):
    """Operator requests delivered to a job run by another process."""

    PAUSE = "pause"
    RESUME = "resume"
    ABORT = "abort"


@dataclass(frozen=True)
class MigrationConfig:
    """
    Per-job configuration.

    All values are validated on construction; an out-of-range value raises
    InvalidConfigError so an invalid config can never reach a running job.

    Attributes:
        batch_size: Documents per transactional batch.
        concurrency_limit: Maximum number of partitions processed in parallel.
        failure_threshold: Failed-document fraction that forces a rollback.
        max_retries: Retries per batch after the first attempt.
        max_rollback_retries: Retries per rollback write before giving up.
        retry_base_delay_ms: First backoff delay.
        retry_max_delay_ms: Backoff cap.
        batch_timeout_seconds: Deadline for one batch including retries.
        operation_ceiling: Override for the store's per-transaction ceiling.
        quota_safety_factor: Fraction of the ceiling the engine may use.
        health_interval_seconds: Monitor reporting interval.
        health_window: Number of reports retained for trend detection.
        critical_reports_to_abort: Consecutive critical reports forcing rollback.
        grace_period_seconds: Delay before the compatibility shim retires.
        take_backup_snapshot: Whether validation snapshots the collection.
        control_poll_interval_seconds: How often workers poll external control requests.
        min_documents_for_threshold: Documents a job must process before its running
            failure ratio is judged. None means half the collection, and at least
            one full round of concurrent batches.
    """

    batch_size: int = 200
    concurrency_limit: int = 4
    failure_threshold: float = 0.01
    max_retries: int = 5
    max_rollback_retries: int = 3
    retry_base_delay_ms: float = 1000.0
    retry_max_delay_ms: float = 30000.0
    batch_timeout_seconds: float = 30.0
    operation_ceiling: int | None = None
    quota_safety_factor: float = 1.0
    health_interval_seconds: float = 5.0
    health_window: int = 12
    critical_reports_to_abort: int = 3
    grace_period_seconds: float = 300.0
    take_backup_snapshot: bool = True
    control_poll_interval_seconds: float = 1.0
    min_documents_for_threshold: int | None = None

    def __post_init__(self) -> None:
        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise InvalidConfigError(
                f"batch_size must be between 1 and {MAX_BATCH_SIZE}, got {self.batch_size}",
                field_name="batch_size",
            )
        if not 1 <= self.concurrency_limit <= MAX_CONCURRENCY_LIMIT:
            raise InvalidConfigError(
                f"concurrency_limit must be between 1 and {MAX_CONCURRENCY_LIMIT}, "
                f"got {self.concurrency_limit}",
                field_name="concurrency_limit",
            )
        if not 0.0 < self.failure_threshold <= 1.0:
            raise InvalidConfigError(
                f"failure_threshold must be in (0, 1], got {self.failure_threshold}",
                field_name="failure_threshold",
            )
        if not 0 <= self.max_retries <= MAX_RETRIES_LIMIT:
            raise InvalidConfigError(
                f"max_retries must be between 0 and {MAX_RETRIES_LIMIT}, got {self.max_retries}",
                field_name="max_retries",
            )
        if not 0 <= self.max_rollback_retries <= MAX_RETRIES_LIMIT:
            raise InvalidConfigError(
                f"max_rollback_retries must be between 0 and {MAX_RETRIES_LIMIT}, "
                f"got {self.max_rollback_retries}",
                field_name="max_rollback_retries",
            )
        if self.retry_base_delay_ms < 0 or self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise InvalidConfigError(
                "retry delays must satisfy 0 <= retry_base_delay_ms <= retry_max_delay_ms",
                field_name="retry_base_delay_ms",
            )
        if self.batch_timeout_seconds <= 0:
            raise InvalidConfigError(
                f"batch_timeout_seconds must be positive, got {self.batch_timeout_seconds}",
                field_name="batch_timeout_seconds",
            )
        if self.operation_ceiling is not None and self.operation_ceiling < 3:
            raise InvalidConfigError(
                f"operation_ceiling must be >= 3, got {self.operation_ceiling}",
                field_name="operation_ceiling",
            )
        if not 0.0 < self.quota_safety_factor <= 1.0:
            raise InvalidConfigError(
                f"quota_safety_factor must be in (0, 1], got {self.quota_safety_factor}",
                field_name="quota_safety_factor",
            )
        if self.health_interval_seconds <= 0:
            raise InvalidConfigError(
                f"health_interval_seconds must be positive, got {self.health_interval_seconds}",
                field_name="health_interval_seconds",
            )
        if self.health_window < 1:
            raise InvalidConfigError(
                f"health_window must be >= 1, got {self.health_window}",
                field_name="health_window",
            )
        if self.critical_reports_to_abort < 1:
            raise InvalidConfigError(
                f"critical_reports_to_abort must be >= 1, got {self.critical_reports_to_abort}",
                field_name="critical_reports_to_abort",
            )
        if self.grace_period_seconds < 0:
            raise InvalidConfigError(
                f"grace_period_seconds must be >= 0, got {self.grace_period_seconds}",
                field_name="grace_period_seconds",
            )
        if self.control_poll_interval_seconds <= 0:
            raise InvalidConfigError(
                "control_poll_interval_seconds must be positive",
                field_name="control_poll_interval_seconds",
            )
        minimum = self.min_documents_for_threshold
        if minimum is not None and minimum < 1:
            raise InvalidConfigError(
                f"min_documents_for_threshold must be >= 1, got {minimum}",
                field_name="min_documents_for_threshold",
            )

    def effective_operation_ceiling(self, store_ceiling: int) -> int:
        """
        Operations one transaction may use against a store with ``store_ceiling``.

        The configured override can only tighten the store's ceiling.
        """
        ceiling = store_ceiling
        if self.operation_ceiling is not None:
            ceiling = min(ceiling, self.operation_ceiling)
        return int(ceiling * self.quota_safety_factor)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_size": self.batch_size,
            "concurrency_limit": self.concurrency_limit,
            "failure_threshold": self.failure_threshold,
            "max_retries": self.max_retries,
            "max_rollback_retries": self.max_rollback_retries,
            "retry_base_delay_ms": self.retry_base_delay_ms,
            "retry_max_delay_ms": self.retry_max_delay_ms,
            "batch_timeout_seconds": self.batch_timeout_seconds,
            "operation_ceiling": self.operation_ceiling,
            "quota_safety_factor": self.quota_safety_factor,
            "health_interval_seconds": self.health_interval_seconds,
            "health_window": self.health_window,
            "critical_reports_to_abort": self.critical_reports_to_abort,
            "grace_period_seconds": self.grace_period_seconds,
            "take_backup_snapshot": self.take_backup_snapshot,
            "control_poll_interval_seconds": self.control_poll_interval_seconds,
            "min_documents_for_threshold": self.min_documents_for_threshold,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationConfig:
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass(frozen=True)
class KeyRange:
    """
    A static partition of the ordered key space.

    The range is half-open: ``start_key`` is inclusive, ``end_key`` is
    exclusive. ``None`` means unbounded on that side.
    """

    index: int
    start_key: str | None = None
    end_key: str | None = None
    estimated_documents: int = 0

    def contains(self, key: str) -> bool:
        if self.start_key is not None and key < self.start_key:
            return False
        return not (self.end_key is not None and key >= self.end_key)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "start_key": self.start_key,
            "end_key": self.end_key,
            "estimated_documents": self.estimated_documents,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KeyRange:
        return cls(
            index=data["index"],
            start_key=data.get("start_key"),
            end_key=data.get("end_key"),
            estimated_documents=data.get("estimated_documents", 0),
        )


@dataclass(frozen=True)
class PartitionCursor:
    """A worker's position inside one partition: the last key it has passed."""

    partition: KeyRange
    after_key: str | None = None

    def advance(self, key: str | None) -> PartitionCursor:
        if key is None:
            return self
        return PartitionCursor(partition=self.partition, after_key=key)


@dataclass(frozen=True)
class Checkpoint:
    """
    Immutable progress record written inside each committed batch transaction.

    Attributes:
        job_id: Owning job.
        sequence_number: Job-wide, strictly increasing ledger position.
        partition: Index of the partition that produced the batch.
        first_key: First document key in the batch.
        last_processed_key: Last document key in the batch; the partition cursor.
        documents_migrated: Documents transformed by this batch.
        documents_failed: Documents that failed in this batch.
        failed_keys: Keys of the failed documents.
        timestamp: Commit time.
        batch_duration_ms: Wall time of the batch including retries.
    """

    job_id: UUID
    sequence_number: int
    partition: int
    last_processed_key: str
    documents_migrated: int
    documents_failed: int = 0
    first_key: str | None = None
    failed_keys: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=_now)
    batch_duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "sequence_number": self.sequence_number,
            "partition": self.partition,
            "first_key": self.first_key,
            "last_processed_key": self.last_processed_key,
            "documents_migrated": self.documents_migrated,
            "documents_failed": self.documents_failed,
            "failed_keys": list(self.failed_keys),
            "timestamp": self.timestamp.isoformat(),
            "batch_duration_ms": self.batch_duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            job_id=UUID(data["job_id"]),
            sequence_number=data["sequence_number"],
            partition=data["partition"],
            first_key=data.get("first_key"),
            last_processed_key=data["last_processed_key"],
            documents_migrated=data["documents_migrated"],
            documents_failed=data.get("documents_failed", 0),
            failed_keys=tuple(data.get("failed_keys", ())),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            batch_duration_ms=data.get("batch_duration_ms", 0.0),
        )


@dataclass(frozen=True)
class BatchOperation:
    """
    One in-flight transactional attempt.

    Lives only in memory for the duration of a single attempt.
    """

    job_id: UUID
    partition: int
    keys: tuple[str, ...]
    transform_name: str
    deadline: float
    attempt: int = 0


class BatchStatus(Enum):
    """Outcome of one ``process_next_batch`` call."""

    COMMITTED = "committed"
    """Documents written and a checkpoint appended in one transaction."""

    REPLAYED = "replayed"
    """The range was already committed; the cursor was fast-forwarded."""

    SKIPPED = "skipped"
    """Every document in the range was already in the target shape."""

    FAILED = "failed"
    """Retries exhausted; the batch was recorded as failed."""

    EMPTY = "empty"
    """No documents left in the partition."""


@dataclass(frozen=True)
class BatchResult:
    """Result of processing one batch."""

    status: BatchStatus
    cursor: PartitionCursor
    checkpoint: Checkpoint | None = None
    documents_migrated: int = 0
    documents_failed: int = 0
    attempts: int = 0
    duration_ms: float = 0.0
    error: str | None = None

    @property
    def is_exhausted_partition(self) -> bool:
        return self.status == BatchStatus.EMPTY

    @property
    def documents_processed(self) -> int:
        return self.documents_migrated + self.documents_failed


class RollbackStrategy(Enum):
    """How a rollback reverts the collection."""

    PARTIAL = "partial"
    """Inverse-transform documents recorded after a target checkpoint."""

    COMPLETE = "complete"
    """Inverse-transform every document the job touched."""

    BACKUP_RESTORE = "backupRestore"
    """Restore touched documents from the pre-migration snapshot."""


class RollbackOutcome(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOOP = "noop"


@dataclass
class RollbackPlan:
    """
    A rollback request and its execution record.

    A plan may only target a checkpoint of the same job.
    """

    job_id: UUID
    strategy: RollbackStrategy
    target_checkpoint: int | None = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=_now)
    executed_at: datetime | None = None
    outcome: RollbackOutcome = RollbackOutcome.PENDING
    documents_reverted: int = 0
    reason: str | None = None
    error: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.outcome != RollbackOutcome.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "job_id": str(self.job_id),
            "strategy": self.strategy.value,
            "target_checkpoint": self.target_checkpoint,
            "created_at": self.created_at.isoformat(),
            "executed_at": _format_dt(self.executed_at),
            "outcome": self.outcome.value,
            "documents_reverted": self.documents_reverted,
            "reason": self.reason,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollbackPlan:
        return cls(
            id=UUID(data["id"]),
            job_id=UUID(data["job_id"]),
            strategy=RollbackStrategy(data["strategy"]),
            target_checkpoint=data.get("target_checkpoint"),
            created_at=datetime.fromisoformat(data["created_at"]),
            executed_at=_parse_dt(data.get("executed_at")),
            outcome=RollbackOutcome(data["outcome"]),
            documents_reverted=data.get("documents_reverted", 0),
            reason=data.get("reason"),
            error=data.get("error"),
        )


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AlertThresholds:
    """
    Warning and critical limits used to classify a HealthReport.

    Throughput limits are floors and are only evaluated when the window
    saw batch activity.
    """

    latency_warning_ms: float = 1000.0
    latency_critical_ms: float = 3000.0
    error_rate_warning: float = 0.01
    error_rate_critical: float = 0.05
    memory_warning_mb: float = 512.0
    memory_critical_mb: float = 1024.0
    throughput_warning_per_sec: float = 10.0
    throughput_critical_per_sec: float = 5.0

    def __post_init__(self) -> None:
        if self.latency_critical_ms < self.latency_warning_ms:
            raise InvalidConfigError("latency_critical_ms must be >= latency_warning_ms")
        if self.error_rate_critical < self.error_rate_warning:
            raise InvalidConfigError("error_rate_critical must be >= error_rate_warning")
        if self.memory_critical_mb < self.memory_warning_mb:
            raise InvalidConfigError("memory_critical_mb must be >= memory_warning_mb")
        if self.throughput_critical_per_sec > self.throughput_warning_per_sec:
            raise InvalidConfigError(
                "throughput_critical_per_sec must be <= throughput_warning_per_sec"
            )


@dataclass(frozen=True)
class HealthReport:
    """Point-in-time health snapshot produced by the Monitor."""

    error_rate: float
    p95_latency_ms: float
    p99_latency_ms: float
    throughput_per_sec: float
    memory_used_mb: float
    status: HealthStatus
    timestamp: datetime = field(default_factory=_now)
    documents_processed: int = 0
    reasons: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_rate": self.error_rate,
            "p95_latency_ms": self.p95_latency_ms,
            "p99_latency_ms": self.p99_latency_ms,
            "throughput_per_sec": self.throughput_per_sec,
            "memory_used_mb": self.memory_used_mb,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "documents_processed": self.documents_processed,
            "reasons": list(self.reasons),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthReport:
        return cls(
            error_rate=data["error_rate"],
            p95_latency_ms=data["p95_latency_ms"],
            p99_latency_ms=data["p99_latency_ms"],
            throughput_per_sec=data["throughput_per_sec"],
            memory_used_mb=data["memory_used_mb"],
            status=HealthStatus(data["status"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            documents_processed=data.get("documents_processed", 0),
            reasons=tuple(data.get("reasons", ())),
        )


class DependencyKind(Enum):
    INDEX = "index"
    CREDENTIAL = "credential"
    SERVICE = "service"


@dataclass(frozen=True)
class ServiceDependency:
    """
    External prerequisite that must hold before a job may start.

    Attributes:
        kind: What is being checked.
        name: Index name, environment variable, or service name.
        collection: Collection owning an index (defaults to the job's).
        min_version: Minimum version for a service dependency.
        scope: Credential scope, informational.
    """

    kind: DependencyKind
    name: str
    collection: str | None = None
    min_version: str | None = None
    scope: str | None = None


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "message": self.message,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class HealthCheckResult:
    """Readiness verdict listing every check that ran."""

    job_id: UUID
    checks: tuple[CheckResult, ...]
    checked_at: datetime = field(default_factory=_now)

    @property
    def passed(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def failures(self) -> list[CheckResult]:
        return [check for check in self.checks if not check.passed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "passed": self.passed,
            "checked_at": self.checked_at.isoformat(),
            "checks": [check.to_dict() for check in self.checks],
        }


@dataclass
class MigrationJob:
    """
    One migration run.

    Mutated only by the Orchestrator through state transitions and
    progress updates; never deleted.
    """

    collection: str
    source_shape_version: str
    target_shape_version: str
    config: MigrationConfig = field(default_factory=MigrationConfig)
    id: UUID = field(default_factory=uuid4)
    status: JobStatus = JobStatus.PENDING
    started_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None
    updated_at: datetime = field(default_factory=_now)
    partitions: list[KeyRange] = field(default_factory=list)
    documents_total: int = 0
    documents_migrated: int = 0
    documents_failed: int = 0
    checkpoints_written: int = 0
    last_health: HealthReport | None = None
    status_reason: str | None = None
    created_by: str | None = None

    @property
    def documents_processed(self) -> int:
        return self.documents_migrated + self.documents_failed

    @property
    def failure_ratio(self) -> float:
        processed = self.documents_processed
        if processed == 0:
            return 0.0
        return self.documents_failed / processed

    @property
    def threshold_sample_size(self) -> int:
        """Documents to process before the running failure ratio is trusted."""
        configured = self.config.min_documents_for_threshold
        if configured is not None:
            return configured
        round_size = self.config.batch_size * self.config.concurrency_limit
        return max(round_size, self.documents_total // 2)

    def exceeds_failure_threshold(self) -> bool:
        """
        Whether recorded failures justify rolling the job back.

        When the collection size is known, failures are also judged against
        it, so a count the finished job could not absorb trips immediately.
        The running ratio counts only once ``threshold_sample_size``
        documents are in, so a cluster of failures in the first batches
        cannot trip it alone.
        """
        threshold = self.config.failure_threshold
        processed = self.documents_processed
        if self.documents_total > 0:
            population = max(self.documents_total, processed)
            if self.documents_failed > threshold * population:
                return True
        if processed < self.threshold_sample_size:
            return False
        return self.failure_ratio > threshold

    @property
    def progress_percent(self) -> float:
        if self.documents_total <= 0:
            return 100.0 if self.status == JobStatus.COMPLETED else 0.0
        return min(100.0, self.documents_processed / self.documents_total * 100)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "collection": self.collection,
            "source_shape_version": self.source_shape_version,
            "target_shape_version": self.target_shape_version,
            "status": self.status.value,
            "config": self.config.to_dict(),
            "started_at": self.started_at.isoformat(),
            "completed_at": _format_dt(self.completed_at),
            "updated_at": self.updated_at.isoformat(),
            "partitions": [partition.to_dict() for partition in self.partitions],
            "documents_total": self.documents_total,
            "documents_migrated": self.documents_migrated,
            "documents_failed": self.documents_failed,
            "checkpoints_written": self.checkpoints_written,
            "last_health": self.last_health.to_dict() if self.last_health else None,
            "status_reason": self.status_reason,
            "created_by": self.created_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationJob:
        last_health = data.get("last_health")
        return cls(
            id=UUID(data["id"]),
            collection=data["collection"],
            source_shape_version=data["source_shape_version"],
            target_shape_version=data["target_shape_version"],
            status=JobStatus(data["status"]),
            config=MigrationConfig.from_dict(data.get("config", {})),
            started_at=datetime.fromisoformat(data["started_at"]),
            completed_at=_parse_dt(data.get("completed_at")),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            partitions=[KeyRange.from_dict(item) for item in data.get("partitions", [])],
            documents_total=data.get("documents_total", 0),
            documents_migrated=data.get("documents_migrated", 0),
            documents_failed=data.get("documents_failed", 0),
            checkpoints_written=data.get("checkpoints_written", 0),
            last_health=HealthReport.from_dict(last_health) if last_health else None,
            status_reason=data.get("status_reason"),
            created_by=data.get("created_by"),
        )


@dataclass(frozen=True)
class JobStatusReport:
    """What ``status`` shows an operator: job status plus the latest HealthReport."""

    job: MigrationJob
    health: HealthReport | None
    checkpoint_count: int
    rollback_plans: tuple[RollbackPlan, ...] = ()

    @property
    def progress_percent(self) -> float:
        return self.job.progress_percent

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": str(self.job.id),
            "collection": self.job.collection,
            "status": self.job.status.value,
            "status_reason": self.job.status_reason,
            "progress_percent": round(self.progress_percent, 2),
            "documents_total": self.job.documents_total,
            "documents_migrated": self.job.documents_migrated,
            "documents_failed": self.job.documents_failed,
            "checkpoint_count": self.checkpoint_count,
            "health": self.health.to_dict() if self.health else None,
            "rollbacks": [plan.to_dict() for plan in self.rollback_plans],
        }


__all__ = [
    "JobStatus",
    "VALID_TRANSITIONS",
    "ControlAction",
    "MigrationConfig",
    "KeyRange",
    "PartitionCursor",
    "Checkpoint",
    "BatchOperation",
    "BatchStatus",
    "BatchResult",
    "RollbackStrategy",
    "RollbackOutcome",
    "RollbackPlan",
    "HealthStatus",
    "AlertThresholds",
    "HealthReport",
    "DependencyKind",
    "ServiceDependency",
    "CheckResult",
    "HealthCheckResult",
    "MigrationJob",
    "JobStatusReport",
    "MAX_BATCH_SIZE",
    "MAX_CONCURRENCY_LIMIT",
]
