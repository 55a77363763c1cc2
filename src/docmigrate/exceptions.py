"""
Exceptions and error classification for the docmigrate engine.

Every error raised by the engine derives from MigrationError and carries an
ErrorClassification that tells callers how to react: retry it, count it and
move on, or escalate to the Orchestrator.

Exception Hierarchy:
    MigrationError (base)
    +-- ValidationError
    |   +-- InvalidConfigError
    +-- TransientStoreError
    |   +-- QuotaExceededError
    |   +-- WriteConflictError
    +-- TransformError
    +-- IllegalStateTransitionError
    +-- ThresholdExceededError
    +-- RollbackFailureError
    +-- InvalidRollbackTargetError
    +-- CheckpointError
    +-- JobNotFoundError

Propagation policy:
    - TransformError is recovered per document (counted, batch continues).
    - TransientStoreError is recovered per batch via bounded retry.
    - ThresholdExceededError escalates to automatic rollback.
    - RollbackFailureError is never auto-recovered and always alerts.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from docmigrate.models import HealthCheckResult, JobStatus, RollbackPlan

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Used for alerting, logging, and operator notification decisions.
    """

    CRITICAL = "critical"
    """Data may be in an undefined state; an operator must act."""

    ERROR = "error"
    """Significant failure that blocks or aborts a job."""

    WARNING = "warning"
    """Issue that is expected to self-resolve (retry, skipped document)."""

    INFO = "info"
    """Informational condition, not a failure."""

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """Corresponding Python logging level."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        RECOVERABLE: Recovered locally, e.g. a single failed document.
        TRANSIENT: May succeed on retry with backoff.
        FATAL: No automatic recovery; the job must stop or roll back.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        """True only for FATAL errors."""
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff with jitter.

    Attributes:
        max_attempts: Maximum number of attempts, including the first one.
        base_delay_ms: Delay before the first retry in milliseconds.
        max_delay_ms: Upper bound for any single delay.
        exponential_base: Growth factor per attempt.
        jitter_factor: Random jitter added on top of the delay (0.0 to 1.0).

    Example:
        >>> config = RetryConfig(max_attempts=5, base_delay_ms=100)
        >>> config.get_delay_ms(attempt=3)  # ~800ms plus jitter
    """

    max_attempts: int = 3
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate the delay before retrying after ``attempt`` (0-indexed).

        Returns:
            Delay in milliseconds, capped at ``max_delay_ms``.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)
        if self.jitter_factor > 0:
            delay += delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter
        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }


TRANSIENT_RETRY_CONFIG = RetryConfig(
    max_attempts=6,
    base_delay_ms=1000.0,
    max_delay_ms=30000.0,
)

QUOTA_RETRY_CONFIG = RetryConfig(
    max_attempts=6,
    base_delay_ms=4000.0,
    max_delay_ms=120000.0,
    jitter_factor=0.2,
)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Metadata describing how an error should be handled.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        retry_config: Default retry configuration for transient errors.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None
    metrics_labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        if self.metrics_labels:
            result["metrics_labels"] = self.metrics_labels
        return result


class MigrationError(Exception):
    """
    Base exception for all docmigrate errors.

    Subclasses override ``_default_classification`` to describe their
    severity and recoverability.

    Attributes:
        message: Human-readable error description.
        job_id: The job that raised the error, if applicable.
        suggested_action: Overrides the classification's guidance when set.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        category="general",
        suggested_action="Review migration logs for the failing job",
    )

    def __init__(
        self,
        message: str,
        *,
        job_id: UUID | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.job_id = job_id
        self.suggested_action = suggested_action or self._default_classification.suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        if self.job_id:
            return f"{self.message} job_id={self.job_id}"
        return self.message

    @property
    def classification(self) -> ErrorClassification:
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def is_retryable(self) -> bool:
        return self.classification.recoverability.should_retry

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """Convert the exception to a dictionary for logs and the CLI."""
        return {
            "message": self.message,
            "job_id": str(self.job_id) if self.job_id else None,
            "error_code": self.error_code,
            "suggested_action": self.suggested_action,
            "classification": self.classification.to_dict(),
        }


class ValidationError(MigrationError):
    """
    Raised when a job fails its readiness checks.

    Nothing is persisted for a job that fails validation. The full
    HealthCheckResult is attached so operators see every failed check.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="VALIDATION_FAILED",
        category="readiness",
        suggested_action="Fix every failed readiness check and start the job again",
    )

    def __init__(
        self,
        message: str,
        *,
        result: HealthCheckResult | None = None,
        job_id: UUID | None = None,
    ) -> None:
        self.result = result
        super().__init__(message, job_id=job_id)

    @property
    def failures(self) -> list[str]:
        if self.result is None:
            return [self.message]
        return [f"{check.name}: {check.message}" for check in self.result.failures]

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["failures"] = self.failures
        return data


class InvalidConfigError(ValidationError, ValueError):
    """Raised when a configuration value is outside its allowed range."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_CONFIG",
        category="config",
        suggested_action="Correct the configuration value and start the job again",
    )

    def __init__(self, message: str, *, field_name: str | None = None) -> None:
        self.field_name = field_name
        super().__init__(message)


class TransientStoreError(MigrationError):
    """
    Raised for store failures that may succeed on retry.

    Network blips, timeouts and contention all land here; the Batch
    Processor retries them with exponential backoff.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="STORE_TRANSIENT",
        category="store",
        suggested_action="Check document store connectivity; the engine retries automatically",
        retry_config=TRANSIENT_RETRY_CONFIG,
    )

    backoff_multiplier: float = 1.0


class QuotaExceededError(TransientStoreError):
    """
    Raised when a request exceeds the store's operation or payload quota.

    Retried like any transient error but with a longer backoff.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="STORE_QUOTA_EXCEEDED",
        category="store",
        suggested_action="Lower batch_size or concurrency_limit if quota errors persist",
        retry_config=QUOTA_RETRY_CONFIG,
    )

    backoff_multiplier: float = 4.0

    def __init__(
        self,
        message: str,
        *,
        operation_count: int | None = None,
        limit: int | None = None,
        job_id: UUID | None = None,
    ) -> None:
        self.operation_count = operation_count
        self.limit = limit
        super().__init__(message, job_id=job_id)


class WriteConflictError(TransientStoreError):
    """Raised when a precondition on a write fails (version mismatch or existing key)."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="STORE_WRITE_CONFLICT",
        category="store",
        suggested_action="A concurrent writer touched the same document; the write is retried",
        retry_config=TRANSIENT_RETRY_CONFIG,
    )

    def __init__(self, collection: str, key: str, reason: str) -> None:
        self.collection = collection
        self.key = key
        self.reason = reason
        super().__init__(f"Write conflict on {collection}/{key}: {reason}")


class TransformError(MigrationError):
    """
    Raised by a transform for a single document it cannot convert.

    The document is left untouched and counted as failed.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="TRANSFORM_FAILED",
        category="transform",
        suggested_action="Inspect the failed document keys recorded on the checkpoints",
    )

    def __init__(
        self,
        message: str,
        *,
        key: str | None = None,
        job_id: UUID | None = None,
    ) -> None:
        self.key = key
        super().__init__(message, job_id=job_id)


class IllegalStateTransitionError(MigrationError):
    """Raised when an operation is not legal from the job's current status."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ILLEGAL_STATE_TRANSITION",
        category="state",
        suggested_action="Check the job status before issuing this operation",
    )

    def __init__(
        self,
        job_id: UUID,
        current: JobStatus,
        target: JobStatus | None = None,
        operation: str | None = None,
    ) -> None:
        self.current = current
        self.target = target
        self.operation = operation
        if target is not None:
            message = f"Illegal state transition: {current.value} -> {target.value}"
        else:
            message = f"Operation '{operation}' is not legal while job is {current.value}"
        super().__init__(message, job_id=job_id)


class ThresholdExceededError(MigrationError):
    """Raised when the cumulative failed-document ratio crosses the failure threshold."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="FAILURE_THRESHOLD_EXCEEDED",
        category="health",
        suggested_action="The job is rolled back automatically; fix the transform and retry",
    )

    def __init__(self, job_id: UUID, failure_ratio: float, threshold: float) -> None:
        self.failure_ratio = failure_ratio
        self.threshold = threshold
        super().__init__(
            f"Failed-document ratio {failure_ratio:.4f} exceeds threshold {threshold:.4f}",
            job_id=job_id,
        )


class RollbackFailureError(MigrationError):
    """
    Raised when a rollback cannot complete within its retry budget.

    The job lands in ``rollbackFailed`` and an operator must intervene.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROLLBACK_FAILED",
        category="rollback",
        suggested_action=(
            "Data may be partially reverted. Inspect the job, then run "
            "'docmigrate rollback --strategy backupRestore'"
        ),
    )

    def __init__(
        self,
        message: str,
        *,
        job_id: UUID | None = None,
        plan: RollbackPlan | None = None,
    ) -> None:
        self.plan = plan
        super().__init__(message, job_id=job_id)


class InvalidRollbackTargetError(MigrationError):
    """Raised when a rollback targets a checkpoint that does not belong to the job."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_ROLLBACK_TARGET",
        category="rollback",
        suggested_action="List the job's checkpoints and pick one of its sequence numbers",
    )

    def __init__(self, job_id: UUID, target_checkpoint: int) -> None:
        self.target_checkpoint = target_checkpoint
        super().__init__(
            f"Checkpoint {target_checkpoint} does not belong to this job",
            job_id=job_id,
        )


class CheckpointError(MigrationError):
    """Raised when a checkpoint would break ledger ordering."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CHECKPOINT_ERROR",
        category="checkpoint",
        suggested_action="Checkpoints are append-only; investigate concurrent writers",
    )


class JobNotFoundError(MigrationError):
    """Raised when a job id is unknown."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="JOB_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the job id with 'docmigrate list'",
    )

    def __init__(self, job_id: UUID) -> None:
        super().__init__(f"Migration job not found: {job_id}", job_id=job_id)


class AlertDispatcher:
    """
    Routes errors to logging, alerting and metrics hooks.

    Every error is logged at its severity's level. Errors whose severity
    should alert are also handed to ``alert_callback``; a failing callback
    is logged and never masks the original error.

    Example:
        >>> alerts = AlertDispatcher(alert_callback=pager.send)
        >>> alerts.dispatch(RollbackFailureError("reversal failed", job_id=job.id))
    """

    def __init__(
        self,
        alert_callback: Callable[[MigrationError], None] | None = None,
        metrics_callback: Callable[[MigrationError], None] | None = None,
    ) -> None:
        self.alert_callback = alert_callback
        self.metrics_callback = metrics_callback

    def dispatch(self, error: MigrationError, *, force_alert: bool = False) -> None:
        classification = error.classification
        logger.log(
            classification.severity.log_level,
            "%s [code=%s, severity=%s]: %s",
            type(error).__name__,
            classification.error_code,
            classification.severity.value,
            error,
            extra={"job_id": str(error.job_id) if error.job_id else None},
        )

        if (force_alert or classification.severity.should_alert) and self.alert_callback:
            try:
                self.alert_callback(error)
            except Exception:
                logger.exception("Alert callback failed")

        if self.metrics_callback:
            try:
                self.metrics_callback(error)
            except Exception:
                logger.exception("Metrics callback failed")


def classify_exception(exc: BaseException) -> ErrorClassification:
    """
    Return the classification for any exception.

    Non-docmigrate exceptions are classified as fatal unknown errors.
    """
    if isinstance(exc, MigrationError):
        return exc.classification
    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="An unexpected error occurred. Review logs for the traceback.",
    )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "TRANSIENT_RETRY_CONFIG",
    "QUOTA_RETRY_CONFIG",
    "MigrationError",
    "ValidationError",
    "InvalidConfigError",
    "TransientStoreError",
    "QuotaExceededError",
    "WriteConflictError",
    "TransformError",
    "IllegalStateTransitionError",
    "ThresholdExceededError",
    "RollbackFailureError",
    "InvalidRollbackTargetError",
    "CheckpointError",
    "JobNotFoundError",
    "AlertDispatcher",
    "classify_exception",
]
