"""
docmigrate - Live schema migrations for document stores.

This library provides:
- MigrationOrchestrator driving each job through its state machine
- Readiness validation of indexes, credentials and services before start
- Partitioned, checkpointed batch processing within transaction quotas
- A compatibility shim serving both shapes while the cutover runs
- Partial, complete and backup-restore rollback
- Health monitoring with automatic pause and emergency stop
- In-memory and SQLite document stores
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("docmigrate")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from docmigrate.batch_processor import BatchProcessor, SequenceAllocator, ensure_within_quota
from docmigrate.compat import CompatibilityShim, ShimStats, public_view
from docmigrate.exceptions import (
    AlertDispatcher,
    CheckpointError,
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    IllegalStateTransitionError,
    InvalidConfigError,
    InvalidRollbackTargetError,
    JobNotFoundError,
    MigrationError,
    QuotaExceededError,
    RetryConfig,
    RollbackFailureError,
    ThresholdExceededError,
    TransformError,
    TransientStoreError,
    ValidationError,
    WriteConflictError,
)
from docmigrate.metrics import MigrationMetrics, get_job_metrics
from docmigrate.models import (
    AlertThresholds,
    BatchResult,
    BatchStatus,
    Checkpoint,
    CheckResult,
    ControlAction,
    DependencyKind,
    HealthCheckResult,
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
from docmigrate.monitor import HealthMonitor
from docmigrate.orchestrator import EmergencyStopPolicy, MigrationOrchestrator
from docmigrate.partitioning import compute_partitions, split_key_space
from docmigrate.repositories import (
    BackupStore,
    CheckpointStore,
    DocumentCheckpointStore,
    DocumentJobRepository,
    JobRepository,
)
from docmigrate.rollback import RollbackManager
from docmigrate.stores import (
    Document,
    DocumentStore,
    InMemoryDocumentStore,
    SQLiteDocumentStore,
    WriteOperation,
)
from docmigrate.transforms import (
    CallableTransform,
    DocumentTransform,
    FieldMappingTransform,
    FieldOperation,
    OperationType,
    load_transform,
)
from docmigrate.validator import ReadinessValidator

__all__ = [
    "__version__",
    # Orchestration
    "MigrationOrchestrator",
    "EmergencyStopPolicy",
    "ReadinessValidator",
    "BatchProcessor",
    "SequenceAllocator",
    "ensure_within_quota",
    "CompatibilityShim",
    "ShimStats",
    "public_view",
    "RollbackManager",
    "HealthMonitor",
    "MigrationMetrics",
    "get_job_metrics",
    "split_key_space",
    "compute_partitions",
    # Models
    "AlertThresholds",
    "BatchResult",
    "BatchStatus",
    "Checkpoint",
    "CheckResult",
    "ControlAction",
    "DependencyKind",
    "HealthCheckResult",
    "HealthReport",
    "HealthStatus",
    "JobStatus",
    "JobStatusReport",
    "KeyRange",
    "MigrationConfig",
    "MigrationJob",
    "PartitionCursor",
    "RollbackOutcome",
    "RollbackPlan",
    "RollbackStrategy",
    "ServiceDependency",
    # Transforms
    "CallableTransform",
    "DocumentTransform",
    "FieldMappingTransform",
    "FieldOperation",
    "OperationType",
    "load_transform",
    # Stores and repositories
    "Document",
    "DocumentStore",
    "InMemoryDocumentStore",
    "SQLiteDocumentStore",
    "WriteOperation",
    "BackupStore",
    "CheckpointStore",
    "DocumentCheckpointStore",
    "DocumentJobRepository",
    "JobRepository",
    # Exceptions
    "AlertDispatcher",
    "CheckpointError",
    "ErrorClassification",
    "ErrorRecoverability",
    "ErrorSeverity",
    "IllegalStateTransitionError",
    "InvalidConfigError",
    "InvalidRollbackTargetError",
    "JobNotFoundError",
    "MigrationError",
    "QuotaExceededError",
    "RetryConfig",
    "RollbackFailureError",
    "ThresholdExceededError",
    "TransformError",
    "TransientStoreError",
    "ValidationError",
    "WriteConflictError",
]
