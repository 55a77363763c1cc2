"""
Unit tests for docmigrate.models.

Tests cover:
- JobStatus properties and the transition table
- MigrationConfig validation and the effective operation ceiling
- KeyRange containment and PartitionCursor advancing
- Serialization of Checkpoint, RollbackPlan and MigrationJob
- Derived job progress values
"""

from datetime import UTC, datetime
from uuid import uuid4

import pytest

from docmigrate.exceptions import InvalidConfigError, ValidationError
from docmigrate.models import (
    VALID_TRANSITIONS,
    AlertThresholds,
    BatchResult,
    BatchStatus,
    Checkpoint,
    CheckResult,
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
)


class TestJobStatus:
    """Tests for the job state machine."""

    def test_terminal_states(self) -> None:
        """Test that only completed, rolledBack and rollbackFailed are terminal."""
        terminal = {status for status in JobStatus if status.is_terminal}
        assert terminal == {
            JobStatus.COMPLETED,
            JobStatus.ROLLED_BACK,
            JobStatus.ROLLBACK_FAILED,
        }

    def test_wire_values(self) -> None:
        """Test that status values use the camelCase wire names."""
        assert JobStatus.PAUSED_MANUAL.value == "pausedManual"
        assert JobStatus.PAUSED_DEGRADED.value == "pausedDegraded"
        assert JobStatus.ROLLING_BACK.value == "rollingBack"
        assert JobStatus.ROLLBACK_FAILED.value == "rollbackFailed"

    def test_every_status_has_transition_entry(self) -> None:
        """Test that the transition table covers every status."""
        assert set(VALID_TRANSITIONS) == set(JobStatus)

    def test_rolled_back_has_no_exits(self) -> None:
        """Test that rolledBack is final."""
        for target in JobStatus:
            assert not JobStatus.ROLLED_BACK.can_transition_to(target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (JobStatus.PENDING, JobStatus.VALIDATING),
            (JobStatus.VALIDATING, JobStatus.RUNNING),
            (JobStatus.RUNNING, JobStatus.PAUSED_MANUAL),
            (JobStatus.RUNNING, JobStatus.PAUSED_DEGRADED),
            (JobStatus.PAUSED_MANUAL, JobStatus.RUNNING),
            (JobStatus.PAUSED_DEGRADED, JobStatus.RUNNING),
            (JobStatus.RUNNING, JobStatus.COMPLETING),
            (JobStatus.COMPLETING, JobStatus.COMPLETED),
            (JobStatus.COMPLETED, JobStatus.ROLLING_BACK),
            (JobStatus.ROLLBACK_FAILED, JobStatus.ROLLING_BACK),
            (JobStatus.ROLLING_BACK, JobStatus.ROLLED_BACK),
            (JobStatus.ROLLING_BACK, JobStatus.ROLLBACK_FAILED),
        ],
    )
    def test_legal_transitions(self, current: JobStatus, target: JobStatus) -> None:
        """Test that documented transitions are legal."""
        assert current.can_transition_to(target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (JobStatus.PENDING, JobStatus.RUNNING),
            (JobStatus.PAUSED_MANUAL, JobStatus.PAUSED_DEGRADED),
            (JobStatus.COMPLETED, JobStatus.RUNNING),
            (JobStatus.VALIDATING, JobStatus.COMPLETED),
            (JobStatus.RUNNING, JobStatus.COMPLETED),
        ],
    )
    def test_illegal_transitions(self, current: JobStatus, target: JobStatus) -> None:
        """Test that undocumented transitions are rejected."""
        assert not current.can_transition_to(target)

    def test_automatic_rollback_states(self) -> None:
        """Test which states allow health-triggered rollback."""
        allowed = {status for status in JobStatus if status.allows_automatic_rollback}
        assert allowed == {JobStatus.VALIDATING, JobStatus.RUNNING, JobStatus.PAUSED_DEGRADED}


class TestMigrationConfig:
    """Tests for MigrationConfig validation."""

    def test_defaults(self) -> None:
        """Test default tuning values."""
        config = MigrationConfig()
        assert config.batch_size == 200
        assert config.concurrency_limit == 4
        assert config.failure_threshold == 0.01
        assert config.quota_safety_factor == 1.0

    @pytest.mark.parametrize(
        ("field_name", "value"),
        [
            ("batch_size", 0),
            ("batch_size", 501),
            ("concurrency_limit", 0),
            ("concurrency_limit", 65),
            ("failure_threshold", 0.0),
            ("failure_threshold", 1.5),
            ("max_retries", -1),
            ("max_retries", 21),
            ("batch_timeout_seconds", 0),
            ("operation_ceiling", 2),
            ("quota_safety_factor", 0.0),
            ("health_window", 0),
            ("critical_reports_to_abort", 0),
            ("grace_period_seconds", -1),
            ("min_documents_for_threshold", 0),
        ],
    )
    def test_out_of_range_values_raise(self, field_name: str, value: object) -> None:
        """Test that out-of-range values raise InvalidConfigError naming the field."""
        with pytest.raises(InvalidConfigError) as exc_info:
            MigrationConfig(**{field_name: value})
        assert exc_info.value.field_name == field_name

    def test_invalid_config_is_a_validation_and_value_error(self) -> None:
        """Test the InvalidConfigError hierarchy."""
        with pytest.raises(ValidationError):
            MigrationConfig(batch_size=0)
        with pytest.raises(ValueError):
            MigrationConfig(batch_size=0)

    def test_effective_ceiling_uses_store_ceiling(self) -> None:
        """Test that the store ceiling applies when no override is set."""
        assert MigrationConfig().effective_operation_ceiling(500) == 500

    def test_effective_ceiling_override_only_tightens(self) -> None:
        """Test that a configured ceiling above the store's is ignored."""
        assert MigrationConfig(operation_ceiling=300).effective_operation_ceiling(500) == 300
        assert MigrationConfig(operation_ceiling=900).effective_operation_ceiling(500) == 500

    def test_effective_ceiling_applies_safety_factor(self) -> None:
        """Test that the safety factor scales the ceiling down."""
        config = MigrationConfig(batch_size=100, quota_safety_factor=0.8)
        assert config.effective_operation_ceiling(500) == 400

    def test_dict_round_trip_ignores_unknown_keys(self) -> None:
        """Test that from_dict accepts to_dict output plus unknown keys."""
        config = MigrationConfig(batch_size=50, concurrency_limit=2)
        data = config.to_dict()
        data["retired_option"] = True
        assert MigrationConfig.from_dict(data) == config


class TestKeyRange:
    """Tests for KeyRange and PartitionCursor."""

    def test_half_open_bounds(self) -> None:
        """Test that start is inclusive and end exclusive."""
        key_range = KeyRange(index=1, start_key="b", end_key="d")
        assert key_range.contains("b")
        assert key_range.contains("c")
        assert not key_range.contains("d")
        assert not key_range.contains("a")

    def test_unbounded_range_contains_everything(self) -> None:
        """Test that a range without bounds contains every key."""
        assert KeyRange(index=0).contains("anything")

    def test_cursor_advance(self) -> None:
        """Test that advancing keeps the partition and moves the key."""
        cursor = PartitionCursor(KeyRange(index=0))
        moved = cursor.advance("k5")
        assert moved.after_key == "k5"
        assert moved.partition == cursor.partition
        assert moved.advance(None) is moved


class TestCheckpoint:
    """Tests for Checkpoint serialization."""

    def test_round_trip(self) -> None:
        """Test that to_dict/from_dict preserve every field."""
        checkpoint = Checkpoint(
            job_id=uuid4(),
            sequence_number=7,
            partition=2,
            first_key="a",
            last_processed_key="k",
            documents_migrated=198,
            documents_failed=2,
            failed_keys=("c", "e"),
            batch_duration_ms=12.5,
        )
        assert Checkpoint.from_dict(checkpoint.to_dict()) == checkpoint


class TestBatchResult:
    def test_documents_processed(self) -> None:
        """Test that processed counts migrated and failed documents."""
        result = BatchResult(
            status=BatchStatus.COMMITTED,
            cursor=PartitionCursor(KeyRange(index=0)),
            documents_migrated=198,
            documents_failed=2,
        )
        assert result.documents_processed == 200
        assert not result.is_exhausted_partition

    def test_empty_means_exhausted_partition(self) -> None:
        result = BatchResult(status=BatchStatus.EMPTY, cursor=PartitionCursor(KeyRange(index=0)))
        assert result.is_exhausted_partition


class TestRollbackPlan:
    """Tests for RollbackPlan."""

    def test_pending_plan_is_not_finished(self) -> None:
        """Test that a new plan is pending."""
        plan = RollbackPlan(job_id=uuid4(), strategy=RollbackStrategy.PARTIAL, target_checkpoint=3)
        assert plan.outcome == RollbackOutcome.PENDING
        assert not plan.is_finished

    def test_round_trip(self) -> None:
        """Test serialization of an executed plan."""
        plan = RollbackPlan(
            job_id=uuid4(),
            strategy=RollbackStrategy.BACKUP_RESTORE,
            target_checkpoint=0,
            outcome=RollbackOutcome.SUCCEEDED,
            executed_at=datetime.now(UTC),
            documents_reverted=40,
            reason="operator request",
        )
        restored = RollbackPlan.from_dict(plan.to_dict())
        assert restored == plan
        assert restored.to_dict()["strategy"] == "backupRestore"


class TestAlertThresholds:
    def test_critical_below_warning_rejected(self) -> None:
        """Test that inverted latency limits are rejected."""
        with pytest.raises(InvalidConfigError):
            AlertThresholds(latency_warning_ms=2000, latency_critical_ms=1000)

    def test_throughput_floors_must_be_ordered(self) -> None:
        """Test that the critical throughput floor may not exceed the warning floor."""
        with pytest.raises(InvalidConfigError):
            AlertThresholds(throughput_warning_per_sec=5, throughput_critical_per_sec=10)


class TestHealthCheckResult:
    def test_failures_lists_failed_checks(self) -> None:
        """Test that passed is False when any check failed."""
        result = HealthCheckResult(
            job_id=uuid4(),
            checks=(
                CheckResult(name="connectivity", passed=True),
                CheckResult(name="index:users.by_email", passed=False, message="missing"),
            ),
        )
        assert not result.passed
        assert [check.name for check in result.failures] == ["index:users.by_email"]
        assert result.to_dict()["passed"] is False


class TestMigrationJob:
    """Tests for MigrationJob."""

    def _job(self) -> MigrationJob:
        return MigrationJob(collection="users", source_shape_version="1", target_shape_version="2")

    def test_failure_ratio_without_progress(self) -> None:
        """Test that an idle job has a zero failure ratio."""
        assert self._job().failure_ratio == 0.0

    def test_failure_ratio(self) -> None:
        job = self._job()
        job.documents_migrated = 990
        job.documents_failed = 10
        assert job.failure_ratio == pytest.approx(0.01)

    def test_threshold_sample_size(self) -> None:
        """Test that the sample covers half the collection and at least one round of batches."""
        job = self._job()
        assert job.threshold_sample_size == 800
        job.documents_total = 10_000
        assert job.threshold_sample_size == 5000

        configured = MigrationJob(
            collection="users",
            source_shape_version="1",
            target_shape_version="2",
            config=MigrationConfig(min_documents_for_threshold=300),
            documents_total=10_000,
        )
        assert configured.threshold_sample_size == 300

    def test_early_failure_cluster_does_not_trip(self) -> None:
        """Test that 3 failures in the first batch of 10,000 documents are tolerated."""
        job = self._job()
        job.documents_total = 10_000
        job.documents_migrated = 197
        job.documents_failed = 3

        assert job.failure_ratio == pytest.approx(0.015)
        assert not job.exceeds_failure_threshold()

    def test_failures_beyond_whole_collection_budget_trip_early(self) -> None:
        job = self._job()
        job.documents_total = 10_000
        job.documents_migrated = 99
        job.documents_failed = 101
        assert job.exceeds_failure_threshold()

    def test_running_ratio_counts_after_sample(self) -> None:
        job = self._job()
        job.documents_total = 10_000
        job.documents_migrated = 4940
        job.documents_failed = 60
        assert job.exceeds_failure_threshold()

        job.documents_failed = 40
        job.documents_migrated = 4960
        assert not job.exceeds_failure_threshold()

    def test_unknown_collection_size_waits_for_sample(self) -> None:
        job = self._job()
        job.documents_migrated = 100
        job.documents_failed = 100
        assert not job.exceeds_failure_threshold()

        job.documents_migrated = 700
        assert job.exceeds_failure_threshold()

    def test_progress_percent(self) -> None:
        """Test progress against the partition estimate."""
        job = self._job()
        job.documents_total = 1000
        job.documents_migrated = 250
        assert job.progress_percent == 25.0

    def test_progress_of_empty_completed_job(self) -> None:
        """Test that an empty collection reports 100% once completed."""
        job = self._job()
        assert job.progress_percent == 0.0
        job.status = JobStatus.COMPLETED
        assert job.progress_percent == 100.0

    def test_round_trip(self) -> None:
        """Test that a job survives persistence with partitions and health."""
        job = self._job()
        job.status = JobStatus.PAUSED_DEGRADED
        job.partitions = [KeyRange(0, None, "m", 10), KeyRange(1, "m", None, 9)]
        job.last_health = HealthReport(
            error_rate=0.02,
            p95_latency_ms=120.0,
            p99_latency_ms=300.0,
            throughput_per_sec=55.0,
            memory_used_mb=80.0,
            status=HealthStatus.DEGRADED,
            reasons=("error rate high",),
        )
        restored = MigrationJob.from_dict(job.to_dict())
        assert restored.id == job.id
        assert restored.status == JobStatus.PAUSED_DEGRADED
        assert restored.partitions == job.partitions
        assert restored.last_health == job.last_health
        assert restored.config == job.config

    def test_status_report(self) -> None:
        """Test the operator-facing status summary."""
        job = self._job()
        job.documents_total = 10
        job.documents_migrated = 5
        report = JobStatusReport(job=job, health=None, checkpoint_count=3)
        data = report.to_dict()
        assert data["status"] == "pending"
        assert data["progress_percent"] == 50.0
        assert data["checkpoint_count"] == 3
        assert data["health"] is None
