"""
Unit tests for docmigrate.exceptions.

Tests cover:
- Error classification (severity, recoverability, codes)
- RetryConfig validation and delay calculation
- Exception attributes and string formatting
- AlertDispatcher routing
- classify_exception for foreign exceptions
"""

import logging
from unittest.mock import Mock
from uuid import uuid4

import pytest

from docmigrate.exceptions import (
    AlertDispatcher,
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
    classify_exception,
)
from docmigrate.models import CheckResult, HealthCheckResult, JobStatus


class TestErrorSeverity:
    def test_should_alert(self) -> None:
        """Test that only CRITICAL and ERROR alert."""
        assert ErrorSeverity.CRITICAL.should_alert
        assert ErrorSeverity.ERROR.should_alert
        assert not ErrorSeverity.WARNING.should_alert
        assert not ErrorSeverity.INFO.should_alert

    def test_log_level(self) -> None:
        assert ErrorSeverity.CRITICAL.log_level == logging.CRITICAL
        assert ErrorSeverity.WARNING.log_level == logging.WARNING


class TestRetryConfig:
    """Tests for RetryConfig."""

    def test_invalid_values_raise(self) -> None:
        """Test that nonsensical retry settings are rejected."""
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)
        with pytest.raises(ValueError):
            RetryConfig(base_delay_ms=100, max_delay_ms=50)
        with pytest.raises(ValueError):
            RetryConfig(jitter_factor=1.5)

    def test_delay_grows_exponentially(self) -> None:
        """Test the backoff curve without jitter."""
        config = RetryConfig(base_delay_ms=100, max_delay_ms=10_000, jitter_factor=0.0)
        assert config.get_delay_ms(0) == 100
        assert config.get_delay_ms(1) == 200
        assert config.get_delay_ms(3) == 800

    def test_delay_is_capped(self) -> None:
        config = RetryConfig(base_delay_ms=100, max_delay_ms=500, jitter_factor=0.0)
        assert config.get_delay_ms(10) == 500

    def test_jitter_stays_within_factor(self) -> None:
        """Test that jitter never adds more than jitter_factor of the delay."""
        config = RetryConfig(base_delay_ms=100, max_delay_ms=10_000, jitter_factor=0.1)
        for _ in range(50):
            assert 100 <= config.get_delay_ms(0) <= 110


class TestClassification:
    """Tests for per-exception classification."""

    def test_transient_errors_are_retryable(self) -> None:
        """Test that store errors are retried."""
        assert TransientStoreError("timeout").is_retryable
        assert QuotaExceededError("too many ops").is_retryable
        assert WriteConflictError("users", "u1", "version").is_retryable

    def test_quota_errors_back_off_longer(self) -> None:
        """Test the quota backoff multiplier."""
        assert QuotaExceededError("x").backoff_multiplier > TransientStoreError("x").backoff_multiplier

    def test_transform_error_is_recoverable(self) -> None:
        """Test that per-document failures are recoverable, not retryable."""
        error = TransformError("bad field", key="u1")
        assert error.recoverability == ErrorRecoverability.RECOVERABLE
        assert not error.is_retryable
        assert error.key == "u1"

    def test_rollback_failure_is_critical(self) -> None:
        """Test that rollback failures always alert."""
        error = RollbackFailureError("could not revert", job_id=uuid4())
        assert error.severity == ErrorSeverity.CRITICAL
        assert error.error_code == "ROLLBACK_FAILED"
        assert error.recoverability.should_abort

    def test_threshold_exceeded_message(self) -> None:
        error = ThresholdExceededError(uuid4(), 0.05, 0.01)
        assert error.failure_ratio == 0.05
        assert "0.0500" in str(error)
        assert error.severity == ErrorSeverity.ERROR


class TestExceptionFormatting:
    def test_str_includes_job_id(self) -> None:
        """Test that the job id is appended when present."""
        job_id = uuid4()
        assert str(MigrationError("boom", job_id=job_id)) == f"boom job_id={job_id}"
        assert str(MigrationError("boom")) == "boom"

    def test_illegal_transition_message(self) -> None:
        """Test messages for transitions and operations."""
        job_id = uuid4()
        transition = IllegalStateTransitionError(job_id, JobStatus.COMPLETED, JobStatus.RUNNING)
        assert "completed -> running" in str(transition)
        operation = IllegalStateTransitionError(job_id, JobStatus.RUNNING, operation="resume")
        assert "'resume'" in str(operation)

    def test_job_not_found(self) -> None:
        job_id = uuid4()
        error = JobNotFoundError(job_id)
        assert error.job_id == job_id
        assert error.error_code == "JOB_NOT_FOUND"

    def test_invalid_rollback_target(self) -> None:
        error = InvalidRollbackTargetError(uuid4(), 42)
        assert error.target_checkpoint == 42
        assert "42" in str(error)

    def test_validation_error_lists_failures(self) -> None:
        """Test that every failed readiness check is reported."""
        result = HealthCheckResult(
            job_id=uuid4(),
            checks=(
                CheckResult(name="env:DB_TOKEN", passed=False, message="not set"),
                CheckResult(name="connectivity", passed=True),
            ),
        )
        error = ValidationError("Readiness validation failed", result=result)
        assert error.failures == ["env:DB_TOKEN: not set"]
        assert error.to_dict()["failures"] == ["env:DB_TOKEN: not set"]

    def test_invalid_config_error_fields(self) -> None:
        error = InvalidConfigError("batch_size too large", field_name="batch_size")
        assert error.field_name == "batch_size"
        assert error.error_code == "INVALID_CONFIG"
        assert error.failures == ["batch_size too large"]

    def test_to_dict(self) -> None:
        job_id = uuid4()
        data = QuotaExceededError("quota", operation_count=600, limit=500, job_id=job_id).to_dict()
        assert data["job_id"] == str(job_id)
        assert data["error_code"] == "STORE_QUOTA_EXCEEDED"
        assert data["classification"]["recoverability"] == "transient"


class TestAlertDispatcher:
    """Tests for AlertDispatcher."""

    def test_alerts_on_error_severity(self) -> None:
        """Test that ERROR and CRITICAL errors reach the alert callback."""
        alert = Mock()
        dispatcher = AlertDispatcher(alert_callback=alert)
        error = RollbackFailureError("failed")
        dispatcher.dispatch(error)
        alert.assert_called_once_with(error)

    def test_warnings_do_not_alert(self) -> None:
        """Test that warnings are only logged."""
        alert = Mock()
        AlertDispatcher(alert_callback=alert).dispatch(TransientStoreError("timeout"))
        alert.assert_not_called()

    def test_force_alert(self) -> None:
        """Test that force_alert overrides the severity."""
        alert = Mock()
        AlertDispatcher(alert_callback=alert).dispatch(
            TransientStoreError("timeout"), force_alert=True
        )
        alert.assert_called_once()

    def test_metrics_callback_always_called(self) -> None:
        metrics = Mock()
        AlertDispatcher(metrics_callback=metrics).dispatch(TransformError("x"))
        metrics.assert_called_once()

    def test_failing_callback_is_contained(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that a broken alert hook never masks the original error."""
        dispatcher = AlertDispatcher(alert_callback=Mock(side_effect=RuntimeError("pager down")))
        with caplog.at_level(logging.ERROR):
            dispatcher.dispatch(RollbackFailureError("failed"))
        assert "Alert callback failed" in caplog.text

    def test_logs_at_severity_level(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.DEBUG, logger="docmigrate.exceptions"):
            AlertDispatcher().dispatch(RollbackFailureError("failed"))
        assert caplog.records[-1].levelno == logging.CRITICAL


class TestClassifyException:
    def test_migration_error(self) -> None:
        assert classify_exception(TransientStoreError("x")).error_code == "STORE_TRANSIENT"

    def test_foreign_exception(self) -> None:
        """Test that unknown exceptions are fatal."""
        classification = classify_exception(KeyError("x"))
        assert classification.error_code == "UNKNOWN_ERROR"
        assert classification.recoverability == ErrorRecoverability.FATAL
