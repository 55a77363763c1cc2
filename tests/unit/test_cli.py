"""
Unit tests for the docmigrate command line.

Each command runs its own event loop through main(), so these tests are
synchronous and share state through a SQLite file.
"""

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from docmigrate.cli import ExitCode, build_parser, exit_code_for, main
from docmigrate.models import HealthReport, HealthStatus, JobStatus, MigrationJob
from docmigrate.stores import SQLiteDocumentStore
from tests.fixtures import seed_users, snapshot_bodies


def _seed(path: Path, count: int) -> dict[str, Any]:
    async def run() -> dict[str, Any]:
        store = SQLiteDocumentStore(str(path), enable_tracing=False)
        await store.initialize()
        try:
            await seed_users(store, count)
            return await snapshot_bodies(store)
        finally:
            await store.close()

    return asyncio.run(run())


def _bodies(path: Path) -> dict[str, Any]:
    async def run() -> dict[str, Any]:
        store = SQLiteDocumentStore(str(path), enable_tracing=False)
        await store.initialize()
        try:
            return await snapshot_bodies(store)
        finally:
            await store.close()

    return asyncio.run(run())


def _write_config(tmp_path: Path, **overrides: Any) -> Path:
    document: dict[str, Any] = {
        "store": {"type": "sqlite", "path": str(tmp_path / "app.db")},
        "collection": "users",
        "transform": "tests.fixtures:make_rename_transform",
        "job": {
            "batch_size": 5,
            "concurrency_limit": 2,
            "retry_base_delay_ms": 1,
            "retry_max_delay_ms": 5,
            "health_interval_seconds": 3600,
            "grace_period_seconds": 0,
            "take_backup_snapshot": False,
            "control_poll_interval_seconds": 0.01,
        },
    }
    document.update(overrides)
    path = tmp_path / "migration.json"
    path.write_text(json.dumps(document), encoding="utf-8")
    return path


def _job(status: JobStatus) -> MigrationJob:
    return MigrationJob(
        collection="users", source_shape_version="1", target_shape_version="2", status=status
    )


def _health(status: HealthStatus) -> HealthReport:
    return HealthReport(
        error_rate=0.0,
        p95_latency_ms=1.0,
        p99_latency_ms=1.0,
        throughput_per_sec=100.0,
        memory_used_mb=1.0,
        status=status,
    )


class TestExitCodes:
    """Tests for exit_code_for."""

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (JobStatus.COMPLETED, ExitCode.OK),
            (JobStatus.RUNNING, ExitCode.OK),
            (JobStatus.PAUSED_DEGRADED, ExitCode.DEGRADED),
            (JobStatus.ROLLED_BACK, ExitCode.ROLLED_BACK),
            (JobStatus.ROLLBACK_FAILED, ExitCode.ROLLBACK_FAILED),
        ],
    )
    def test_status_mapping(self, status: JobStatus, expected: ExitCode) -> None:
        assert exit_code_for(_job(status)) == expected

    def test_unhealthy_report_degrades_live_jobs_only(self) -> None:
        critical = _health(HealthStatus.CRITICAL)
        assert exit_code_for(_job(JobStatus.RUNNING), critical) == ExitCode.DEGRADED
        assert exit_code_for(_job(JobStatus.COMPLETED), critical) == ExitCode.OK


class TestParser:
    def test_rollback_arguments(self) -> None:
        args = build_parser().parse_args(
            [
                "rollback",
                "--config",
                "m.json",
                "--job",
                "7f3c2f3e-0000-4000-8000-000000000000",
                "--strategy",
                "partial",
                "--checkpoint",
                "12",
            ]
        )
        assert args.strategy == "partial"
        assert args.checkpoint == 12
        assert str(args.job) == "7f3c2f3e-0000-4000-8000-000000000000"

    def test_unknown_strategy_is_rejected(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(
                ["rollback", "--config", "m.json", "--job", "x", "--strategy", "undo"]
            )

    def test_command_is_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:
    """End-to-end runs of main() against a SQLite file."""

    def test_start_list_status_and_rollback(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        original = _seed(tmp_path / "app.db", 20)
        config = str(_write_config(tmp_path))

        assert main(["start", "--config", config]) == ExitCode.OK
        report = json.loads(capsys.readouterr().out)
        assert report["status"] == "completed"
        assert report["checkpoint_count"] == 4
        job_id = report["job_id"]

        assert main(["list", "--config", config]) == ExitCode.OK
        jobs = json.loads(capsys.readouterr().out)
        assert [job["id"] for job in jobs] == [job_id]

        assert main(["status", "--config", config]) == ExitCode.OK
        assert json.loads(capsys.readouterr().out)["job_id"] == job_id

        code = main(
            ["rollback", "--config", config, "--job", job_id, "--strategy", "complete"]
        )
        plan = json.loads(capsys.readouterr().out)
        assert code == ExitCode.ROLLED_BACK
        assert plan["outcome"] == "succeeded"
        assert plan["documents_reverted"] == 20
        assert _bodies(tmp_path / "app.db") == original

    def test_pause_of_finished_job_fails(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        _seed(tmp_path / "app.db", 5)
        config = str(_write_config(tmp_path))
        assert main(["start", "--config", config]) == ExitCode.OK
        job_id = json.loads(capsys.readouterr().out)["job_id"]

        assert main(["pause", "--config", config, "--job", job_id]) == ExitCode.VALIDATION_FAILED
        assert "error:" in capsys.readouterr().err

    def test_validation_failure(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test that failed readiness checks exit 1 and print every check."""
        _seed(tmp_path / "app.db", 5)
        config = str(_write_config(tmp_path, required_env=["DOCMIGRATE_CLI_NEVER_SET"]))

        assert main(["start", "--config", config]) == ExitCode.VALIDATION_FAILED

        captured = capsys.readouterr()
        result = json.loads(captured.out)
        assert result["passed"] is False
        assert "Readiness validation failed" in captured.err

    def test_status_without_jobs(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        config = str(_write_config(tmp_path))
        assert main(["status", "--config", config]) == ExitCode.VALIDATION_FAILED
        assert "No job recorded" in capsys.readouterr().err

    def test_missing_config_file(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        code = main(["list", "--config", str(tmp_path / "absent.json")])
        assert code == ExitCode.VALIDATION_FAILED
        assert "Cannot read config file" in capsys.readouterr().err
