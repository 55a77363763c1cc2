"""
Operational command line for docmigrate.

Commands:
    start     Validate and run a migration in the foreground
    status    Print a job's status and latest health report as JSON
    pause     Pause a running job at its next batch boundary
    resume    Resume a manually paused job
    abort     Stop a job and roll back everything it touched
    rollback  Operator rollback (partial, complete or backupRestore)
    list      List every job recorded in the store

The process exit code summarises the outcome (see ExitCode).

Example:
    $ docmigrate start --config users_v2.json
    $ docmigrate status --config users_v2.json
    $ docmigrate rollback --config users_v2.json --job 7f3c... --strategy partial --checkpoint 12
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import sys
from collections.abc import Sequence
from enum import IntEnum
from typing import Any
from uuid import UUID

from docmigrate.exceptions import (
    IllegalStateTransitionError,
    MigrationError,
    ValidationError,
)
from docmigrate.models import (
    HealthReport,
    HealthStatus,
    JobStatus,
    MigrationJob,
    RollbackStrategy,
)
from docmigrate.orchestrator import MigrationOrchestrator
from docmigrate.settings import MigrationSettings, build_store, load_settings

logger = logging.getLogger(__name__)

LOG_LEVEL_ENV = "DOCMIGRATE_LOG_LEVEL"


class ExitCode(IntEnum):
    OK = 0
    VALIDATION_FAILED = 1
    DEGRADED = 2
    ROLLED_BACK = 3
    ROLLBACK_FAILED = 4


def exit_code_for(job: MigrationJob, health: HealthReport | None = None) -> ExitCode:
    """Map a job's status and latest health to the process exit code."""
    if job.status == JobStatus.ROLLBACK_FAILED:
        return ExitCode.ROLLBACK_FAILED
    if job.status == JobStatus.ROLLED_BACK:
        return ExitCode.ROLLED_BACK
    if job.status == JobStatus.PAUSED_DEGRADED:
        return ExitCode.DEGRADED
    if (
        not job.status.is_terminal
        and health is not None
        and health.status != HealthStatus.HEALTHY
    ):
        return ExitCode.DEGRADED
    return ExitCode.OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docmigrate",
        description="Live document-store schema migrations with checkpoints and rollback.",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get(LOG_LEVEL_ENV, "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help=f"Logging level (default: ${LOG_LEVEL_ENV} or INFO)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    def add_command(name: str, help_text: str, *, job_required: bool) -> argparse.ArgumentParser:
        command = commands.add_parser(name, help=help_text)
        command.add_argument("--config", required=True, help="Path to the JSON migration config")
        if job_required:
            command.add_argument("--job", required=True, type=UUID, help="Job id")
        return command

    start = add_command("start", "Validate and run a migration", job_required=False)
    start.add_argument("--resume", type=UUID, metavar="JOB_ID", help="Recover an interrupted job")

    status = add_command("status", "Show job status", job_required=False)
    status.add_argument("--job", type=UUID, help="Job id (default: latest job for the collection)")

    add_command("pause", "Pause a running job", job_required=True)
    add_command("resume", "Resume a paused job", job_required=True)
    abort = add_command("abort", "Abort and roll back a job", job_required=True)
    abort.add_argument("--reason", help="Reason recorded on the rollback plan")

    rollback = add_command("rollback", "Roll a job back", job_required=True)
    rollback.add_argument(
        "--strategy",
        required=True,
        choices=[strategy.value for strategy in RollbackStrategy],
    )
    rollback.add_argument("--checkpoint", type=int, help="Target checkpoint for partial rollback")

    add_command("list", "List jobs", job_required=False)
    return parser


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _latest_job_id(orchestrator: MigrationOrchestrator, collection: str) -> UUID:
    jobs = [job for job in await orchestrator.list_jobs() if job.collection == collection]
    if not jobs:
        raise MigrationError(f"No job recorded for collection {collection!r}")
    return jobs[-1].id


async def _run_start(
    orchestrator: MigrationOrchestrator,
    settings: MigrationSettings,
    resume: UUID | None,
) -> ExitCode:
    if resume is not None:
        job = await orchestrator.recover(resume, settings.transform)
    else:
        job = await orchestrator.start(
            settings.collection,
            settings.transform,
            settings.to_config(),
            dependencies=settings.to_dependencies(),
            required_env=settings.required_env,
            created_by=os.environ.get("USER"),
        )
    print(f"Job {job.id} started on {job.collection}", file=sys.stderr)

    interrupted = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signum, interrupted.set)

    finished = asyncio.create_task(orchestrator.wait(job.id))
    interrupt = asyncio.create_task(interrupted.wait())
    try:
        await asyncio.wait({finished, interrupt}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        interrupt.cancel()
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(signum)

    if not finished.done():
        logger.warning("Interrupted; pausing job %s at the next batch boundary", job.id)
        try:
            await orchestrator.pause(job.id)
        except IllegalStateTransitionError as e:
            logger.warning("Could not pause job %s: %s", job.id, e)
        await orchestrator.close()
        finished.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await finished
        print(
            f"Job {job.id} paused; continue with 'docmigrate start --resume {job.id}'",
            file=sys.stderr,
        )

    report = await orchestrator.status(job.id)
    _print_json(report.to_dict())
    return exit_code_for(report.job, report.health)


async def _run_command(args: argparse.Namespace) -> ExitCode:
    settings = load_settings(args.config)
    store = await build_store(settings.store)
    orchestrator = MigrationOrchestrator(store, thresholds=settings.to_thresholds())
    try:
        if args.command == "start":
            return await _run_start(orchestrator, settings, args.resume)

        if args.command == "list":
            _print_json([job.to_dict() for job in await orchestrator.list_jobs()])
            return ExitCode.OK

        if args.command == "status":
            job_id = args.job or await _latest_job_id(orchestrator, settings.collection)
            report = await orchestrator.status(job_id)
            _print_json(report.to_dict())
            return exit_code_for(report.job, report.health)

        if args.command == "pause":
            await orchestrator.pause(args.job)
            print(f"Pause requested for job {args.job}", file=sys.stderr)
            return ExitCode.OK

        if args.command == "resume":
            await orchestrator.resume(args.job)
            print(f"Resume requested for job {args.job}", file=sys.stderr)
            return ExitCode.OK

        if args.command == "abort":
            plan = await orchestrator.abort(args.job, args.reason)
            if plan is None:
                print(f"Abort requested for job {args.job}", file=sys.stderr)
                return ExitCode.OK
            _print_json(plan.to_dict())
            job = (await orchestrator.status(args.job)).job
            return exit_code_for(job)

        if args.command == "rollback":
            plan = await orchestrator.rollback(
                args.job,
                RollbackStrategy(args.strategy),
                args.checkpoint,
                transform=settings.transform,
            )
            _print_json(plan.to_dict())
            job = (await orchestrator.status(args.job)).job
            return exit_code_for(job)

        raise AssertionError(f"Unhandled command {args.command!r}")
    finally:
        await orchestrator.close()
        await store.close()


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return int(asyncio.run(_run_command(args)))
    except ValidationError as e:
        print(f"error: {e}", file=sys.stderr)
        if e.result is not None:
            _print_json(e.result.to_dict())
        return int(ExitCode.VALIDATION_FAILED)
    except MigrationError as e:
        print(f"error: {e}", file=sys.stderr)
        return int(ExitCode.VALIDATION_FAILED)


if __name__ == "__main__":
    sys.exit(main())
