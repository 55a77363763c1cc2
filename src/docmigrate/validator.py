"""
Dependency and readiness validation.

Runs before any write of a job and decides whether ``validating ->
running`` may happen. Checks run in a fixed order:

1. Credential and environment variable presence
2. Connectivity probe to the document store
3. Each declared ServiceDependency (indexes, dependent service versions)
4. Capacity: batch size x sampled document size against the request quota

Every check runs even after an earlier one failed, so the operator gets a
complete readiness picture from a single attempt.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

from docmigrate.models import (
    CheckResult,
    DependencyKind,
    HealthCheckResult,
    MigrationJob,
    ServiceDependency,
)
from docmigrate.observability import ATTR_COLLECTION, ATTR_JOB_ID, Tracer, create_tracer
from docmigrate.stores.interface import DocumentStore, payload_size

logger = logging.getLogger(__name__)

ServiceProbe = Callable[[], Awaitable[str]]
CustomCheck = Callable[[MigrationJob], Awaitable[CheckResult]]

DOCUMENT_STORE_SERVICE = "document-store"


def parse_version(version: str) -> tuple[int, ...]:
    """Numeric components of a version string: ``"sqlite-3.45.1"`` -> ``(3, 45, 1)``."""
    return tuple(int(part) for part in re.findall(r"\d+", version))


class ReadinessValidator:
    """
    Validates that a job may start.

    Example:
        >>> validator = ReadinessValidator(store, service_probes={"search": probe})
        >>> result = await validator.validate(
        ...     job,
        ...     dependencies=[ServiceDependency(DependencyKind.INDEX, "by_email")],
        ...     required_env=["DB_TOKEN"],
        ... )
        >>> for failure in result.failures:
        ...     print(failure.name, failure.message)
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        environ: Mapping[str, str] | None = None,
        service_probes: Mapping[str, ServiceProbe] | None = None,
        custom_checks: Iterable[CustomCheck] = (),
        sample_size: int = 50,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._store = store
        self._environ = environ if environ is not None else os.environ
        self._probes: dict[str, ServiceProbe] = {DOCUMENT_STORE_SERVICE: store.server_version}
        self._probes.update(service_probes or {})
        self._custom_checks = list(custom_checks)
        self._sample_size = sample_size

        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    def register_probe(self, service: str, probe: ServiceProbe) -> None:
        self._probes[service] = probe

    async def validate(
        self,
        job: MigrationJob,
        dependencies: Iterable[ServiceDependency] = (),
        required_env: Iterable[str] = (),
        *,
        estimated_index_updates: int = 0,
    ) -> HealthCheckResult:
        """
        Run every readiness check for ``job``.

        Args:
            job: The job about to start
            dependencies: ServiceDependency manifest
            required_env: Environment variables that must be set
            estimated_index_updates: Index entries written per document

        Returns:
            HealthCheckResult listing each check with its verdict.
        """
        dependencies = list(dependencies)
        checks: list[CheckResult] = []

        with self._tracer.span(
            "docmigrate.validator.validate",
            {ATTR_JOB_ID: str(job.id), ATTR_COLLECTION: job.collection},
        ):
            checks.extend(self._check_environment(dependencies, required_env))
            checks.append(await self._check_connectivity())
            for dependency in dependencies:
                if dependency.kind == DependencyKind.INDEX:
                    checks.append(await self._check_index(job, dependency))
                elif dependency.kind == DependencyKind.SERVICE:
                    checks.append(await self._check_service(dependency))
            checks.append(await self._check_capacity(job, estimated_index_updates))
            for custom in self._custom_checks:
                checks.append(await self._run_custom(custom, job))

        result = HealthCheckResult(job_id=job.id, checks=tuple(checks))
        for failure in result.failures:
            logger.warning(
                "Readiness check %s failed for job %s: %s",
                failure.name,
                job.id,
                failure.message,
                extra={"job_id": str(job.id)},
            )
        logger.info(
            "Readiness validation for job %s: %d/%d checks passed",
            job.id,
            len(checks) - len(result.failures),
            len(checks),
            extra={"job_id": str(job.id)},
        )
        return result

    def _check_environment(
        self,
        dependencies: list[ServiceDependency],
        required_env: Iterable[str],
    ) -> list[CheckResult]:
        results = []
        for variable in required_env:
            present = bool(self._environ.get(variable))
            results.append(
                CheckResult(
                    name=f"env:{variable}",
                    passed=present,
                    message="" if present else f"Environment variable {variable} is not set",
                )
            )
        for dependency in dependencies:
            if dependency.kind != DependencyKind.CREDENTIAL:
                continue
            present = bool(self._environ.get(dependency.name))
            results.append(
                CheckResult(
                    name=f"credential:{dependency.name}",
                    passed=present,
                    message="" if present else f"Credential {dependency.name} is not available",
                    details={"scope": dependency.scope} if dependency.scope else {},
                )
            )
        if not results:
            results.append(CheckResult(name="environment", passed=True))
        return results

    async def _check_connectivity(self) -> CheckResult:
        try:
            latency_ms = await self._store.ping()
        except Exception as e:
            return CheckResult(
                name="connectivity",
                passed=False,
                message=f"Document store unreachable: {e}",
            )
        return CheckResult(
            name="connectivity",
            passed=True,
            details={"latency_ms": round(latency_ms, 3)},
        )

    async def _check_index(self, job: MigrationJob, dependency: ServiceDependency) -> CheckResult:
        collection = dependency.collection or job.collection
        name = f"index:{collection}.{dependency.name}"
        try:
            indexes = await self._store.list_indexes(collection)
        except Exception as e:
            return CheckResult(name=name, passed=False, message=f"Cannot list indexes: {e}")
        if dependency.name not in indexes:
            return CheckResult(
                name=name,
                passed=False,
                message=f"Index {dependency.name} does not exist on {collection}",
            )
        return CheckResult(name=name, passed=True)

    async def _check_service(self, dependency: ServiceDependency) -> CheckResult:
        name = f"service:{dependency.name}"
        probe = self._probes.get(dependency.name)
        if probe is None:
            return CheckResult(
                name=name,
                passed=False,
                message=f"No health probe registered for service {dependency.name}",
            )
        try:
            version = await probe()
        except Exception as e:
            return CheckResult(name=name, passed=False, message=f"Service probe failed: {e}")

        details: dict[str, Any] = {"version": version}
        if dependency.min_version is not None:
            details["min_version"] = dependency.min_version
            if parse_version(version) < parse_version(dependency.min_version):
                return CheckResult(
                    name=name,
                    passed=False,
                    message=(
                        f"{dependency.name} version {version} is older than "
                        f"required {dependency.min_version}"
                    ),
                    details=details,
                )
        return CheckResult(name=name, passed=True, details=details)

    async def _check_capacity(self, job: MigrationJob, estimated_index_updates: int) -> CheckResult:
        try:
            sample = await self._store.query(job.collection, limit=self._sample_size)
        except Exception as e:
            return CheckResult(name="capacity", passed=False, message=f"Cannot sample documents: {e}")

        if not sample:
            return CheckResult(name="capacity", passed=True, message="Collection is empty")

        average = sum(payload_size(document.data) for document in sample) / len(sample)
        estimated = job.config.batch_size * average
        limit = self._store.max_request_bytes
        details = {
            "average_document_bytes": round(average, 1),
            "estimated_batch_bytes": round(estimated),
            "max_request_bytes": limit,
            "estimated_index_updates": estimated_index_updates,
        }
        if estimated > limit:
            return CheckResult(
                name="capacity",
                passed=False,
                message=(
                    f"batch_size {job.config.batch_size} x ~{average:.0f} bytes per document "
                    f"exceeds the {limit} byte request quota"
                ),
                details=details,
            )
        return CheckResult(name="capacity", passed=True, details=details)

    async def _run_custom(self, check: CustomCheck, job: MigrationJob) -> CheckResult:
        name = getattr(check, "__name__", "custom")
        try:
            return await check(job)
        except Exception as e:
            return CheckResult(name=f"custom:{name}", passed=False, message=str(e))


__all__ = [
    "DOCUMENT_STORE_SERVICE",
    "ReadinessValidator",
    "parse_version",
]
