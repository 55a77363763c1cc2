"""
Configuration file and environment loading for the CLI.

A migration is described by one JSON file:

    {
        "store": {"type": "sqlite", "path": "app.db"},
        "collection": "users",
        "transform": {"operations": [...]} | "mypkg.transforms:users_v2",
        "job": {"batch_size": 200, "concurrency_limit": 4},
        "dependencies": [{"kind": "index", "name": "by_email"}],
        "required_env": ["APP_DB_TOKEN"],
        "thresholds": {"latency_warning_ms": 800}
    }

The ``MIGRATION_*`` environment variables override the matching ``job``
values, so operators can retune a run without editing the file.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from docmigrate.exceptions import InvalidConfigError
from docmigrate.models import AlertThresholds, DependencyKind, MigrationConfig, ServiceDependency
from docmigrate.stores import (
    DEFAULT_MAX_OPERATIONS_PER_TRANSACTION,
    DEFAULT_MAX_REQUEST_BYTES,
    DocumentStore,
    InMemoryDocumentStore,
    SQLiteDocumentStore,
)

logger = logging.getLogger(__name__)

ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "MIGRATION_BATCH_SIZE": ("batch_size", int),
    "MIGRATION_CONCURRENCY_LIMIT": ("concurrency_limit", int),
    "MIGRATION_FAILURE_THRESHOLD": ("failure_threshold", float),
    "MIGRATION_MAX_RETRIES": ("max_retries", int),
    "MIGRATION_RETRY_DELAY": ("retry_base_delay_ms", float),
    "MIGRATION_QUOTA_SAFETY": ("quota_safety_factor", float),
    "MIGRATION_HEALTH_INTERVAL": ("health_interval_seconds", float),
}


class StoreSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["memory", "sqlite"] = "sqlite"
    path: str = "docmigrate.db"
    max_operations_per_transaction: int = Field(
        default=DEFAULT_MAX_OPERATIONS_PER_TRANSACTION, ge=1
    )
    max_request_bytes: int = Field(default=DEFAULT_MAX_REQUEST_BYTES, ge=1)


class DependencySettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: DependencyKind
    name: str = Field(min_length=1)
    collection: str | None = None
    min_version: str | None = None
    scope: str | None = None

    def to_dependency(self) -> ServiceDependency:
        return ServiceDependency(
            kind=self.kind,
            name=self.name,
            collection=self.collection,
            min_version=self.min_version,
            scope=self.scope,
        )


class JobSettings(BaseModel):
    """Mirrors MigrationConfig; range checks stay in MigrationConfig itself."""

    model_config = ConfigDict(extra="forbid")

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


class ThresholdSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    latency_warning_ms: float = 1000.0
    latency_critical_ms: float = 3000.0
    error_rate_warning: float = 0.01
    error_rate_critical: float = 0.05
    memory_warning_mb: float = 512.0
    memory_critical_mb: float = 1024.0
    throughput_warning_per_sec: float = 10.0
    throughput_critical_per_sec: float = 5.0


class MigrationSettings(BaseModel):
    """The whole ``--config`` file."""

    model_config = ConfigDict(extra="forbid")

    store: StoreSettings = Field(default_factory=StoreSettings)
    collection: str = Field(min_length=1)
    transform: str | dict[str, Any]
    job: JobSettings = Field(default_factory=JobSettings)
    dependencies: list[DependencySettings] = Field(default_factory=list)
    required_env: list[str] = Field(default_factory=list)
    thresholds: ThresholdSettings = Field(default_factory=ThresholdSettings)

    def to_config(self) -> MigrationConfig:
        """Build the validated MigrationConfig; raises InvalidConfigError when out of range."""
        return MigrationConfig.from_dict(self.job.model_dump())

    def to_thresholds(self) -> AlertThresholds:
        return AlertThresholds(**self.thresholds.model_dump())

    def to_dependencies(self) -> list[ServiceDependency]:
        return [dependency.to_dependency() for dependency in self.dependencies]


def apply_env_overrides(
    data: dict[str, Any],
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """
    Return ``data`` with ``MIGRATION_*`` variables applied to its ``job`` section.

    Raises:
        InvalidConfigError: If a variable does not parse as its field's type
    """
    environ = os.environ if environ is None else environ
    job = dict(data.get("job") or {})
    for variable, (field_name, cast) in ENV_OVERRIDES.items():
        raw = environ.get(variable)
        if raw is None or raw == "":
            continue
        try:
            job[field_name] = cast(raw)
        except ValueError as e:
            raise InvalidConfigError(
                f"{variable}={raw!r} is not a valid {cast.__name__}",
                field_name=field_name,
            ) from e
        logger.debug("Config override %s -> %s=%r", variable, field_name, job[field_name])
    return {**data, "job": job}


def parse_settings(
    data: Mapping[str, Any],
    environ: Mapping[str, str] | None = None,
) -> MigrationSettings:
    """
    Validate a decoded config document.

    Raises:
        InvalidConfigError: On any schema violation
    """
    merged = apply_env_overrides(dict(data), environ)
    try:
        return MigrationSettings.model_validate(merged)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise InvalidConfigError(
            f"Invalid configuration at {location or '<root>'}: {first['msg']}",
            field_name=location or None,
        ) from e


def load_settings(
    path: str | Path,
    environ: Mapping[str, str] | None = None,
) -> MigrationSettings:
    """
    Read and validate a JSON config file.

    Raises:
        InvalidConfigError: If the file is missing, not JSON, or invalid
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise InvalidConfigError(f"Cannot read config file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise InvalidConfigError(f"Config file {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidConfigError(f"Config file {path} must contain a JSON object")
    return parse_settings(data, environ)


async def build_store(settings: StoreSettings) -> DocumentStore:
    """Create and open the configured store."""
    if settings.type == "memory":
        return InMemoryDocumentStore(
            max_operations_per_transaction=settings.max_operations_per_transaction,
            max_request_bytes=settings.max_request_bytes,
        )
    store = SQLiteDocumentStore(
        settings.path,
        max_operations_per_transaction=settings.max_operations_per_transaction,
        max_request_bytes=settings.max_request_bytes,
    )
    await store.initialize()
    return store


__all__ = [
    "ENV_OVERRIDES",
    "DependencySettings",
    "JobSettings",
    "MigrationSettings",
    "StoreSettings",
    "ThresholdSettings",
    "apply_env_overrides",
    "build_store",
    "load_settings",
    "parse_settings",
]
