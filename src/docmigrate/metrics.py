"""
OpenTelemetry metrics for migration jobs.

Instruments are created on the ``docmigrate`` meter. Without a configured
MeterProvider the OpenTelemetry API hands out no-op instruments, so
recording is always safe; ``enable_metrics=False`` skips the meter
entirely.

Example:
    >>> from docmigrate.metrics import get_job_metrics
    >>>
    >>> metrics = get_job_metrics(str(job.id), job.collection)
    >>> metrics.record_batch(migrated=198, failed=2, duration_ms=41.5)
    >>> metrics.record_health(report)
    >>> metrics.get_snapshot().documents_migrated
    198

Metrics Exposed:
    - docmigrate.documents.migrated (Counter): Documents written in the target shape
    - docmigrate.documents.failed (Counter): Documents the transform rejected
    - docmigrate.documents.reverted (Counter): Documents restored by rollback
    - docmigrate.batch.duration (Histogram): Batch wall time including retries
    - docmigrate.batch.retries (Counter): Transient failures retried
    - docmigrate.batch.exhausted (Counter): Batches that ran out of retries
    - docmigrate.alerts (Counter): Alerts raised, by error code
    - docmigrate.error_rate (Gauge): Error rate of the latest HealthReport
    - docmigrate.latency.p95 (Gauge): p95 latency of the latest HealthReport
    - docmigrate.throughput (Gauge): Documents per second of the latest HealthReport

All metrics carry ``job_id`` and ``collection`` attributes.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, Observation

from docmigrate.exceptions import MigrationError
from docmigrate.models import HealthReport

_meter: Any = None


def _get_meter() -> Any:
    global _meter
    if _meter is None:
        from docmigrate import __version__

        _meter = metrics.get_meter("docmigrate", version=__version__)
    return _meter


def reset_meter() -> None:
    """Forget the cached meter so the next job picks up a new MeterProvider."""
    global _meter
    _meter = None


class NoOpCounter:
    def add(self, amount: int | float, attributes: dict[str, Any] | None = None) -> None:
        pass


class NoOpHistogram:
    def record(self, value: float, attributes: dict[str, Any] | None = None) -> None:
        pass


@dataclass(frozen=True)
class JobMetricSnapshot:
    """
    Values accumulated by a MigrationMetrics instance.

    Mirrors what has been reported to OpenTelemetry; used by tests and by
    the CLI status output.
    """

    documents_migrated: int = 0
    documents_failed: int = 0
    documents_reverted: int = 0
    batches: int = 0
    retries: int = 0
    exhausted_batches: int = 0
    alerts: dict[str, int] = field(default_factory=dict)
    error_rate: float = 0.0
    p95_latency_ms: float = 0.0
    throughput_per_sec: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "documents_migrated": self.documents_migrated,
            "documents_failed": self.documents_failed,
            "documents_reverted": self.documents_reverted,
            "batches": self.batches,
            "retries": self.retries,
            "exhausted_batches": self.exhausted_batches,
            "alerts": dict(self.alerts),
            "error_rate": self.error_rate,
            "p95_latency_ms": self.p95_latency_ms,
            "throughput_per_sec": self.throughput_per_sec,
        }


@dataclass
class MigrationMetrics:
    """
    Metric instruments for one migration job.

    Attributes:
        job_id: Job identifier used as a metric attribute
        collection: Migrated collection used as a metric attribute
        enable_metrics: Whether to create OpenTelemetry instruments
    """

    job_id: str
    collection: str
    enable_metrics: bool = True

    _migrated_counter: Any = field(default=None, init=False, repr=False)
    _failed_counter: Any = field(default=None, init=False, repr=False)
    _reverted_counter: Any = field(default=None, init=False, repr=False)
    _retry_counter: Any = field(default=None, init=False, repr=False)
    _exhausted_counter: Any = field(default=None, init=False, repr=False)
    _alert_counter: Any = field(default=None, init=False, repr=False)
    _batch_histogram: Any = field(default=None, init=False, repr=False)

    _documents_migrated: int = field(default=0, init=False, repr=False)
    _documents_failed: int = field(default=0, init=False, repr=False)
    _documents_reverted: int = field(default=0, init=False, repr=False)
    _batches: int = field(default=0, init=False, repr=False)
    _retries: int = field(default=0, init=False, repr=False)
    _exhausted: int = field(default=0, init=False, repr=False)
    _alerts: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _error_rate: float = field(default=0.0, init=False, repr=False)
    _p95_latency_ms: float = field(default=0.0, init=False, repr=False)
    _throughput: float = field(default=0.0, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.enable_metrics:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        meter = _get_meter()

        self._migrated_counter = meter.create_counter(
            name="docmigrate.documents.migrated",
            unit="documents",
            description="Documents written in the target shape",
        )
        self._failed_counter = meter.create_counter(
            name="docmigrate.documents.failed",
            unit="documents",
            description="Documents the transform could not convert",
        )
        self._reverted_counter = meter.create_counter(
            name="docmigrate.documents.reverted",
            unit="documents",
            description="Documents restored to the source shape by rollback",
        )
        self._retry_counter = meter.create_counter(
            name="docmigrate.batch.retries",
            unit="attempts",
            description="Batch attempts retried after a transient store error",
        )
        self._exhausted_counter = meter.create_counter(
            name="docmigrate.batch.exhausted",
            unit="batches",
            description="Batches that exhausted their retry budget",
        )
        self._alert_counter = meter.create_counter(
            name="docmigrate.alerts",
            unit="alerts",
            description="Alerts raised by the engine",
        )
        self._batch_histogram = meter.create_histogram(
            name="docmigrate.batch.duration",
            unit="ms",
            description="Batch wall time including retries",
        )
        meter.create_observable_gauge(
            name="docmigrate.error_rate",
            callbacks=[self._observe_error_rate],
            unit="1",
            description="Error rate reported by the latest HealthReport",
        )
        meter.create_observable_gauge(
            name="docmigrate.latency.p95",
            callbacks=[self._observe_p95_latency],
            unit="ms",
            description="p95 batch latency reported by the latest HealthReport",
        )
        meter.create_observable_gauge(
            name="docmigrate.throughput",
            callbacks=[self._observe_throughput],
            unit="documents/s",
            description="Throughput reported by the latest HealthReport",
        )

    def _setup_noop(self) -> None:
        self._migrated_counter = NoOpCounter()
        self._failed_counter = NoOpCounter()
        self._reverted_counter = NoOpCounter()
        self._retry_counter = NoOpCounter()
        self._exhausted_counter = NoOpCounter()
        self._alert_counter = NoOpCounter()
        self._batch_histogram = NoOpHistogram()

    def _base_attributes(self) -> dict[str, str]:
        return {"job_id": self.job_id, "collection": self.collection}

    def _observe_error_rate(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(self._error_rate, self._base_attributes())

    def _observe_p95_latency(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(self._p95_latency_ms, self._base_attributes())

    def _observe_throughput(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(self._throughput, self._base_attributes())

    def record_batch(self, migrated: int, failed: int, duration_ms: float) -> None:
        """Record one finished batch."""
        attrs = self._base_attributes()
        if migrated:
            self._migrated_counter.add(migrated, attrs)
        if failed:
            self._failed_counter.add(failed, attrs)
        self._batch_histogram.record(duration_ms, attrs)
        self._documents_migrated += migrated
        self._documents_failed += failed
        self._batches += 1

    def record_retry(self) -> None:
        self._retry_counter.add(1, self._base_attributes())
        self._retries += 1

    def record_exhausted_batch(self) -> None:
        self._exhausted_counter.add(1, self._base_attributes())
        self._exhausted += 1

    def record_reverted(self, count: int) -> None:
        if count <= 0:
            return
        self._reverted_counter.add(count, self._base_attributes())
        self._documents_reverted += count

    def record_alert(self, error: MigrationError) -> None:
        """AlertDispatcher metrics callback."""
        attrs = self._base_attributes()
        attrs["error_code"] = error.error_code
        self._alert_counter.add(1, attrs)
        self._alerts[error.error_code] = self._alerts.get(error.error_code, 0) + 1

    def record_health(self, report: HealthReport) -> None:
        self._error_rate = report.error_rate
        self._p95_latency_ms = report.p95_latency_ms
        self._throughput = report.throughput_per_sec

    def get_snapshot(self) -> JobMetricSnapshot:
        return JobMetricSnapshot(
            documents_migrated=self._documents_migrated,
            documents_failed=self._documents_failed,
            documents_reverted=self._documents_reverted,
            batches=self._batches,
            retries=self._retries,
            exhausted_batches=self._exhausted,
            alerts=dict(self._alerts),
            error_rate=self._error_rate,
            p95_latency_ms=self._p95_latency_ms,
            throughput_per_sec=self._throughput,
        )

    @property
    def metrics_enabled(self) -> bool:
        return self.enable_metrics


_metrics_registry: dict[str, MigrationMetrics] = {}


def get_job_metrics(job_id: str, collection: str, enable_metrics: bool = True) -> MigrationMetrics:
    """Get or create the metrics instance for a job."""
    if job_id not in _metrics_registry:
        _metrics_registry[job_id] = MigrationMetrics(
            job_id=job_id,
            collection=collection,
            enable_metrics=enable_metrics,
        )
    return _metrics_registry[job_id]


def release_job_metrics(job_id: str) -> None:
    _metrics_registry.pop(job_id, None)


def clear_metrics_registry() -> None:
    """Reset the registry and cached meter. Intended for tests."""
    _metrics_registry.clear()
    reset_meter()


__all__ = [
    "MigrationMetrics",
    "JobMetricSnapshot",
    "NoOpCounter",
    "NoOpHistogram",
    "get_job_metrics",
    "release_job_metrics",
    "clear_metrics_registry",
    "reset_meter",
]
