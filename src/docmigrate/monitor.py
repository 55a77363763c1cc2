"""
Health monitoring for running migration jobs.

The HealthMonitor aggregates per-batch timing and error counts into a
HealthReport on a fixed interval. Reports are pushed to subscribers
(the Orchestrator's emergency-stop logic, dashboards) through bounded
queues and the latest one is available on demand via ``get_status``.

The monitor never blocks the critical path: workers only append samples,
aggregation runs in its own task, and a failure while collecting is
logged and skipped. Monitor trouble degrades observability; it never
halts a migration by itself.

Example:
    >>> monitor = HealthMonitor(job.id, interval=5.0, store=store)
    >>> await monitor.start()
    >>> monitor.record_batch(duration_ms=42.0, documents=200, failed=1)
    >>> async for report in monitor.events():
    ...     print(report.status, report.throughput_per_sec)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import time
from collections import deque
from collections.abc import AsyncIterator, Callable, Sequence
from uuid import UUID

import psutil

from docmigrate.models import AlertThresholds, HealthReport, HealthStatus
from docmigrate.observability import ATTR_JOB_ID, Tracer, create_tracer
from docmigrate.stores.interface import DocumentStore

logger = logging.getLogger(__name__)

MemoryProbe = Callable[[], float]


def process_memory_mb() -> float:
    """Resident set size of this process in megabytes."""
    return psutil.Process().memory_info().rss / 1024 / 1024


def percentile(samples: Sequence[float], fraction: float) -> float:
    """Nearest-rank percentile of ``samples``; 0.0 when there are none."""
    if not samples:
        return 0.0
    ordered = sorted(samples)
    rank = max(1, math.ceil(fraction * len(ordered)))
    return ordered[rank - 1]


def classify(
    thresholds: AlertThresholds,
    *,
    error_rate: float,
    p95_latency_ms: float,
    memory_used_mb: float,
    throughput_per_sec: float,
    had_activity: bool,
) -> tuple[HealthStatus, tuple[str, ...]]:
    """Judge report values against ``thresholds``; return status and reasons."""
    critical: list[str] = []
    degraded: list[str] = []

    if error_rate > thresholds.error_rate_critical:
        critical.append(f"error rate {error_rate:.4f} above {thresholds.error_rate_critical}")
    elif error_rate > thresholds.error_rate_warning:
        degraded.append(f"error rate {error_rate:.4f} above {thresholds.error_rate_warning}")

    if p95_latency_ms > thresholds.latency_critical_ms:
        critical.append(f"p95 latency {p95_latency_ms:.0f}ms above {thresholds.latency_critical_ms}")
    elif p95_latency_ms > thresholds.latency_warning_ms:
        degraded.append(f"p95 latency {p95_latency_ms:.0f}ms above {thresholds.latency_warning_ms}")

    if memory_used_mb > thresholds.memory_critical_mb:
        critical.append(f"memory {memory_used_mb:.0f}MB above {thresholds.memory_critical_mb}")
    elif memory_used_mb > thresholds.memory_warning_mb:
        degraded.append(f"memory {memory_used_mb:.0f}MB above {thresholds.memory_warning_mb}")

    if had_activity:
        if throughput_per_sec < thresholds.throughput_critical_per_sec:
            critical.append(
                f"throughput {throughput_per_sec:.1f}/s below "
                f"{thresholds.throughput_critical_per_sec}"
            )
        elif throughput_per_sec < thresholds.throughput_warning_per_sec:
            degraded.append(
                f"throughput {throughput_per_sec:.1f}/s below "
                f"{thresholds.throughput_warning_per_sec}"
            )

    if critical:
        return HealthStatus.CRITICAL, tuple(critical + degraded)
    if degraded:
        return HealthStatus.DEGRADED, tuple(degraded)
    return HealthStatus.HEALTHY, ()


class HealthMonitor:
    """
    Rolling health aggregation for one job.

    Attributes are sampled between reports and reset after each
    ``collect``; the last ``window`` reports are kept in ``history``.
    """

    def __init__(
        self,
        job_id: UUID,
        *,
        interval: float = 5.0,
        window: int = 12,
        thresholds: AlertThresholds | None = None,
        store: DocumentStore | None = None,
        memory_probe: MemoryProbe | None = None,
        queue_size: int = 100,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._job_id = job_id
        self._interval = interval
        self._thresholds = thresholds or AlertThresholds()
        self._store = store
        self._memory_probe = memory_probe or process_memory_mb
        self._queue_size = queue_size

        self._latencies: list[float] = []
        self._documents = 0
        self._failed = 0
        self._batches = 0
        self._errors = 0
        self._window_started = time.monotonic()

        self._history: deque[HealthReport] = deque(maxlen=window)
        self._latest: HealthReport | None = None
        self._subscribers: list[asyncio.Queue[HealthReport | None]] = []
        self._task: asyncio.Task[None] | None = None

        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    @property
    def job_id(self) -> UUID:
        return self._job_id

    @property
    def thresholds(self) -> AlertThresholds:
        return self._thresholds

    @property
    def history(self) -> list[HealthReport]:
        return list(self._history)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def record_batch(self, duration_ms: float, documents: int, failed: int = 0) -> None:
        """
        Record a finished batch.

        Args:
            duration_ms: Batch wall time including retries
            documents: Documents processed (migrated plus failed)
            failed: Documents that failed
        """
        self._latencies.append(duration_ms)
        self._documents += documents
        self._failed += failed
        self._batches += 1

    def record_error(self) -> None:
        """Record a transient batch-level error (a retried attempt)."""
        self._errors += 1

    async def collect(self) -> HealthReport:
        """Build a report from the samples gathered since the previous one."""
        now = time.monotonic()
        elapsed = max(now - self._window_started, 1e-6)
        latencies = list(self._latencies)
        documents, failed, batches, errors = (
            self._documents,
            self._failed,
            self._batches,
            self._errors,
        )
        self._latencies.clear()
        self._documents = self._failed = self._batches = self._errors = 0
        self._window_started = now

        reasons: list[str] = []
        if self._store is not None:
            try:
                latencies.append(await self._store.ping())
            except Exception as e:
                logger.warning("Store ping failed during health collection: %s", e)
                reasons.append("store ping failed")

        try:
            memory_mb = self._memory_probe()
        except Exception as e:
            logger.warning("Memory probe failed: %s", e)
            memory_mb = 0.0

        error_rate = failed / documents if documents else 0.0
        throughput = documents / elapsed
        p95 = percentile(latencies, 0.95)
        p99 = percentile(latencies, 0.99)
        status, judged = classify(
            self._thresholds,
            error_rate=error_rate,
            p95_latency_ms=p95,
            memory_used_mb=memory_mb,
            throughput_per_sec=throughput,
            had_activity=batches > 0,
        )
        if errors:
            reasons.append(f"{errors} transient error(s) retried")

        return HealthReport(
            error_rate=error_rate,
            p95_latency_ms=p95,
            p99_latency_ms=p99,
            throughput_per_sec=throughput,
            memory_used_mb=memory_mb,
            status=status,
            documents_processed=documents,
            reasons=judged + tuple(reasons),
        )

    def publish(self, report: HealthReport) -> None:
        """
        Record ``report`` as the latest and push it to every subscriber.

        A subscriber that falls behind loses its oldest queued report.
        """
        self._latest = report
        self._history.append(report)
        for queue in list(self._subscribers):
            self._offer(queue, report)
        if report.status != HealthStatus.HEALTHY:
            logger.warning(
                "Job %s health %s: %s",
                self._job_id,
                report.status.value,
                "; ".join(report.reasons),
                extra={"job_id": str(self._job_id)},
            )

    def subscribe(self) -> asyncio.Queue[HealthReport | None]:
        """New bounded queue receiving every published report; None marks shutdown."""
        queue: asyncio.Queue[HealthReport | None] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[HealthReport | None]) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(queue)

    async def events(self) -> AsyncIterator[HealthReport]:
        """Iterate published reports until the monitor stops."""
        queue = self.subscribe()
        try:
            while True:
                report = await queue.get()
                if report is None:
                    return
                yield report
        finally:
            self.unsubscribe(queue)

    def get_status(self) -> HealthReport:
        """Latest published report, or an idle healthy report before the first one."""
        if self._latest is not None:
            return self._latest
        return HealthReport(
            error_rate=0.0,
            p95_latency_ms=0.0,
            p99_latency_ms=0.0,
            throughput_per_sec=0.0,
            memory_used_mb=0.0,
            status=HealthStatus.HEALTHY,
        )

    @property
    def latest(self) -> HealthReport | None:
        return self._latest

    async def start(self) -> None:
        if self.is_running:
            return
        self._window_started = time.monotonic()
        self._task = asyncio.create_task(self._run(), name=f"docmigrate-monitor-{self._job_id}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        for queue in list(self._subscribers):
            self._offer(queue, None)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                with self._tracer.span(
                    "docmigrate.monitor.collect", {ATTR_JOB_ID: str(self._job_id)}
                ):
                    report = await self.collect()
                self.publish(report)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Health collection failed for job %s", self._job_id)

    @staticmethod
    def _offer(queue: asyncio.Queue[HealthReport | None], item: HealthReport | None) -> None:
        if queue.full():
            with contextlib.suppress(asyncio.QueueEmpty):
                queue.get_nowait()
        queue.put_nowait(item)


__all__ = [
    "HealthMonitor",
    "MemoryProbe",
    "classify",
    "percentile",
    "process_memory_mb",
]
