"""
Unit tests for the HealthMonitor.

Tests cover:
- Percentile calculation
- Report classification against AlertThresholds
- Sample aggregation and reset in collect()
- Publishing to subscribers and the events() stream
"""

import asyncio
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from docmigrate.models import AlertThresholds, HealthReport, HealthStatus
from docmigrate.monitor import HealthMonitor, classify, percentile


def _report(status: HealthStatus = HealthStatus.HEALTHY, error_rate: float = 0.0) -> HealthReport:
    return HealthReport(
        error_rate=error_rate,
        p95_latency_ms=10.0,
        p99_latency_ms=12.0,
        throughput_per_sec=500.0,
        memory_used_mb=64.0,
        status=status,
    )


class TestPercentile:
    def test_nearest_rank(self) -> None:
        samples = [float(value) for value in range(1, 101)]
        assert percentile(samples, 0.95) == 95.0
        assert percentile(samples, 0.99) == 99.0
        assert percentile([7.0], 0.95) == 7.0

    def test_empty(self) -> None:
        assert percentile([], 0.95) == 0.0


class TestClassify:
    """Tests for classify."""

    THRESHOLDS = AlertThresholds()

    def _classify(self, **overrides) -> tuple[HealthStatus, tuple[str, ...]]:
        values = {
            "error_rate": 0.0,
            "p95_latency_ms": 50.0,
            "memory_used_mb": 100.0,
            "throughput_per_sec": 500.0,
            "had_activity": True,
        }
        values.update(overrides)
        return classify(self.THRESHOLDS, **values)

    def test_healthy(self) -> None:
        assert self._classify() == (HealthStatus.HEALTHY, ())

    def test_error_rate_levels(self) -> None:
        assert self._classify(error_rate=0.02)[0] == HealthStatus.DEGRADED
        assert self._classify(error_rate=0.5)[0] == HealthStatus.CRITICAL

    def test_latency_and_memory(self) -> None:
        assert self._classify(p95_latency_ms=2000.0)[0] == HealthStatus.DEGRADED
        assert self._classify(memory_used_mb=2048.0)[0] == HealthStatus.CRITICAL

    def test_throughput_only_judged_with_activity(self) -> None:
        """Test that an idle window is not reported as slow."""
        assert self._classify(throughput_per_sec=0.0, had_activity=False)[0] == HealthStatus.HEALTHY
        assert self._classify(throughput_per_sec=1.0)[0] == HealthStatus.CRITICAL
        assert self._classify(throughput_per_sec=7.0)[0] == HealthStatus.DEGRADED

    def test_critical_reasons_include_degraded_ones(self) -> None:
        status, reasons = self._classify(error_rate=0.5, p95_latency_ms=2000.0)
        assert status == HealthStatus.CRITICAL
        assert len(reasons) == 2


class TestHealthMonitor:
    """Tests for HealthMonitor."""

    @pytest.mark.asyncio
    async def test_collect_aggregates_and_resets(self) -> None:
        monitor = HealthMonitor(uuid4(), memory_probe=lambda: 42.0, enable_tracing=False)
        monitor.record_batch(20.0, documents=200, failed=2)
        monitor.record_batch(40.0, documents=200, failed=0)
        monitor.record_error()

        report = await monitor.collect()

        assert report.error_rate == pytest.approx(2 / 400)
        assert report.p95_latency_ms == 40.0
        assert report.memory_used_mb == 42.0
        assert report.documents_processed == 400
        assert "1 transient error(s) retried" in report.reasons

        empty = await monitor.collect()
        assert empty.documents_processed == 0
        assert empty.error_rate == 0.0

    @pytest.mark.asyncio
    async def test_collect_includes_store_ping(self) -> None:
        store = AsyncMock()
        store.ping.return_value = 5000.0
        monitor = HealthMonitor(uuid4(), store=store, memory_probe=lambda: 1.0, enable_tracing=False)

        report = await monitor.collect()

        assert report.p95_latency_ms == 5000.0
        assert report.status == HealthStatus.CRITICAL

    @pytest.mark.asyncio
    async def test_failing_probes_do_not_break_collection(self) -> None:
        """Test that monitor trouble degrades the report instead of raising."""
        store = AsyncMock()
        store.ping.side_effect = ConnectionError("down")

        def broken_probe() -> float:
            raise OSError("no procfs")

        monitor = HealthMonitor(uuid4(), store=store, memory_probe=broken_probe, enable_tracing=False)

        report = await monitor.collect()

        assert report.memory_used_mb == 0.0
        assert "store ping failed" in report.reasons

    def test_get_status_before_first_report(self) -> None:
        monitor = HealthMonitor(uuid4(), enable_tracing=False)
        status = monitor.get_status()
        assert status.status == HealthStatus.HEALTHY
        assert monitor.latest is None

    @pytest.mark.asyncio
    async def test_publish_reaches_subscribers(self) -> None:
        monitor = HealthMonitor(uuid4(), window=2, enable_tracing=False)
        queue = monitor.subscribe()

        for status in (HealthStatus.HEALTHY, HealthStatus.DEGRADED, HealthStatus.CRITICAL):
            monitor.publish(_report(status))

        assert queue.qsize() == 3
        assert (await queue.get()).status == HealthStatus.HEALTHY
        assert monitor.get_status().status == HealthStatus.CRITICAL
        assert [r.status for r in monitor.history] == [HealthStatus.DEGRADED, HealthStatus.CRITICAL]

        monitor.unsubscribe(queue)
        monitor.publish(_report())
        assert queue.qsize() == 2

    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_oldest(self) -> None:
        monitor = HealthMonitor(uuid4(), queue_size=2, enable_tracing=False)
        queue = monitor.subscribe()

        for rate in (0.1, 0.2, 0.3):
            monitor.publish(_report(error_rate=rate))

        assert [(await queue.get()).error_rate for _ in range(2)] == [0.2, 0.3]

    @pytest.mark.asyncio
    async def test_events_end_on_stop(self) -> None:
        """Test that events() yields reports and ends when the monitor stops."""
        monitor = HealthMonitor(uuid4(), enable_tracing=False)
        received: list[HealthReport] = []

        async def consume() -> None:
            async for report in monitor.events():
                received.append(report)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        monitor.publish(_report(HealthStatus.DEGRADED))
        await monitor.stop()
        await asyncio.wait_for(consumer, timeout=1.0)

        assert [r.status for r in received] == [HealthStatus.DEGRADED]

    @pytest.mark.asyncio
    async def test_periodic_reports(self) -> None:
        monitor = HealthMonitor(uuid4(), interval=0.01, memory_probe=lambda: 1.0, enable_tracing=False)
        queue = monitor.subscribe()

        await monitor.start()
        assert monitor.is_running
        report = await asyncio.wait_for(queue.get(), timeout=1.0)
        await monitor.stop()

        assert report is not None
        assert not monitor.is_running
