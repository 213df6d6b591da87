"""Tests for monitors.metrics_collector."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from placeflow.core.errors import (
    ExternalServiceError,
    InfrastructureError,
    PlaceNotFoundError,
    UnknownQueueError,
)
from placeflow.core.models import JobState, QueueName
from placeflow.monitors.metrics_collector import MetricsCollector
from placeflow.workers.orchestrator import JobQueueOrchestrator
from tests.helpers import FakeScheduler

ENRICHMENT = QueueName.ENRICHMENT


@pytest.fixture
def collector(orchestrator: JobQueueOrchestrator, scheduler: FakeScheduler) -> MetricsCollector:
    collector = MetricsCollector(orchestrator, scheduler, collect_interval=5.0, retention_seconds=60)
    orchestrator.add_listener(collector.on_job_event)
    return collector


class TestCollect:
    @pytest.mark.asyncio
    async def test_snapshot_reflects_counts_and_interval(
        self, orchestrator: JobQueueOrchestrator, collector: MetricsCollector
    ) -> None:
        async def handler(job) -> None:
            if job.data["n"] == 0:
                raise PlaceNotFoundError("gone")
            if job.data["n"] == 1:
                raise ExternalServiceError("flaky")

        orchestrator.register_handler(ENRICHMENT, handler)
        for n in range(5):
            await orchestrator.enqueue(ENRICHMENT, {"n": n})
        while await orchestrator.process_next(ENRICHMENT):
            pass
        await orchestrator.enqueue(QueueName.IMAGE, {})

        snapshots = {s.queue_name: s for s in await collector.collect()}

        assert set(snapshots) == {q.value for q in QueueName}
        enrichment = snapshots["enrichment"]
        assert enrichment.processed == 3
        assert enrichment.failed == 1
        assert enrichment.delayed == 1
        assert enrichment.active == 0
        assert enrichment.throughput == 3
        assert enrichment.error_rate == pytest.approx(1 / 4)
        assert enrichment.latency >= 0.0
        assert snapshots["image"].waiting == 1
        assert snapshots["image"].throughput == 0
        assert snapshots["image"].error_rate == 0.0

    @pytest.mark.asyncio
    async def test_interval_counters_reset_each_collection(
        self, orchestrator: JobQueueOrchestrator, collector: MetricsCollector
    ) -> None:
        orchestrator.register_handler(ENRICHMENT, AsyncMock())
        await orchestrator.enqueue(ENRICHMENT, {})
        await orchestrator.process_next(ENRICHMENT)

        await collector.collect()
        await collector.collect()

        latest = collector.get_latest(ENRICHMENT)
        assert latest.throughput == 0
        assert latest.processed == 1

    @pytest.mark.asyncio
    async def test_store_failure_skips_queue(
        self, orchestrator: JobQueueOrchestrator, collector: MetricsCollector
    ) -> None:
        orchestrator.get_job_counts = AsyncMock(  # type: ignore[method-assign]
            side_effect=InfrastructureError("store down")
        )

        assert await collector.collect() == []
        assert collector.get_latest(ENRICHMENT) is None

    @pytest.mark.asyncio
    async def test_snapshots_older_than_retention_are_evicted(
        self, collector: MetricsCollector, scheduler: FakeScheduler
    ) -> None:
        await collector.collect()
        await scheduler.advance(30)
        await collector.collect()
        await scheduler.advance(40)
        await collector.collect()

        series = collector.get_metrics(ENRICHMENT)
        assert [s.timestamp for s in series] == [
            scheduler.now() - 40,
            scheduler.now(),
        ]


class TestScheduling:
    @pytest.mark.asyncio
    async def test_ticks_every_interval_until_stopped(
        self, collector: MetricsCollector, scheduler: FakeScheduler
    ) -> None:
        collector.start()
        assert collector.is_running is True

        await scheduler.advance(15)
        assert len(collector.get_metrics(ENRICHMENT)) == 3

        collector.stop()
        await scheduler.advance(15)
        assert len(collector.get_metrics(ENRICHMENT)) == 3
        assert scheduler.pending == []

    @pytest.mark.asyncio
    async def test_start_is_idempotent(
        self, collector: MetricsCollector, scheduler: FakeScheduler
    ) -> None:
        collector.start()
        collector.start()

        assert len(scheduler.pending) == 1
        collector.stop()


class TestQueries:
    @pytest.mark.asyncio
    async def test_all_returns_mapping(self, collector: MetricsCollector) -> None:
        await collector.collect()

        metrics = collector.get_metrics("all")

        assert set(metrics) == {q.value for q in QueueName}
        assert len(metrics["content"]) == 1

    @pytest.mark.asyncio
    async def test_duration_limits_window(
        self, collector: MetricsCollector, scheduler: FakeScheduler
    ) -> None:
        await collector.collect()
        await scheduler.advance(20)
        await collector.collect()

        assert len(collector.get_metrics(ENRICHMENT, duration=10)) == 1
        assert len(collector.get_metrics(ENRICHMENT)) == 2

    @pytest.mark.asyncio
    async def test_aggregated_means(
        self,
        orchestrator: JobQueueOrchestrator,
        collector: MetricsCollector,
        scheduler: FakeScheduler,
    ) -> None:
        await collector.collect()
        await orchestrator.enqueue(ENRICHMENT, {})
        await orchestrator.enqueue(ENRICHMENT, {})
        await scheduler.advance(5)
        await collector.collect()

        aggregated = collector.get_aggregated(ENRICHMENT, duration=30)

        assert aggregated.waiting == 1
        assert aggregated.error_rate == 0.0
        assert collector.get_aggregated(QueueName.IMAGE, duration=0) is None

    def test_unknown_queue_name(self, collector: MetricsCollector) -> None:
        with pytest.raises(UnknownQueueError):
            collector.get_metrics("emails")

    @pytest.mark.asyncio
    async def test_counts_include_active_jobs(
        self,
        orchestrator: JobQueueOrchestrator,
        collector: MetricsCollector,
        scheduler: FakeScheduler,
    ) -> None:
        await orchestrator.enqueue(ENRICHMENT, {})
        await orchestrator.store.claim(ENRICHMENT, scheduler.now())

        await collector.collect()

        assert collector.get_latest(ENRICHMENT).active == 1
        assert (await orchestrator.get_job_counts(ENRICHMENT))[JobState.ACTIVE] == 1
