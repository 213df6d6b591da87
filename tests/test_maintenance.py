"""Tests for workers.maintenance.QueueMaintenance."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from placeflow.core.errors import InfrastructureError, PlaceNotFoundError
from placeflow.core.models import JobState, QueueName
from placeflow.workers.maintenance import QueueMaintenance
from placeflow.workers.orchestrator import JobQueueOrchestrator
from tests.helpers import FakeScheduler

ENRICHMENT = QueueName.ENRICHMENT


async def finish(orchestrator: JobQueueOrchestrator, count: int, prefix: str) -> None:
    for n in range(count):
        await orchestrator.enqueue(ENRICHMENT, {"n": n}, job_id=f"{prefix}{n}")
    while await orchestrator.process_next(ENRICHMENT):
        pass


async def ids(orchestrator: JobQueueOrchestrator, state: JobState) -> list:
    jobs, _ = await orchestrator.get_jobs(ENRICHMENT, state, limit=100)
    return sorted(job.id for job in jobs)


class TestTrim:
    @pytest.mark.asyncio
    async def test_keeps_most_recent(self, orchestrator: JobQueueOrchestrator) -> None:
        orchestrator.register_handler(ENRICHMENT, AsyncMock())
        await finish(orchestrator, 5, "c")

        removed = await orchestrator.trim(ENRICHMENT, JobState.COMPLETED, keep=2)

        assert sorted(removed) == ["c0", "c1", "c2"]
        assert await ids(orchestrator, JobState.COMPLETED) == ["c3", "c4"]
        assert await orchestrator.get_removed(ENRICHMENT) == 3

    @pytest.mark.asyncio
    async def test_under_cap_is_noop(self, orchestrator: JobQueueOrchestrator) -> None:
        orchestrator.register_handler(ENRICHMENT, AsyncMock())
        await finish(orchestrator, 2, "c")

        assert await orchestrator.trim(ENRICHMENT, JobState.COMPLETED, keep=2) == []

    @pytest.mark.asyncio
    async def test_rejects_live_states(self, orchestrator: JobQueueOrchestrator) -> None:
        with pytest.raises(ValueError):
            await orchestrator.trim(ENRICHMENT, JobState.ACTIVE, keep=0)


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_cleans_expired_jobs(
        self, orchestrator: JobQueueOrchestrator, scheduler: FakeScheduler
    ) -> None:
        orchestrator.register_handler(ENRICHMENT, AsyncMock(side_effect=PlaceNotFoundError("gone")))
        await finish(orchestrator, 2, "old")
        await scheduler.advance(7200)
        await finish(orchestrator, 1, "new")
        maintenance = QueueMaintenance(orchestrator, scheduler, retention_seconds=3600)

        removed = await maintenance.run_once()

        assert removed[ENRICHMENT] == 2
        assert removed[QueueName.IMAGE] == 0
        assert await ids(orchestrator, JobState.FAILED) == ["new0"]

    @pytest.mark.asyncio
    async def test_trims_failed_beyond_cap(
        self, orchestrator: JobQueueOrchestrator, scheduler: FakeScheduler
    ) -> None:
        async def handler(job) -> None:
            if job.data["n"] % 2:
                raise PlaceNotFoundError("gone")

        orchestrator.register_handler(ENRICHMENT, handler)
        await finish(orchestrator, 8, "j")
        maintenance = QueueMaintenance(orchestrator, scheduler, max_completed=3, max_failed=1)

        removed = await maintenance.run_once()

        assert removed[ENRICHMENT] == 4
        assert await ids(orchestrator, JobState.COMPLETED) == ["j2", "j4", "j6"]
        assert await ids(orchestrator, JobState.FAILED) == ["j7"]

    @pytest.mark.asyncio
    async def test_store_failure_skips_queue(
        self, orchestrator: JobQueueOrchestrator, scheduler: FakeScheduler
    ) -> None:
        orchestrator.clean = AsyncMock(side_effect=InfrastructureError("down"))
        maintenance = QueueMaintenance(orchestrator, scheduler)

        removed = await maintenance.run_once()

        assert removed == {queue: 0 for queue in QueueName}


class TestSchedule:
    @pytest.mark.asyncio
    async def test_runs_every_interval_until_stopped(
        self, orchestrator: JobQueueOrchestrator, scheduler: FakeScheduler
    ) -> None:
        maintenance = QueueMaintenance(orchestrator, scheduler, interval_seconds=60)
        maintenance.run_once = AsyncMock(return_value={})

        maintenance.start()
        maintenance.start()
        await scheduler.advance(150)

        assert maintenance.run_once.await_count == 2
        maintenance.stop()
        await scheduler.advance(600)
        assert maintenance.run_once.await_count == 2
        assert maintenance.is_running is False

    @pytest.mark.asyncio
    async def test_failed_pass_keeps_schedule(
        self, orchestrator: JobQueueOrchestrator, scheduler: FakeScheduler
    ) -> None:
        maintenance = QueueMaintenance(orchestrator, scheduler, interval_seconds=60)
        maintenance.run_once = AsyncMock(side_effect=RuntimeError("boom"))

        maintenance.start()
        await scheduler.advance(125)

        assert maintenance.run_once.await_count == 2
        maintenance.stop()
