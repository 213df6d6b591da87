"""Tests for context.AppContext and the standalone worker runner."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from placeflow.context import AppContext, build_lookup, get_context
from placeflow.core.config import Settings
from placeflow.core.errors import InfrastructureError
from placeflow.core.models import QueueName
from placeflow.vendors import GooglePlacesClient, MockPlaces
from placeflow.workers.runner import ShutdownSignal, run
from tests.helpers import FakeLookup, FakeScheduler


class TestAppContext:
    @pytest.mark.asyncio
    async def test_open_wires_memory_backend(self, settings: Settings) -> None:
        lookup = FakeLookup()
        context = AppContext(settings, scheduler=FakeScheduler(), lookup=lookup)

        await context.open()
        try:
            assert context.is_open is True
            assert context.store.backend == "memory"
            assert context.orchestrator.is_running is False
            assert context.metrics.is_running is True
            assert context.maintenance.is_running is True
            assert context.maintenance.interval_seconds == settings.QUEUE_CLEANUP_INTERVAL_SECONDS
            job = await context.orchestrator.enqueue(QueueName.IMAGE, {"place_id": "p"})
            assert job.queue_name == QueueName.IMAGE
        finally:
            await context.close()

        assert context.is_open is False
        assert context.metrics.is_running is False
        assert context.maintenance.is_running is False
        assert lookup.closed is True

    @pytest.mark.asyncio
    async def test_failed_jobs_reach_the_error_classifier(self, settings: Settings) -> None:
        context = AppContext(settings, scheduler=FakeScheduler(), lookup=FakeLookup())
        await context.open()
        try:
            await context.orchestrator.enqueue(
                QueueName.IMAGE, {"place_id": "missing"}, max_attempts=1
            )
            await context.orchestrator.process_next(QueueName.IMAGE)

            stats = context.error_classifier.get_error_stats()
            assert stats["total_errors"] == 1
            assert stats["errors_by_queue"] == {"image": 1}
        finally:
            await context.close()

    def test_storage_is_unavailable_before_open(self, settings: Settings) -> None:
        context = AppContext(settings, scheduler=FakeScheduler(), lookup=FakeLookup())

        with pytest.raises(RuntimeError):
            context.store
        with pytest.raises(RuntimeError):
            context.orchestrator
        with pytest.raises(RuntimeError):
            context.import_service

    @pytest.mark.asyncio
    async def test_close_stops_pending_alert_recheck(self, settings: Settings) -> None:
        scheduler = FakeScheduler()
        context = AppContext(settings, scheduler=scheduler, lookup=FakeLookup())
        await context.open()
        await context.orchestrator.enqueue(QueueName.IMAGE, {"place_id": "missing"}, max_attempts=1)
        await context.orchestrator.process_next(QueueName.IMAGE)
        assert context.error_classifier.alert_active is True

        await context.close()

        assert scheduler.pending == []

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, settings: Settings) -> None:
        context = AppContext(settings, scheduler=FakeScheduler(), lookup=FakeLookup())
        await context.open()

        await context.close()
        await context.close()


class TestBuildLookup:
    def test_mock_without_key(self, settings: Settings) -> None:
        assert isinstance(build_lookup(settings), MockPlaces)

    @pytest.mark.asyncio
    async def test_google_with_key(self) -> None:
        settings = Settings(_env_file=None, QUEUE_BACKEND="memory", GOOGLE_MAPS_API_KEY="k")

        lookup = build_lookup(settings)

        assert isinstance(lookup, GooglePlacesClient)
        await lookup.aclose()


def test_get_context_before_startup() -> None:
    request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))

    with pytest.raises(InfrastructureError):
        get_context(request)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_runner_shuts_down_on_signal(settings: Settings) -> None:
    shutdown = ShutdownSignal()
    shutdown.trigger()

    await run(settings, shutdown)
