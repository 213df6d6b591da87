"""
tests/conftest.py

Shared fixtures: fake clock, in-memory queue store, orchestrator and a
fully wired import pipeline.

Everything runs on the memory backend. Tests marked `integration` need a
Postgres reachable at PLACEFLOW_TEST_DATABASE_URL and are skipped otherwise.
"""

from __future__ import annotations

from typing import Dict, Generator

import pytest

from placeflow.core.config import QueueConfig, RegionBounds, Settings, reset_settings
from placeflow.core.models import QueueName
from placeflow.services.enrichment_service import EnrichmentService
from placeflow.services.import_service import ImportService
from placeflow.services.validation_service import ValidationService
from placeflow.workers.batch import BatchAccumulator
from placeflow.workers.orchestrator import JobQueueOrchestrator
from placeflow.workers.queue_store import MemoryQueueStore
from tests.helpers import FakeLookup, FakeScheduler

JAPAN = RegionBounds(north=45.7, south=24.0, east=154.0, west=122.0)


@pytest.fixture(autouse=True)
def _fresh_settings() -> Generator[None, None, None]:
    """Never leak cached settings between tests."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        ENVIRONMENT="dev",
        QUEUE_BACKEND="memory",
        DATABASE_URL="",
        GOOGLE_MAPS_API_KEY=None,
        START_WORKERS=False,
    )


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def store() -> MemoryQueueStore:
    return MemoryQueueStore()


@pytest.fixture
def queue_configs() -> Dict[QueueName, QueueConfig]:
    return {
        queue: QueueConfig(
            concurrency=1,
            max_attempts=3,
            initial_backoff_seconds=1.0,
            remove_on_complete=None,
        )
        for queue in QueueName
    }


@pytest.fixture
def orchestrator(
    store: MemoryQueueStore,
    queue_configs: Dict[QueueName, QueueConfig],
    scheduler: FakeScheduler,
) -> JobQueueOrchestrator:
    return JobQueueOrchestrator(store, queue_configs, scheduler, poll_interval=0.01)


@pytest.fixture
def validator() -> ValidationService:
    return ValidationService(JAPAN)


@pytest.fixture
def lookup() -> FakeLookup:
    return FakeLookup()


@pytest.fixture
def enrichment(lookup: FakeLookup, validator: ValidationService) -> EnrichmentService:
    return EnrichmentService(lookup, validator, max_parallel=2, max_photos=3, photo_max_width=800)


@pytest.fixture
def import_service(
    orchestrator: JobQueueOrchestrator,
    validator: ValidationService,
    scheduler: FakeScheduler,
) -> ImportService:
    holder: Dict[str, ImportService] = {}

    async def dispatch(item):
        return await holder["service"].dispatch(item)

    accumulator = BatchAccumulator(
        dispatch, scheduler, batch_size=4, batch_timeout=2.0, max_concurrent=2
    )
    holder["service"] = ImportService(orchestrator, validator, accumulator)
    return holder["service"]
