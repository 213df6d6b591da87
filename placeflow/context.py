"""
Placeflow - Application Context

Builds and owns every long-lived component of a process (API or worker
runner): scheduler, database pool, queue store, place lookup, services,
orchestrator and monitors.

Startup order:
    pool -> queue store -> place repository -> orchestrator workers -> metrics
    -> queue maintenance

Shutdown runs in reverse. In-flight jobs get SHUTDOWN_TIMEOUT_SECONDS to
finish before they are cancelled.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Request
from psycopg_pool import AsyncConnectionPool

from .core.config import Settings
from .core.errors import InfrastructureError
from .core.models import BatchItem
from .core.scheduler import AsyncioScheduler, Scheduler
from .db import close_pool, open_pool
from .monitors.error_classifier import ErrorClassifier
from .monitors.metrics_collector import MetricsCollector
from .services.enrichment_service import EnrichmentService
from .services.import_service import ImportService
from .services.place_repository import (
    MemoryPlaceRepository,
    PlaceRepository,
    PostgresPlaceRepository,
)
from .services.validation_service import ValidationService
from .vendors.base import PlaceLookup
from .vendors.google_places import GooglePlacesClient
from .vendors.mock_places import MockPlaces
from .workers.batch import BatchAccumulator
from .workers.handlers import JobHandlers
from .workers.maintenance import QueueMaintenance
from .workers.orchestrator import JobQueueOrchestrator
from .workers.queue_store import MemoryQueueStore, PostgresQueueStore, QueueStore

logger = logging.getLogger(__name__)


def build_lookup(settings: Settings) -> PlaceLookup:
    """Google Places when a key is configured, the offline mock otherwise."""
    if not settings.GOOGLE_MAPS_API_KEY:
        if settings.is_production:
            logger.warning("GOOGLE_MAPS_API_KEY is not set; using mock place data")
        return MockPlaces()
    return GooglePlacesClient(
        api_key=settings.GOOGLE_MAPS_API_KEY,
        base_url=settings.PLACES_BASE_URL,
        language=settings.PLACES_LANGUAGE,
        timeout=settings.PLACES_TIMEOUT_SECONDS,
        max_retries=settings.PLACES_MAX_RETRIES,
        retry_delay=settings.PLACES_RETRY_DELAY_SECONDS,
        region=settings.region_bounds,
    )


class AppContext:
    """Component graph for one process."""

    def __init__(
        self,
        settings: Settings,
        *,
        scheduler: Optional[Scheduler] = None,
        lookup: Optional[PlaceLookup] = None,
        store: Optional[QueueStore] = None,
        repository: Optional[PlaceRepository] = None,
    ) -> None:
        self.settings = settings
        self.scheduler: Scheduler = scheduler or AsyncioScheduler()
        self.pool: Optional[AsyncConnectionPool] = None
        self._store = store
        self._repository = repository
        self.lookup: PlaceLookup = lookup or build_lookup(settings)
        self.validator = ValidationService(settings.region_bounds)
        self.enrichment = EnrichmentService(
            self.lookup,
            self.validator,
            max_parallel=settings.PLACES_MAX_PARALLEL_REQUESTS,
            max_photos=settings.PLACES_MAX_PHOTOS,
            photo_max_width=settings.PLACES_PHOTO_MAX_WIDTH,
        )
        self.error_classifier = ErrorClassifier(
            self.scheduler,
            alert_threshold=settings.ALERT_THRESHOLD,
            alert_window_seconds=settings.ALERT_WINDOW_SECONDS,
            recent_limit=settings.RECENT_ERRORS_LIMIT,
        )

        self._orchestrator: Optional[JobQueueOrchestrator] = None
        self._import_service: Optional[ImportService] = None
        self._metrics: Optional[MetricsCollector] = None
        self.accumulator: Optional[BatchAccumulator] = None
        self.handlers: Optional[JobHandlers] = None
        self.maintenance: Optional[QueueMaintenance] = None
        self._opened = False

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def store(self) -> QueueStore:
        if self._store is None:
            raise RuntimeError("AppContext is not open")
        return self._store

    @property
    def repository(self) -> PlaceRepository:
        if self._repository is None:
            raise RuntimeError("AppContext is not open")
        return self._repository

    @property
    def orchestrator(self) -> JobQueueOrchestrator:
        if self._orchestrator is None:
            raise RuntimeError("AppContext is not open")
        return self._orchestrator

    @property
    def import_service(self) -> ImportService:
        if self._import_service is None:
            raise RuntimeError("AppContext is not open")
        return self._import_service

    @property
    def metrics(self) -> MetricsCollector:
        if self._metrics is None:
            raise RuntimeError("AppContext is not open")
        return self._metrics

    async def _open_storage(self) -> None:
        settings = self.settings
        if settings.QUEUE_BACKEND == "postgres" and (self._store is None or self._repository is None):
            self.pool = await open_pool(
                settings.DATABASE_URL,
                min_size=settings.DB_POOL_MIN_SIZE,
                max_size=settings.DB_POOL_MAX_SIZE,
            )

        if self._store is None:
            self._store = PostgresQueueStore(self.pool) if self.pool else MemoryQueueStore()
        await self._store.open()

        if self._repository is None:
            if self.pool is not None:
                repository = PostgresPlaceRepository(self.pool)
                await repository.ensure_schema()
                self._repository = repository
            else:
                self._repository = MemoryPlaceRepository()

        logger.info(f"Queue store ready ({getattr(self._store, 'backend', 'custom')})")

    def _wire(self) -> None:
        settings = self.settings
        orchestrator = JobQueueOrchestrator(
            self.store,
            settings.queue_configs(),
            self.scheduler,
            poll_interval=settings.QUEUE_POLL_INTERVAL_SECONDS,
        )

        async def dispatch(item: BatchItem) -> object:
            return await self.import_service.dispatch(item)

        accumulator = BatchAccumulator(
            dispatch,
            self.scheduler,
            batch_size=settings.BATCH_SIZE,
            batch_timeout=settings.BATCH_TIMEOUT_SECONDS,
            max_concurrent=settings.BATCH_MAX_CONCURRENT,
        )
        self._import_service = ImportService(orchestrator, self.validator, accumulator)
        self.handlers = JobHandlers(self._import_service, self.enrichment, self.repository)
        self.handlers.register(orchestrator)

        metrics = MetricsCollector(
            orchestrator,
            self.scheduler,
            collect_interval=settings.METRICS_COLLECT_INTERVAL_SECONDS,
            retention_seconds=settings.METRICS_RETENTION_SECONDS,
        )
        self.maintenance = QueueMaintenance(
            orchestrator,
            self.scheduler,
            interval_seconds=settings.QUEUE_CLEANUP_INTERVAL_SECONDS,
            retention_seconds=settings.QUEUE_RETENTION_SECONDS,
            max_completed=settings.QUEUE_MAX_COMPLETED_JOBS,
            max_failed=settings.QUEUE_MAX_FAILED_JOBS,
            batch_limit=settings.QUEUE_CLEANUP_BATCH_LIMIT,
        )
        orchestrator.add_listener(self.error_classifier.on_job_event)
        orchestrator.add_listener(metrics.on_job_event)

        self._orchestrator = orchestrator
        self._metrics = metrics
        self.accumulator = accumulator

    async def open(self, start_workers: Optional[bool] = None) -> "AppContext":
        """
        Open storage, wire services and optionally start the queue workers.

        Raises:
            InfrastructureError: the database stayed unreachable
        """
        if self._opened:
            return self
        await self._open_storage()
        self._wire()

        if self.settings.START_WORKERS if start_workers is None else start_workers:
            await self.orchestrator.start()
        self.metrics.start()
        if self.maintenance is not None:
            self.maintenance.start()
        self._opened = True
        logger.info("Placeflow context opened")
        return self

    async def close(self) -> None:
        if not self._opened:
            return
        self._opened = False

        if self._metrics is not None:
            self._metrics.stop()
        self.error_classifier.stop()
        if self.maintenance is not None:
            self.maintenance.stop()
        if self.accumulator is not None:
            try:
                await self.accumulator.drain()
            except Exception:
                logger.exception("Pending batch could not be dispatched on shutdown")
        if self._orchestrator is not None:
            await self._orchestrator.close(timeout=self.settings.SHUTDOWN_TIMEOUT_SECONDS)
        await self.lookup.aclose()
        if isinstance(self.scheduler, AsyncioScheduler):
            await self.scheduler.shutdown()
        await close_pool(self.pool)
        self.pool = None
        logger.info("Placeflow context closed")


def get_context(request: Request) -> AppContext:
    """FastAPI dependency: the AppContext opened by the app lifespan."""
    context: Optional[AppContext] = getattr(request.app.state, "context", None)
    if context is None or not context.is_open:
        raise InfrastructureError("Service is starting up")
    return context
