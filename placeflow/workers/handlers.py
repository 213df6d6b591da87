"""
Placeflow - Queue Job Handlers

One coroutine per queue. A handler raises to fail the attempt; the
orchestrator decides between retry and final failure.

Queues:
    import      run a background CSV import (dispatches enrichment jobs)
    enrichment  enrich one preview record and upsert the place
    image       refresh the cover image of a persisted place
    content     no handler; jobs wait until one is registered
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..core.errors import RecordValidationError
from ..core.models import Place, PreviewRecord, QueueJob, QueueName, RecordStatus
from ..services.enrichment_service import EnrichmentService
from ..services.import_service import ImportService
from ..services.place_repository import PlaceRepository
from .orchestrator import JobHandler, JobQueueOrchestrator

logger = logging.getLogger(__name__)


def extract_record(job: QueueJob) -> PreviewRecord:
    raw = job.data.get("record")
    if not isinstance(raw, dict):
        raise RecordValidationError([f"Job {job.id} carries no record"])
    return PreviewRecord.model_validate(raw)


def extract_place_id(job: QueueJob) -> str:
    place_id = str(job.data.get("place_id") or "").strip()
    if not place_id:
        raise RecordValidationError([f"Job {job.id} carries no place_id"])
    return place_id


class JobHandlers:
    """Queue handlers bound to the services they drive."""

    def __init__(
        self,
        import_service: ImportService,
        enrichment: EnrichmentService,
        repository: PlaceRepository,
    ) -> None:
        self.import_service = import_service
        self.enrichment = enrichment
        self.repository = repository

    async def handle_import(self, job: QueueJob) -> Dict[str, Any]:
        return await self.import_service.run_import_job(job)

    async def handle_enrichment(self, job: QueueJob) -> Optional[str]:
        record = extract_record(job)
        await self.enrichment.enrich_record(record, raise_on_failure=True)
        place = record.enriched.place if record.enriched else None
        if record.status != RecordStatus.ENRICHED or place is None:
            logger.info(f"Record '{record.title}' skipped in state {record.status.value}")
            return None
        await self.repository.upsert(place)
        logger.info("Place saved", extra={"place_id": place.place_id})
        return place.place_id

    async def handle_image(self, job: QueueJob) -> Optional[str]:
        place_id = extract_place_id(job)
        cover = await self.enrichment.fetch_cover_image(place_id)
        if cover is None:
            logger.info("Place has no photos", extra={"place_id": place_id})
            return None

        place: Optional[Place] = await self.repository.find(place_id)
        if place is None:
            place = await self.enrichment.fetch_place(place_id)
        others = [
            img.model_copy(update={"is_cover": False}) for img in place.images if img.url != cover.url
        ]
        images = [cover, *others][: max(self.enrichment.max_photos, 1)]
        await self.repository.upsert(place.model_copy(update={"images": images}))
        logger.info("Cover image updated", extra={"place_id": place_id})
        return cover.url

    def as_mapping(self) -> Dict[QueueName, JobHandler]:
        return {
            QueueName.IMPORT: self.handle_import,
            QueueName.ENRICHMENT: self.handle_enrichment,
            QueueName.IMAGE: self.handle_image,
        }

    def register(self, orchestrator: JobQueueOrchestrator) -> None:
        for queue, handler in self.as_mapping().items():
            orchestrator.register_handler(queue, handler)
