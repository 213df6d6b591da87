"""
Placeflow - Import Service

Entry point of the pipeline: parse -> validate -> batch dispatch of one
enrichment job per valid record.

The whole file is parsed and header-checked before anything is enqueued, so
a StructuralError leaves the queues untouched. Enrichment jobs get ids
derived from the import id and the row position, which makes re-running
the same import (a retried import job) an idempotent enqueue.

Stats:
    total      records parsed
    processed  valid records handed to the enrichment queue
    failed     invalid records plus records that could not be dispatched
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from ..core.errors import InfrastructureError, StructuralError
from ..core.models import BatchItem, PreviewRecord, QueueJob, QueueName, RecordStatus
from ..workers.batch import BatchAccumulator, BatchEvent, BatchEventType
from ..workers.orchestrator import JobQueueOrchestrator
from . import record_parser
from .validation_service import ValidationService

logger = logging.getLogger(__name__)


class ImportStats(BaseModel):
    total: int = 0
    processed: int = 0
    failed: int = 0


@dataclass
class ImportResult:
    import_id: str
    stats: ImportStats
    previews: List[PreviewRecord]
    job_ids: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return (
            f"Imported {self.stats.total} record(s): {self.stats.processed} queued "
            f"for enrichment, {self.stats.failed} failed"
        )


def decode_upload(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise StructuralError("File is not valid UTF-8") from e


def enrichment_job_id(import_id: str, index: int) -> str:
    return f"{import_id}-{index:05d}"


class ImportService:
    """Runs imports and dispatches enrichment work through a BatchAccumulator."""

    def __init__(
        self,
        orchestrator: JobQueueOrchestrator,
        validator: ValidationService,
        accumulator: BatchAccumulator,
    ) -> None:
        self.orchestrator = orchestrator
        self.validator = validator
        self.accumulator = accumulator
        self._pending: Dict[str, asyncio.Future[BatchEvent]] = {}
        accumulator.add_listener(self._on_batch_event)

    async def dispatch(self, item: BatchItem) -> QueueJob:
        """BatchAccumulator processor: one enrichment job per item."""
        return await self.orchestrator.enqueue(QueueName.ENRICHMENT, item.payload, job_id=item.id)

    def _on_batch_event(self, event: BatchEvent) -> None:
        future = self._pending.pop(event.item.id, None)
        if future is not None and not future.done():
            future.set_result(event)

    async def import_file(
        self,
        content: str | bytes,
        import_id: Optional[str] = None,
        enqueue_enrichment: bool = True,
    ) -> ImportResult:
        """
        Import a CSV file synchronously.

        Raises:
            StructuralError: the file failed the header/shape check
            InfrastructureError: the queue store rejected a dispatch
        """
        import_id = import_id or str(uuid.uuid4())
        records = record_parser.parse(content)
        outcome = self.validator.validate(records)
        stats = ImportStats(total=len(records), failed=outcome.stats.failed)
        result = ImportResult(import_id=import_id, stats=stats, previews=outcome.results)

        valid = [
            (index, r) for index, r in enumerate(outcome.results) if r.status == RecordStatus.VALIDATED
        ]
        if not enqueue_enrichment:
            stats.processed = len(valid)
            return result

        loop = asyncio.get_running_loop()
        futures: List[asyncio.Future[BatchEvent]] = []
        for index, record in valid:
            item = BatchItem(
                id=enrichment_job_id(import_id, index),
                payload={"import_id": import_id, "record": record.model_dump(mode="json")},
            )
            future: asyncio.Future[BatchEvent] = loop.create_future()
            self._pending[item.id] = future
            futures.append(future)
            await self.accumulator.add_to_batch(item)
        await self.accumulator.flush()

        events = await asyncio.gather(*futures)
        infrastructure_error: Optional[BaseException] = None
        for event, (_, record) in zip(events, valid):
            if event.type == BatchEventType.COMPLETED:
                stats.processed += 1
                result.job_ids.append(event.item.id)
                continue
            stats.failed += 1
            record.mark_failed(f"Could not queue enrichment: {event.error}")
            if isinstance(event.error, InfrastructureError) and infrastructure_error is None:
                infrastructure_error = event.error

        if infrastructure_error is not None:
            raise infrastructure_error

        logger.info(result.message, extra={"count": stats.total})
        return result

    async def enqueue_import(self, content: bytes, filename: str) -> QueueJob:
        """
        Background import: check the file shape now, do the work in an
        import job.

        Raises:
            StructuralError: before any job is enqueued
        """
        text = decode_upload(content)
        record_parser.parse(text)
        job = await self.orchestrator.enqueue(
            QueueName.IMPORT, {"content": text, "filename": filename}
        )
        return job

    async def run_import_job(self, job: QueueJob) -> Dict[str, Any]:
        """Import-queue handler body. The job id doubles as the import id."""
        result = await self.import_file(job.data["content"], import_id=job.id)
        return result.stats.model_dump()
