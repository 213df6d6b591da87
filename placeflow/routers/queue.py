"""
Placeflow - Queue Management Router

Operator view of the job queues: paginated listing, counts, delete, retry,
pause and resume. All queue state changes go through the orchestrator.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from ..context import AppContext, get_context
from ..core.models import JobState, QueueJob, QueueName
from ..workers.orchestrator import JobQueueOrchestrator, parse_queue_name

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/queue", tags=["Queue"])


class JobsPage(BaseModel):
    queue_name: str
    jobs: List[QueueJob]
    total: int
    page: int
    limit: int
    counts: Dict[str, int]


class QueueStatus(BaseModel):
    is_paused: bool
    counts: Dict[str, int]
    total_enqueued: int
    removed: int


class JobActionResponse(BaseModel):
    job_id: str
    queue_name: str
    status: str


def _orchestrator(context: AppContext = Depends(get_context)) -> JobQueueOrchestrator:
    return context.orchestrator


def _counts(counts: Dict[JobState, int]) -> Dict[str, int]:
    return {state.value: count for state, count in counts.items()}


@router.get("/jobs", response_model=JobsPage, summary="List jobs")
async def list_jobs(
    queue_name: str = Query(..., description="Queue to list"),
    status_filter: Optional[JobState] = Query(None, alias="status", description="Filter by state"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    orchestrator: JobQueueOrchestrator = Depends(_orchestrator),
) -> JobsPage:
    name = parse_queue_name(queue_name)
    jobs, total = await orchestrator.get_jobs(name, status_filter, page, limit)
    counts = await orchestrator.get_job_counts(name)
    return JobsPage(
        queue_name=name.value,
        jobs=jobs,
        total=total,
        page=page,
        limit=limit,
        counts=_counts(counts),
    )


@router.get("/status", response_model=Dict[str, QueueStatus], summary="Queue status")
async def queue_status(
    queue_name: Optional[str] = Query(None, description="Single queue; all queues when omitted"),
    orchestrator: JobQueueOrchestrator = Depends(_orchestrator),
) -> Dict[str, QueueStatus]:
    names = [parse_queue_name(queue_name)] if queue_name else list(QueueName)
    result: Dict[str, QueueStatus] = {}
    for name in names:
        result[name.value] = QueueStatus(
            is_paused=await orchestrator.is_paused(name),
            counts=_counts(await orchestrator.get_job_counts(name)),
            total_enqueued=await orchestrator.get_total_enqueued(name),
            removed=await orchestrator.get_removed(name),
        )
    return result


@router.delete("/jobs", response_model=JobActionResponse, summary="Delete a job")
async def delete_job(
    job_id: str = Query(...),
    queue_name: str = Query(...),
    orchestrator: JobQueueOrchestrator = Depends(_orchestrator),
) -> JobActionResponse:
    name = parse_queue_name(queue_name)
    await orchestrator.delete_job(name, job_id)
    return JobActionResponse(job_id=job_id, queue_name=name.value, status="deleted")


@router.post(
    "/jobs/{job_id}/retry",
    response_model=JobActionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Retry a failed job",
)
async def retry_job(
    job_id: str,
    queue_name: str = Query(...),
    orchestrator: JobQueueOrchestrator = Depends(_orchestrator),
) -> JobActionResponse:
    job = await orchestrator.retry_job(queue_name, job_id)
    return JobActionResponse(job_id=job.id, queue_name=job.queue_name.value, status=job.state.value)


@router.post("/{queue_name}/pause", response_model=QueueStatus, summary="Pause a queue")
async def pause_queue(
    queue_name: str,
    orchestrator: JobQueueOrchestrator = Depends(_orchestrator),
) -> QueueStatus:
    name = parse_queue_name(queue_name)
    await orchestrator.pause(name)
    return QueueStatus(
        is_paused=True,
        counts=_counts(await orchestrator.get_job_counts(name)),
        total_enqueued=await orchestrator.get_total_enqueued(name),
        removed=await orchestrator.get_removed(name),
    )


@router.post("/{queue_name}/resume", response_model=QueueStatus, summary="Resume a queue")
async def resume_queue(
    queue_name: str,
    orchestrator: JobQueueOrchestrator = Depends(_orchestrator),
) -> QueueStatus:
    name = parse_queue_name(queue_name)
    await orchestrator.resume(name)
    return QueueStatus(
        is_paused=False,
        counts=_counts(await orchestrator.get_job_counts(name)),
        total_enqueued=await orchestrator.get_total_enqueued(name),
        removed=await orchestrator.get_removed(name),
    )
