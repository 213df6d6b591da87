"""
Placeflow - Places Router

Import, validation and enrichment entrypoints.

Endpoints:
- POST /api/v1/places/import                 CSV upload, synchronous or background
- POST /api/v1/places/validate               validate preview records
- POST /api/v1/places/enrich                 enrich preview records
- POST /api/v1/places/{place_id}/enrich-image queue a cover image refresh

Aggregate endpoints always answer with stats; only structural and
infrastructure failures turn into an error response.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Dict, List

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..context import AppContext, get_context
from ..core.models import PreviewRecord, QueueName, StageStats
from ..services.import_service import ImportStats

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/places", tags=["Places"])


# =============================================================================
# Request / Response Models
# =============================================================================


class PreviewsRequest(BaseModel):
    previews: List[PreviewRecord] = Field(default_factory=list)


class StageResponse(BaseModel):
    results: List[PreviewRecord]
    stats: StageStats


class ImportResponse(BaseModel):
    import_id: str
    stats: ImportStats
    previews: List[PreviewRecord]
    message: str


class JobAcceptedResponse(BaseModel):
    job_id: str
    queue_name: str
    status: str


# =============================================================================
# Endpoints
# =============================================================================


async def _read_upload(file: UploadFile, max_bytes: int) -> bytes:
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File must be a CSV")

    content = await file.read(max_bytes + 1)
    if len(content) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the {max_bytes} byte limit",
        )
    if not content.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File is empty")
    return content


@router.post(
    "/import",
    response_model=ImportResponse,
    summary="Import a places CSV",
    responses={
        202: {"model": JobAcceptedResponse, "description": "Import queued"},
        400: {"description": "Invalid file or missing headers"},
        413: {"description": "File too large"},
        503: {"description": "Queue store unavailable"},
    },
)
async def import_places(
    file: Annotated[UploadFile, File(description="CSV export with Title, Note, URL, Comment")],
    background: Annotated[bool, Query(description="Run the import as a queued job")] = False,
    context: AppContext = Depends(get_context),
) -> Any:
    content = await _read_upload(file, context.settings.IMPORT_MAX_FILE_BYTES)

    if background:
        job = await context.import_service.enqueue_import(content, file.filename or "upload.csv")
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=JobAcceptedResponse(
                job_id=job.id, queue_name=job.queue_name.value, status=job.state.value
            ).model_dump(),
        )

    logger.info(f"Import upload: {file.filename} ({len(content)} bytes)")
    result = await context.import_service.import_file(content)
    return ImportResponse(
        import_id=result.import_id,
        stats=result.stats,
        previews=result.previews,
        message=result.message,
    )


@router.post("/validate", response_model=StageResponse, summary="Validate preview records")
async def validate_places(
    body: PreviewsRequest,
    context: AppContext = Depends(get_context),
) -> StageResponse:
    outcome = context.validator.validate(body.previews)
    return StageResponse(results=outcome.results, stats=outcome.stats)


@router.post("/enrich", response_model=StageResponse, summary="Enrich preview records")
async def enrich_places(
    body: PreviewsRequest,
    context: AppContext = Depends(get_context),
) -> StageResponse:
    outcome = await context.enrichment.enrich(body.previews)
    return StageResponse(results=outcome.results, stats=outcome.stats)


@router.post(
    "/{place_id}/enrich-image",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a cover image refresh",
)
async def enrich_place_image(
    place_id: str,
    context: AppContext = Depends(get_context),
) -> JobAcceptedResponse:
    payload: Dict[str, Any] = {"place_id": place_id}
    job = await context.orchestrator.enqueue(QueueName.IMAGE, payload)
    return JobAcceptedResponse(job_id=job.id, queue_name=job.queue_name.value, status=job.state.value)
