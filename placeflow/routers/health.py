"""
Placeflow - Health Check Router

Liveness probe for load balancers. Returns 200 whenever the process is up;
`queue_store` reports whether the backing store answers.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request
from pydantic import BaseModel

from .. import __version__
from ..monitors.store_health import get_store_health

router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    environment: str
    version: str
    queue_store: str


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    context = getattr(request.app.state, "context", None)
    queue_store = "starting"
    environment = "unknown"
    if context is not None:
        environment = context.settings.ENVIRONMENT
        if context.is_open:
            store = await get_store_health(context.store)
            queue_store = "ok" if store.connected else "unavailable"

    return HealthResponse(
        status="ok" if queue_store in ("ok", "starting") else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        environment=environment,
        version=__version__,
        queue_store=queue_store,
    )
