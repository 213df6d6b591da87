"""
Placeflow - Monitoring Router

Read-only views over the error classifier, the metrics collector and the
queue store.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from ..context import AppContext, get_context
from ..monitors.metrics_collector import ALL_QUEUES
from ..monitors.store_health import StoreHealth, get_store_health

router = APIRouter(prefix="/api/v1/monitoring", tags=["Monitoring"])


@router.get("/errors", summary="Error statistics and alert state")
async def error_stats(context: AppContext = Depends(get_context)) -> Dict[str, Any]:
    return context.error_classifier.get_error_stats()


@router.get("/metrics", summary="Queue metrics series")
async def metrics(
    queue_name: str = Query(ALL_QUEUES, description='Queue name or "all"'),
    duration: Optional[float] = Query(None, gt=0, description="Only the last N seconds"),
    context: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    series = context.metrics.get_metrics(queue_name, duration)
    if isinstance(series, dict):
        return {
            "metrics": {
                name: [s.model_dump() for s in snapshots] for name, snapshots in series.items()
            }
        }
    snapshots: List[Dict[str, Any]] = [s.model_dump() for s in series]
    return {"metrics": {queue_name: snapshots}}


@router.get("/store", response_model=StoreHealth, summary="Queue store health")
async def store_health(context: AppContext = Depends(get_context)) -> StoreHealth:
    return await get_store_health(context.store)
