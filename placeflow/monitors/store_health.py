"""
Placeflow - Queue Store Health

Backing-store health for the monitoring API: memory, connected clients,
operations per second and uptime. A store that cannot answer is reported as
disconnected rather than failing the request.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..workers.queue_store import QueueStore

logger = logging.getLogger(__name__)


class StoreHealth(BaseModel):
    backend: str
    connected: bool
    memory: Dict[str, Any] = Field(default_factory=dict)
    connected_clients: int = 0
    ops_per_sec: float = 0.0
    uptime_seconds: float = 0.0
    error: Optional[str] = None


async def get_store_health(store: QueueStore) -> StoreHealth:
    backend = getattr(store, "backend", type(store).__name__)
    try:
        return StoreHealth.model_validate(await store.health())
    except Exception as e:
        logger.warning(f"Queue store health check failed: {type(e).__name__}: {e}")
        return StoreHealth(backend=backend, connected=False, error=f"{type(e).__name__}: {e}"[:200])
