"""
Placeflow - API Routers
"""

from .health import router as health_router
from .monitoring import router as monitoring_router
from .places import router as places_router
from .queue import router as queue_router

__all__ = ["health_router", "monitoring_router", "places_router", "queue_router"]
