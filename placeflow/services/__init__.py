"""
Placeflow - Pipeline Services
"""

from .enrichment_service import EnrichmentService
from .import_service import ImportResult, ImportService, ImportStats
from .place_repository import MemoryPlaceRepository, PlaceRepository, PostgresPlaceRepository
from .validation_service import ValidationService

__all__ = [
    "EnrichmentService",
    "ImportService",
    "ImportResult",
    "ImportStats",
    "MemoryPlaceRepository",
    "PlaceRepository",
    "PostgresPlaceRepository",
    "ValidationService",
]
