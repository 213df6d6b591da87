"""
Placeflow - Core Module

Configuration, data models, error taxonomy, logging and the scheduler.
"""

from .config import QueueConfig, RegionBounds, Settings, get_settings, reset_settings
from .errors import (
    ExternalServiceError,
    InfrastructureError,
    JobNotFoundError,
    PlaceflowError,
    PlaceNotFoundError,
    RateLimitError,
    RecordValidationError,
    StructuralError,
    UnknownQueueError,
    setup_error_handlers,
)
from .scheduler import AsyncioScheduler, Scheduler

__all__ = [
    # Config
    "QueueConfig",
    "RegionBounds",
    "Settings",
    "get_settings",
    "reset_settings",
    # Errors
    "PlaceflowError",
    "StructuralError",
    "RecordValidationError",
    "ExternalServiceError",
    "RateLimitError",
    "PlaceNotFoundError",
    "InfrastructureError",
    "UnknownQueueError",
    "JobNotFoundError",
    "setup_error_handlers",
    # Scheduling
    "AsyncioScheduler",
    "Scheduler",
]
