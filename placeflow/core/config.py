"""
Placeflow - Core Config

Environment-driven settings for the API process and the worker runner.

Usage:
    from placeflow.core.config import get_settings

    settings = get_settings()
    settings.queue_configs()  # per-queue worker/retry policy

An empty DATABASE_URL (or QUEUE_BACKEND=memory) runs the queue and the place
repository in process memory. That mode is single-process only and loses
queued work on restart; production deployments must set QUEUE_BACKEND=postgres.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import QueueName

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegionBounds:
    """Bounding box a place must fall inside (degrees)."""

    north: float
    south: float
    east: float
    west: float

    def contains(self, latitude: float, longitude: float) -> bool:
        return self.south <= latitude <= self.north and self.west <= longitude <= self.east


@dataclass(frozen=True)
class QueueConfig:
    """Worker pool and retry policy for one queue."""

    concurrency: int = 2
    max_attempts: int = 3
    initial_backoff_seconds: float = 1.0
    remove_on_complete: int | None = 1000
    stalled_timeout_seconds: float = 600.0


class Settings(BaseSettings):
    """
    Application settings.

    Values come from os.environ, optionally seeded by a local .env file.
    Durations are expressed in seconds.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # ENVIRONMENT
    # =========================================================================

    ENVIRONMENT: Literal["dev", "staging", "prod"] = Field(default="dev")
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    LOG_JSON: bool = Field(
        default=False,
        description="Emit JSON log lines instead of colored console output",
    )

    # =========================================================================
    # QUEUE STORE
    # =========================================================================

    DATABASE_URL: str = Field(
        default="",
        description="Postgres connection string for the durable queue store",
    )
    QUEUE_BACKEND: Literal["memory", "postgres"] | None = Field(
        default=None,
        description="Queue store backend; inferred from DATABASE_URL when unset",
    )
    DB_POOL_MIN_SIZE: int = Field(default=1, ge=1)
    DB_POOL_MAX_SIZE: int = Field(default=10, ge=1)

    # =========================================================================
    # PLACE LOOKUP (Google Places API)
    # =========================================================================

    GOOGLE_MAPS_API_KEY: str | None = Field(default=None)
    PLACES_BASE_URL: str = Field(default="https://places.googleapis.com/v1")
    PLACES_LANGUAGE: str = Field(default="fr")
    PLACES_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    PLACES_MAX_RETRIES: int = Field(default=3, ge=1)
    PLACES_RETRY_DELAY_SECONDS: float = Field(default=1.0, ge=0)
    PLACES_MAX_PARALLEL_REQUESTS: int = Field(default=5, ge=1)
    PLACES_MAX_PHOTOS: int = Field(default=3, ge=0)
    PLACES_PHOTO_MAX_WIDTH: int = Field(default=1200, ge=1)

    REGION_NORTH: float = Field(default=45.7)
    REGION_SOUTH: float = Field(default=24.0)
    REGION_EAST: float = Field(default=154.0)
    REGION_WEST: float = Field(default=122.0)

    # =========================================================================
    # IMPORT & BATCHING
    # =========================================================================

    IMPORT_MAX_FILE_BYTES: int = Field(default=5 * 1024 * 1024, ge=1)
    BATCH_SIZE: int = Field(default=10, ge=1)
    BATCH_TIMEOUT_SECONDS: float = Field(default=2.0, gt=0)
    BATCH_MAX_CONCURRENT: int = Field(default=5, ge=1)

    # =========================================================================
    # QUEUE POLICY
    # =========================================================================

    QUEUE_DEFAULT_ATTEMPTS: int = Field(default=3, ge=1)
    QUEUE_INITIAL_BACKOFF_SECONDS: float = Field(default=1.0, ge=0)
    QUEUE_REMOVE_ON_COMPLETE: int | None = Field(
        default=1000,
        description="Completed jobs retained per queue; older ones are pruned",
    )
    QUEUE_STALLED_TIMEOUT_SECONDS: float = Field(default=600.0, gt=0)
    QUEUE_POLL_INTERVAL_SECONDS: float = Field(default=0.5, gt=0)
    IMPORT_CONCURRENCY: int = Field(default=1, ge=1)
    ENRICHMENT_CONCURRENCY: int = Field(default=3, ge=1)
    IMAGE_CONCURRENCY: int = Field(default=2, ge=1)
    CONTENT_CONCURRENCY: int = Field(default=2, ge=1)
    SHUTDOWN_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)
    QUEUE_CLEANUP_INTERVAL_SECONDS: float = Field(default=3600.0, gt=0)
    QUEUE_RETENTION_SECONDS: float = Field(
        default=7 * 86400.0,
        ge=0,
        description="Finished jobs older than this are cleaned by queue maintenance",
    )
    QUEUE_MAX_COMPLETED_JOBS: int = Field(default=1000, ge=0)
    QUEUE_MAX_FAILED_JOBS: int = Field(default=500, ge=0)
    QUEUE_CLEANUP_BATCH_LIMIT: int = Field(default=1000, ge=1)

    # =========================================================================
    # MONITORING
    # =========================================================================

    METRICS_COLLECT_INTERVAL_SECONDS: float = Field(default=5.0, gt=0)
    METRICS_RETENTION_SECONDS: float = Field(default=86400.0, gt=0)
    ALERT_THRESHOLD: float = Field(
        default=0.1,
        ge=0,
        le=1,
        description="Failed-attempt ratio over the alert window that raises an alert",
    )
    ALERT_WINDOW_SECONDS: float = Field(default=3600.0, gt=0)
    RECENT_ERRORS_LIMIT: int = Field(default=100, ge=1)

    # =========================================================================
    # SERVER
    # =========================================================================

    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8000)
    START_WORKERS: bool = Field(
        default=True,
        description="Run queue workers inside the API process",
    )

    @model_validator(mode="after")
    def _resolve_backend(self) -> "Settings":
        if self.QUEUE_BACKEND is None:
            self.QUEUE_BACKEND = "postgres" if self.DATABASE_URL else "memory"
        if self.QUEUE_BACKEND == "postgres" and not self.DATABASE_URL:
            raise ValueError("QUEUE_BACKEND=postgres requires DATABASE_URL")
        if self.REGION_SOUTH >= self.REGION_NORTH or self.REGION_WEST >= self.REGION_EAST:
            raise ValueError("REGION bounds are inverted")
        if self.QUEUE_BACKEND == "memory" and self.ENVIRONMENT == "prod":
            logger.warning("Running prod with the in-memory queue store; queued work is not durable")
        return self

    # =========================================================================
    # Derived helpers
    # =========================================================================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "prod"

    @property
    def region_bounds(self) -> RegionBounds:
        return RegionBounds(
            north=self.REGION_NORTH,
            south=self.REGION_SOUTH,
            east=self.REGION_EAST,
            west=self.REGION_WEST,
        )

    def queue_configs(self) -> dict[QueueName, QueueConfig]:
        """Build the per-queue policy table."""
        concurrency = {
            QueueName.IMPORT: self.IMPORT_CONCURRENCY,
            QueueName.ENRICHMENT: self.ENRICHMENT_CONCURRENCY,
            QueueName.IMAGE: self.IMAGE_CONCURRENCY,
            QueueName.CONTENT: self.CONTENT_CONCURRENCY,
        }
        return {
            name: QueueConfig(
                concurrency=concurrency[name],
                max_attempts=self.QUEUE_DEFAULT_ATTEMPTS,
                initial_backoff_seconds=self.QUEUE_INITIAL_BACKOFF_SECONDS,
                remove_on_complete=self.QUEUE_REMOVE_ON_COMPLETE,
                stalled_timeout_seconds=self.QUEUE_STALLED_TIMEOUT_SECONDS,
            )
            for name in QueueName
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
