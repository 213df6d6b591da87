"""
Placeflow - Core Data Models

Pydantic models shared by the pipeline stages, the job queue and the API:
- Preview records flowing from the CSV parser through validation and enrichment
- The canonical Place entity produced by enrichment
- Queue jobs, job events, error records and metrics snapshots

Status fields are str enums so they serialize as plain strings in JSON and
in the queue store.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# Enums
# =============================================================================


class RecordStatus(str, Enum):
    """Lifecycle of a preview record."""

    PENDING = "pending"
    VALIDATED = "validated"
    INVALID = "invalid"
    ENRICHED = "enriched"
    FAILED = "failed"


class QueueName(str, Enum):
    """Closed set of durable queues known at startup."""

    IMPORT = "import"
    ENRICHMENT = "enrichment"
    IMAGE = "image"
    CONTENT = "content"


class JobState(str, Enum):
    """Queue job lifecycle state."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


class JobEventType(str, Enum):
    """Lifecycle events delivered to orchestrator observers."""

    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"


class ErrorKind(str, Enum):
    """Failure buckets used by the error classifier."""

    VALIDATION = "validation"
    EXTERNAL_SERVICE = "external_service"
    RATE_LIMIT = "rate_limit"
    INFRASTRUCTURE = "infrastructure"
    UNKNOWN = "unknown"


# =============================================================================
# Base Configuration
# =============================================================================


class FlexibleModel(BaseModel):
    """Base model that tolerates extra fields from clients and vendors."""

    model_config = ConfigDict(
        validate_assignment=True,
        extra="ignore",
        use_enum_values=False,
    )


# =============================================================================
# Place (canonical entity)
# =============================================================================


class PlaceImage(FlexibleModel):
    url: str
    source: str = "Google Places"
    is_cover: bool = False
    caption: Optional[str] = None


class OpeningPeriod(FlexibleModel):
    day: int = Field(..., ge=0, le=6)
    open: str
    close: str


class OpeningHours(FlexibleModel):
    periods: List[OpeningPeriod] = Field(default_factory=list)
    weekday_text: List[str] = Field(default_factory=list)


class Place(FlexibleModel):
    """Normalized place as persisted by the repository."""

    place_id: str = Field(..., min_length=1)
    name: str
    formatted_address: Optional[str] = None
    latitude: float
    longitude: float
    prefecture: Optional[str] = None
    city: Optional[str] = None
    types: List[str] = Field(default_factory=list)
    primary_type: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    rating: Optional[float] = None
    user_rating_count: Optional[int] = None
    price_level: Optional[str] = None
    opening_hours: Optional[OpeningHours] = None
    images: List[PlaceImage] = Field(default_factory=list)
    phone: Optional[str] = None
    website: Optional[str] = None
    google_maps_uri: Optional[str] = None
    business_status: Optional[str] = None
    source: str = "Google Places"


# =============================================================================
# Preview Records
# =============================================================================


class EnrichmentResult(FlexibleModel):
    success: bool = False
    place_id: Optional[str] = None
    place: Optional[Place] = None
    error: Optional[str] = None


class PreviewRecord(FlexibleModel):
    """In-flight candidate entity between raw CSV row and persisted Place."""

    original: Dict[str, str] = Field(default_factory=dict)
    status: RecordStatus = RecordStatus.PENDING
    enriched: Optional[EnrichmentResult] = None
    errors: List[str] = Field(default_factory=list)

    @property
    def title(self) -> str:
        return (self.original.get("Title") or "").strip()

    def mark_failed(self, reason: str) -> None:
        self.status = RecordStatus.FAILED
        self.errors = [*self.errors, reason]
        enriched = self.enriched or EnrichmentResult()
        self.enriched = enriched.model_copy(update={"success": False, "error": reason})


class StageStats(BaseModel):
    total: int = 0
    success: int = 0
    failed: int = 0


class StageOutcome(BaseModel):
    """Aggregate result of a validate or enrich call."""

    results: List[PreviewRecord]
    stats: StageStats


def summarize(records: List[PreviewRecord], *success: RecordStatus) -> StageStats:
    """Count records in a `success` status; invalid and failed records are failures."""
    stats = StageStats(total=len(records))
    for record in records:
        if record.status in success:
            stats.success += 1
        elif record.status in (RecordStatus.INVALID, RecordStatus.FAILED):
            stats.failed += 1
    return stats


# =============================================================================
# Queue
# =============================================================================


class QueueJob(BaseModel):
    """A unit of work held by the durable queue store."""

    model_config = ConfigDict(validate_assignment=True)

    id: str
    queue_name: QueueName
    data: Dict[str, Any] = Field(default_factory=dict)
    state: JobState = JobState.WAITING
    attempts_made: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    timestamp: float
    ready_at: Optional[float] = None
    processed_on: Optional[float] = None
    finished_on: Optional[float] = None
    failed_reason: Optional[str] = None


@dataclass(frozen=True)
class BatchItem:
    """Opaque unit queued for grouped execution."""

    id: str
    payload: Dict[str, Any]


@dataclass(frozen=True)
class JobEvent:
    """Orchestrator lifecycle notification."""

    type: JobEventType
    job: QueueJob
    timestamp: float
    error: Optional[BaseException] = None
    duration_seconds: Optional[float] = None
    delay_seconds: Optional[float] = None

    @property
    def queue_name(self) -> QueueName:
        return self.job.queue_name


# =============================================================================
# Monitoring
# =============================================================================


class ErrorRecord(BaseModel):
    """Append-only record of one failed job attempt."""

    model_config = ConfigDict(frozen=True)

    id: str
    queue_name: str
    kind: ErrorKind
    message: str
    error_type: str
    timestamp: float
    job_id: Optional[str] = None


class MetricsSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    queue_name: str
    processed: int
    failed: int
    active: int
    waiting: int
    delayed: int
    throughput: int
    latency: float
    error_rate: float
    timestamp: float


class AlertSignal(BaseModel):
    model_config = ConfigDict(frozen=True)

    active: bool
    error_rate: float
    threshold: float
    window_seconds: float
    timestamp: float
