"""
Placeflow - Validation Service

Structural and geographic checks on preview records. Pure and synchronous:
no network, no store, so the job queue never needs to retry it.

Rules per record:
- Title is required.
- URL, when present, must be an absolute http(s) URL.
- Coordinates come from the optional Latitude/Longitude columns, else from
  the "@lat,lng" segment of a Google Maps URL. When present they must be
  numeric, inside the global range, and then inside the configured region.

Every failing rule adds a reason; one bad record never stops the others.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from ..core.config import RegionBounds
from ..core.models import Place, PreviewRecord, RecordStatus, StageOutcome, summarize

logger = logging.getLogger(__name__)

URL_COORDINATES = re.compile(r"@(-?\d+(?:\.\d+)?),(-?\d+(?:\.\d+)?)")

PASS_THROUGH = (RecordStatus.ENRICHED, RecordStatus.FAILED)


def _field(record: PreviewRecord, name: str) -> str:
    return (record.original.get(name) or "").strip()


def extract_coordinates(record: PreviewRecord) -> Tuple[Optional[str], Optional[str]]:
    """Raw (lat, lng) strings from the columns, or from the URL when the columns are blank."""
    lat, lng = _field(record, "Latitude"), _field(record, "Longitude")
    if lat or lng:
        return lat or None, lng or None
    match = URL_COORDINATES.search(_field(record, "URL"))
    if match:
        return match.group(1), match.group(2)
    return None, None


class ValidationService:
    """Validates preview records and enriched places against a region."""

    def __init__(self, region: RegionBounds) -> None:
        self.region = region

    def check_coordinates(self, latitude: float, longitude: float) -> List[str]:
        if not (-90 <= latitude <= 90) or not (-180 <= longitude <= 180):
            return [f"Coordinates out of range: {latitude}, {longitude}"]
        if not self.region.contains(latitude, longitude):
            return [f"Location outside the supported region: {latitude}, {longitude}"]
        return []

    def check_record(self, record: PreviewRecord) -> List[str]:
        reasons: List[str] = []

        if not record.title:
            reasons.append("Title is required")

        url = _field(record, "URL")
        if url:
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                reasons.append(f"Invalid URL: {url}")

        raw_lat, raw_lng = extract_coordinates(record)
        if raw_lat is not None or raw_lng is not None:
            if raw_lat is None or raw_lng is None:
                reasons.append("Latitude and Longitude must be provided together")
            else:
                try:
                    latitude, longitude = float(raw_lat), float(raw_lng)
                except ValueError:
                    reasons.append(f"Coordinates are not numeric: {raw_lat}, {raw_lng}")
                else:
                    reasons.extend(self.check_coordinates(latitude, longitude))

        return reasons

    def check_place(self, place: Place) -> List[str]:
        """Reasons an enriched place cannot be accepted (empty when fine)."""
        reasons = self.check_coordinates(place.latitude, place.longitude)
        if not place.name.strip():
            reasons.append("Place has no name")
        return reasons

    def validate_record(self, record: PreviewRecord) -> PreviewRecord:
        if record.status in PASS_THROUGH:
            return record
        reasons = self.check_record(record)
        if reasons:
            record.status = RecordStatus.INVALID
            record.errors = reasons
        else:
            record.status = RecordStatus.VALIDATED
            record.errors = []
        return record

    def validate(self, records: Iterable[PreviewRecord]) -> StageOutcome:
        results = [self.validate_record(r) for r in records]
        stats = summarize(results, RecordStatus.VALIDATED, RecordStatus.ENRICHED)
        logger.info(
            f"Validated {stats.total} record(s): {stats.success} ok, {stats.failed} rejected",
            extra={"count": stats.total},
        )
        return StageOutcome(results=results, stats=stats)
