"""
Placeflow - Enrichment Service

Resolves validated preview records against the place-lookup vendor and
normalizes the answer into the canonical Place.

Pipeline per record:
    1. pending records are validated first; invalid ones never hit the network
    2. place_id: existing enriched.place_id, else the URL's place_id= query
       parameter, else a free-text search on Title
    3. details lookup, photo URIs for at most max_photos images
    4. region check on the resulting place

A lookup failure marks only that record failed; the rest of the call goes on.
Vendor calls are capped at max_parallel concurrent requests.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import parse_qs, urlparse

from ..core.errors import (
    ExternalServiceError,
    PlaceNotFoundError,
    RateLimitError,
    RecordValidationError,
)
from ..core.models import (
    EnrichmentResult,
    OpeningHours,
    OpeningPeriod,
    Place,
    PlaceImage,
    PreviewRecord,
    RecordStatus,
    StageOutcome,
    summarize,
)
from ..vendors.base import PlaceLookup
from .validation_service import ValidationService

logger = logging.getLogger(__name__)

# Ordered: the first category whose types intersect the place's types wins.
CATEGORY_TYPES = (
    ("Restaurant", {"restaurant", "food"}),
    ("Hôtel", {"lodging", "hotel"}),
    ("Shopping", {"shopping_mall", "store", "clothing_store", "department_store", "market"}),
    ("Café & Bar", {"bar", "cafe", "night_club"}),
    ("Visite", {"tourist_attraction", "point_of_interest", "museum", "park"}),
)
DEFAULT_CATEGORY = "Visite"


def determine_category(types: Iterable[str]) -> str:
    lowered = {t.lower() for t in types}
    for category, mapped in CATEGORY_TYPES:
        if lowered & mapped:
            return category
    return DEFAULT_CATEGORY


def place_id_from_url(url: str) -> Optional[str]:
    if not url:
        return None
    values = parse_qs(urlparse(url).query).get("place_id")
    return values[0].strip() if values and values[0].strip() else None


def _address_part(components: List[Dict[str, Any]], kind: str) -> Optional[str]:
    for component in components or []:
        if kind in (component.get("types") or []):
            return component.get("longText") or component.get("long_name")
    return None


def _hhmm(point: Dict[str, Any] | None, default: str) -> str:
    if not point:
        return default
    return f"{int(point.get('hour', 0)):02d}{int(point.get('minute', 0)):02d}"


def _opening_hours(raw: Dict[str, Any] | None) -> Optional[OpeningHours]:
    if not raw:
        return None
    periods = [
        OpeningPeriod(
            day=int((p.get("open") or {}).get("day", 0)),
            open=_hhmm(p.get("open"), "0000"),
            close=_hhmm(p.get("close"), "2359"),
        )
        for p in raw.get("periods") or []
    ]
    return OpeningHours(periods=periods, weekday_text=list(raw.get("weekdayDescriptions") or []))


def build_place(
    details: Dict[str, Any],
    images: List[PlaceImage],
    source: str,
    fallback_name: str = "",
) -> Place:
    """Normalize a Places API (v1) details payload."""
    location = details.get("location") or {}
    if location.get("latitude") is None or location.get("longitude") is None:
        raise RecordValidationError([f"Place {details.get('id')} has no location"])

    types = list(details.get("types") or [])
    components = details.get("addressComponents") or []
    return Place(
        place_id=details["id"],
        name=(details.get("displayName") or {}).get("text") or fallback_name,
        formatted_address=details.get("formattedAddress"),
        latitude=float(location["latitude"]),
        longitude=float(location["longitude"]),
        prefecture=_address_part(components, "administrative_area_level_1"),
        city=_address_part(components, "locality"),
        types=types,
        primary_type=details.get("primaryType"),
        category=determine_category(types),
        description=(details.get("editorialSummary") or {}).get("text"),
        rating=details.get("rating"),
        user_rating_count=details.get("userRatingCount"),
        price_level=details.get("priceLevel"),
        opening_hours=_opening_hours(details.get("regularOpeningHours")),
        images=images,
        phone=details.get("internationalPhoneNumber"),
        website=details.get("websiteUri"),
        google_maps_uri=details.get("googleMapsUri"),
        business_status=details.get("businessStatus"),
        source=source,
    )


class EnrichmentService:
    """Enriches preview records through a PlaceLookup vendor."""

    def __init__(
        self,
        lookup: PlaceLookup,
        validator: ValidationService,
        max_parallel: int = 5,
        max_photos: int = 3,
        photo_max_width: int = 1200,
    ) -> None:
        self.lookup = lookup
        self.validator = validator
        self.max_photos = max_photos
        self.photo_max_width = photo_max_width
        self._semaphore = asyncio.Semaphore(max_parallel)

    # =========================================================================
    # Lookup steps
    # =========================================================================

    async def resolve_place_id(self, record: PreviewRecord) -> str:
        if record.enriched and record.enriched.place_id:
            return record.enriched.place_id

        from_url = place_id_from_url(record.original.get("URL", "").strip())
        if from_url:
            return from_url

        async with self._semaphore:
            hits = await self.lookup.search_text(record.title)
        if not hits:
            raise PlaceNotFoundError(f"No place found for '{record.title}'")
        return hits[0].place_id

    async def _images(self, details: Dict[str, Any]) -> List[PlaceImage]:
        images: List[PlaceImage] = []
        for photo in (details.get("photos") or [])[: self.max_photos]:
            try:
                async with self._semaphore:
                    uri = await self.lookup.get_photo_uri(photo["name"], self.photo_max_width)
            except RateLimitError:
                raise
            except ExternalServiceError as exc:
                logger.warning(f"Skipping photo {photo.get('name')}: {exc}")
                continue
            images.append(PlaceImage(url=uri, source=self.lookup.provider_name))
        if images:
            images[0] = images[0].model_copy(update={"is_cover": True})
        return images

    async def fetch_place(self, place_id: str, fallback_name: str = "") -> Place:
        async with self._semaphore:
            details = await self.lookup.get_details(place_id)
        images = await self._images(details)
        return build_place(details, images, self.lookup.provider_name, fallback_name)

    async def fetch_cover_image(self, place_id: str) -> Optional[PlaceImage]:
        """First photo of a place as a cover image, or None when it has none."""
        async with self._semaphore:
            details = await self.lookup.get_details(place_id)
        photos = details.get("photos") or []
        if not photos:
            return None
        async with self._semaphore:
            uri = await self.lookup.get_photo_uri(photos[0]["name"], self.photo_max_width)
        return PlaceImage(url=uri, source=self.lookup.provider_name, is_cover=True)

    # =========================================================================
    # Record enrichment
    # =========================================================================

    async def enrich_record(
        self, record: PreviewRecord, raise_on_failure: bool = False
    ) -> PreviewRecord:
        """
        Enrich one record in place.

        With raise_on_failure the failure is re-raised after the record is
        marked, so a queue handler can let the orchestrator retry it.
        """
        if record.status == RecordStatus.PENDING:
            self.validator.validate_record(record)
        if record.status == RecordStatus.INVALID:
            if raise_on_failure:
                raise RecordValidationError(record.errors)
            return record
        if record.status != RecordStatus.VALIDATED:
            return record

        try:
            place_id = await self.resolve_place_id(record)
            place = await self.fetch_place(place_id, fallback_name=record.title)
            reasons = self.validator.check_place(place)
            if reasons:
                raise RecordValidationError(reasons)
        except Exception as exc:
            reason = getattr(exc, "message", None) or str(exc) or type(exc).__name__
            logger.warning(f"Enrichment failed for '{record.title}': {reason}")
            record.mark_failed(reason)
            if raise_on_failure:
                raise
            return record

        record.status = RecordStatus.ENRICHED
        record.errors = []
        record.enriched = EnrichmentResult(success=True, place_id=place.place_id, place=place)
        logger.debug("Record enriched", extra={"place_id": place.place_id})
        return record

    async def enrich(self, records: Iterable[PreviewRecord]) -> StageOutcome:
        results = list(records)
        await asyncio.gather(*(self.enrich_record(r) for r in results))
        stats = summarize(results, RecordStatus.ENRICHED)
        logger.info(
            f"Enriched {stats.total} record(s): {stats.success} ok, {stats.failed} failed",
            extra={"count": stats.total},
        )
        return StageOutcome(results=results, stats=stats)
