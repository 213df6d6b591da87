"""Base classes and protocols for place-lookup vendors.

Defines the PlaceSearchHit dataclass and the PlaceLookup protocol that the
enrichment stage talks to. Vendors return details in the Places API (v1)
JSON shape; normalization into Place happens in the enrichment service.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

# Fields requested from the details endpoint
DETAIL_FIELDS = (
    "id",
    "displayName",
    "formattedAddress",
    "location",
    "addressComponents",
    "types",
    "primaryType",
    "editorialSummary",
    "rating",
    "userRatingCount",
    "priceLevel",
    "regularOpeningHours",
    "photos",
    "internationalPhoneNumber",
    "websiteUri",
    "googleMapsUri",
    "businessStatus",
)

SEARCH_FIELDS = (
    "places.id",
    "places.displayName",
    "places.formattedAddress",
    "places.location",
)


@dataclass(frozen=True)
class PlaceSearchHit:
    """One candidate returned by a free-text search."""

    place_id: str
    name: str
    formatted_address: str | None = None
    latitude: float | None = None
    longitude: float | None = None


@runtime_checkable
class PlaceLookup(Protocol):
    """Protocol for place-lookup vendor implementations.

    Implementations raise the taxonomy errors from placeflow.core.errors:
    RateLimitError on quota exhaustion, PlaceNotFoundError for unknown ids,
    ExternalServiceError for anything else the vendor got wrong.
    """

    @property
    def provider_name(self) -> str:
        """Vendor name recorded as Place.source and PlaceImage.source."""
        ...

    async def search_text(self, query: str) -> list[PlaceSearchHit]:
        """Free-text search, best match first. Empty list when nothing matches."""
        ...

    async def get_details(self, place_id: str) -> dict[str, Any]:
        """Place details in the Places API (v1) JSON shape."""
        ...

    async def get_photo_uri(self, photo_name: str, max_width: int) -> str:
        """Resolve a photo resource name to a fetchable image URI."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...
