"""Place-lookup vendor abstraction layer.

Lets the enrichment stage switch between the Google Places client and the
offline mock.

Usage:
    from placeflow.vendors import GooglePlacesClient, MockPlaces, PlaceLookup
"""

from __future__ import annotations

from .base import PlaceLookup, PlaceSearchHit
from .google_places import GooglePlacesClient
from .mock_places import MockPlaces

__all__ = [
    "PlaceLookup",
    "PlaceSearchHit",
    "GooglePlacesClient",
    "MockPlaces",
]
