"""Mock place-lookup vendor for development and testing.

Returns deterministic but realistic place details in the Places API (v1)
shape. No external HTTP calls are made.
"""

from __future__ import annotations

import hashlib
from typing import Any

from ..core.errors import PlaceNotFoundError
from .base import PlaceLookup, PlaceSearchHit

# name, prefecture, city, latitude, longitude, types
_PLACES = [
    ("Tokyo Tower", "Tokyo", "Minato", 35.6586, 139.7454, ["tourist_attraction", "point_of_interest"]),
    ("Fushimi Inari Taisha", "Kyoto", "Kyoto", 34.9671, 135.7727, ["place_of_worship", "tourist_attraction"]),
    ("Ichiran Shibuya", "Tokyo", "Shibuya", 35.6610, 139.7010, ["restaurant", "food"]),
    ("Nishiki Market", "Kyoto", "Kyoto", 35.0050, 135.7649, ["market", "store"]),
    ("Park Hyatt Tokyo", "Tokyo", "Shinjuku", 35.6856, 139.6909, ["lodging", "hotel"]),
    ("Sapporo Beer Museum", "Hokkaido", "Sapporo", 43.0716, 141.3690, ["museum", "tourist_attraction"]),
    ("Churaumi Aquarium", "Okinawa", "Motobu", 26.6944, 127.8779, ["aquarium", "tourist_attraction"]),
    ("Golden Gai", "Tokyo", "Shinjuku", 35.6939, 139.7046, ["bar", "night_club"]),
]

_MOCK_PREFIX = "mock_"


def _deterministic_hash(seed: str) -> int:
    """Generate a deterministic hash from a string seed."""
    return int(hashlib.md5(seed.encode()).hexdigest(), 16)


class MockPlaces:
    """Mock Places vendor.

    Search maps any query onto one of a fixed pool of places, so the same
    title always resolves to the same place_id. Details for a place_id not
    produced by this vendor are still answered, derived from the id hash.

    Usage:
        vendor = MockPlaces()
        hits = await vendor.search_text("Tokyo Tower")
        details = await vendor.get_details(hits[0].place_id)
    """

    @property
    def provider_name(self) -> str:
        return "Google Places"

    async def aclose(self) -> None:
        return None

    def _pick(self, seed: str) -> tuple[int, tuple[Any, ...]]:
        hash_val = _deterministic_hash(seed.lower().strip())
        return hash_val, _PLACES[hash_val % len(_PLACES)]

    async def search_text(self, query: str) -> list[PlaceSearchHit]:
        if not query.strip():
            return []
        hash_val, (name, _pref, _city, lat, lng, _types) = self._pick(query)
        index = hash_val % len(_PLACES)
        return [
            PlaceSearchHit(
                place_id=f"{_MOCK_PREFIX}{index}_{hash_val % 10**12:012d}",
                name=name,
                formatted_address=f"{name}, Japan",
                latitude=lat,
                longitude=lng,
            )
        ]

    async def get_details(self, place_id: str) -> dict[str, Any]:
        if not place_id:
            raise PlaceNotFoundError("Empty place id", status_code=404)
        hash_val, (name, prefecture, city, lat, lng, types) = self._pick(place_id)
        # ids minted by search_text carry the pool index
        parts = place_id.split("_")
        if place_id.startswith(_MOCK_PREFIX) and len(parts) == 3 and parts[1].isdigit():
            name, prefecture, city, lat, lng, types = _PLACES[int(parts[1]) % len(_PLACES)]

        return {
            "id": place_id,
            "displayName": {"text": name, "languageCode": "fr"},
            "formattedAddress": f"{city}, {prefecture}, Japan",
            "location": {"latitude": lat, "longitude": lng},
            "addressComponents": [
                {"longText": prefecture, "types": ["administrative_area_level_1"]},
                {"longText": city, "types": ["locality"]},
            ],
            "types": types,
            "primaryType": types[0],
            "editorialSummary": {"text": f"{name} ({city})"},
            "rating": round(3.5 + (hash_val % 15) / 10, 1),
            "userRatingCount": 100 + hash_val % 5000,
            "regularOpeningHours": {
                "periods": [
                    {
                        "open": {"day": day, "hour": 9, "minute": 0},
                        "close": {"day": day, "hour": 18, "minute": 0},
                    }
                    for day in range(7)
                ],
                "weekdayDescriptions": [],
            },
            "photos": [{"name": f"places/{place_id}/photos/{i}"} for i in range(4)],
            "googleMapsUri": f"https://maps.google.com/?cid={hash_val % 10**10}",
            "businessStatus": "OPERATIONAL",
        }

    async def get_photo_uri(self, photo_name: str, max_width: int) -> str:
        digest = hashlib.md5(photo_name.encode()).hexdigest()[:16]
        return f"https://images.example.invalid/{digest}.jpg?w={max_width}"


# Verify MockPlaces implements PlaceLookup protocol
assert isinstance(MockPlaces(), PlaceLookup), "MockPlaces must implement PlaceLookup"
