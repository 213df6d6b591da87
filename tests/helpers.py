"""
tests/helpers.py

Deterministic stand-ins for the scheduler and the place-lookup vendor, plus
small builders for CSV content and Places API payloads.
"""

from __future__ import annotations

import inspect
import itertools
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from placeflow.core.errors import PlaceNotFoundError
from placeflow.vendors.base import PlaceSearchHit

START_TIME = 1_700_000_000.0


# =============================================================================
# Fake scheduler
# =============================================================================


@dataclass
class FakeTimer:
    when: float
    seq: int
    callback: Callable[[], Any]
    _cancelled: bool = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class FakeScheduler:
    """
    Manual clock. Timers fire only inside advance(), in due order; callbacks
    returning an awaitable are awaited before the next timer fires.
    """

    def __init__(self, start: float = START_TIME) -> None:
        self._now = start
        self._timers: List[FakeTimer] = []
        self._seq = itertools.count()
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], Any]) -> FakeTimer:
        timer = FakeTimer(when=self._now + max(0.0, delay), seq=next(self._seq), callback=callback)
        self._timers.append(timer)
        return timer

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self._now += max(0.0, delay)

    @property
    def pending(self) -> List[FakeTimer]:
        return [t for t in self._timers if not t.cancelled()]

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while True:
            due = [t for t in self.pending if t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.when, t.seq))
            self._timers.remove(timer)
            self._now = max(self._now, timer.when)
            result = timer.callback()
            if inspect.isawaitable(result):
                await result
        self._now = target
        self._timers = self.pending


# =============================================================================
# Fake place lookup
# =============================================================================


def make_details(
    place_id: str,
    name: str,
    latitude: float = 35.6586,
    longitude: float = 139.7454,
    types: Optional[List[str]] = None,
    photos: int = 2,
) -> Dict[str, Any]:
    """Minimal Places API (v1) details payload."""
    return {
        "id": place_id,
        "displayName": {"text": name},
        "formattedAddress": f"{name}, Japan",
        "location": {"latitude": latitude, "longitude": longitude},
        "addressComponents": [
            {"longText": "Tokyo", "types": ["administrative_area_level_1"]},
            {"longText": "Minato", "types": ["locality"]},
        ],
        "types": types or ["tourist_attraction"],
        "photos": [{"name": f"places/{place_id}/photos/{i}"} for i in range(photos)],
    }


@dataclass
class FakeLookup:
    """
    In-memory PlaceLookup.

    `titles` maps a search query to a place id, `places` maps a place id to
    its details payload. `failures` maps a query, place id or photo name to
    the exception raised whenever it is looked up.
    """

    places: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    titles: Dict[str, str] = field(default_factory=dict)
    failures: Dict[str, BaseException] = field(default_factory=dict)
    calls: List[str] = field(default_factory=list)
    closed: bool = False

    @property
    def provider_name(self) -> str:
        return "Google Places"

    def add_place(self, title: str, place_id: str, **details: Any) -> None:
        self.titles[title] = place_id
        self.places[place_id] = make_details(place_id, title, **details)

    def _maybe_fail(self, key: str) -> None:
        if key in self.failures:
            raise self.failures[key]

    async def search_text(self, query: str) -> list[PlaceSearchHit]:
        self.calls.append(f"search:{query}")
        self._maybe_fail(query)
        place_id = self.titles.get(query)
        if place_id is None:
            return []
        return [PlaceSearchHit(place_id=place_id, name=query)]

    async def get_details(self, place_id: str) -> dict[str, Any]:
        self.calls.append(f"details:{place_id}")
        self._maybe_fail(place_id)
        if place_id not in self.places:
            raise PlaceNotFoundError(f"Place not found: {place_id}", status_code=404)
        return self.places[place_id]

    async def get_photo_uri(self, photo_name: str, max_width: int) -> str:
        self.calls.append(f"photo:{photo_name}")
        self._maybe_fail(photo_name)
        return f"https://img.test/{photo_name}?w={max_width}"

    async def aclose(self) -> None:
        self.closed = True


# =============================================================================
# CSV builders
# =============================================================================

HEADER = "Title,Note,URL,Comment"


def csv_content(rows: List[str], header: str = HEADER) -> str:
    return "\n".join([header, *rows]) + "\n"


SIX_ROWS = [
    'Tokyo Tower,Great view,"https://www.google.com/maps/place/Tokyo+Tower/@35.6586,139.7454,17z",Go at night',
    'Senso-ji,,"https://www.google.com/maps/place/Sensoji/@35.7148,139.7967,17z",',
    "Ichiran Shibuya,Ramen,,Queue early",
    "Nishiki Market,,https://maps.google.com/?q=Nishiki,",
    "Fushimi Inari,Torii gates,,",
    'Golden Gai,Bars,"https://www.google.com/maps/place/Golden+Gai/@35.6939,139.7046,17z",Small bars',
]
