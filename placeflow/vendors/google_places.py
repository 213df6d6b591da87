"""Google Places API (v1) vendor.

Transport-level failures (connection errors, 5xx, 429) are retried here with
exponential backoff. Whatever survives the retries surfaces as a taxonomy
error so the job queue can apply its own, longer retry schedule.

The API key travels in the X-Goog-Api-Key header, never in a URL.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..core.config import RegionBounds
from ..core.errors import ExternalServiceError, PlaceNotFoundError, RateLimitError
from .base import DETAIL_FIELDS, SEARCH_FIELDS, PlaceSearchHit

logger = logging.getLogger(__name__)

PROVIDER_NAME = "Google Places"


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitError):
        return True
    if isinstance(exc, PlaceNotFoundError):
        return False
    if isinstance(exc, ExternalServiceError):
        return exc.status_code is None or exc.status_code >= 500
    return False


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("message", ""))[:200]
    return str(body)[:200]


class GooglePlacesClient:
    """Async client for places:searchText, place details and photo media."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://places.googleapis.com/v1",
        language: str = "fr",
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        region: RegionBounds | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("GOOGLE_MAPS_API_KEY is not defined")
        self.language = language
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.region = region
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
            headers={
                "X-Goog-Api-Key": api_key,
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    @property
    def provider_name(self) -> str:
        return PROVIDER_NAME

    async def aclose(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()

    async def _send(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """One HTTP exchange mapped onto the error taxonomy."""
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise ExternalServiceError(f"Places API unreachable: {type(exc).__name__}") from exc

        if response.status_code == 429:
            raise RateLimitError("Places API quota exceeded", status_code=429)
        if response.status_code == 404:
            raise PlaceNotFoundError(f"Place not found: {url}", status_code=404)
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Places API error {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ExternalServiceError("Places API returned invalid JSON") from exc
        return data if isinstance(data, dict) else {}

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.retry_delay, max=30),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self._send(method, url, **kwargs)
        raise ExternalServiceError("Places API retries exhausted")  # pragma: no cover

    async def search_text(self, query: str) -> list[PlaceSearchHit]:
        body: dict[str, Any] = {"textQuery": query, "languageCode": self.language}
        if self.region is not None:
            body["locationBias"] = {
                "rectangle": {
                    "low": {"latitude": self.region.south, "longitude": self.region.west},
                    "high": {"latitude": self.region.north, "longitude": self.region.east},
                }
            }
        data = await self._request(
            "POST",
            "/places:searchText",
            json=body,
            headers={"X-Goog-FieldMask": ",".join(SEARCH_FIELDS)},
        )
        hits = []
        for place in data.get("places") or []:
            location = place.get("location") or {}
            hits.append(
                PlaceSearchHit(
                    place_id=place["id"],
                    name=(place.get("displayName") or {}).get("text", ""),
                    formatted_address=place.get("formattedAddress"),
                    latitude=location.get("latitude"),
                    longitude=location.get("longitude"),
                )
            )
        logger.debug(f"searchText returned {len(hits)} hit(s)", extra={"count": len(hits)})
        return hits

    async def get_details(self, place_id: str) -> dict[str, Any]:
        return await self._request(
            "GET",
            f"/places/{place_id}",
            params={"languageCode": self.language},
            headers={"X-Goog-FieldMask": ",".join(DETAIL_FIELDS)},
        )

    async def get_photo_uri(self, photo_name: str, max_width: int) -> str:
        data = await self._request(
            "GET",
            f"/{photo_name}/media",
            params={"maxWidthPx": max_width, "skipHttpRedirect": "true"},
        )
        uri = data.get("photoUri")
        if not uri:
            raise ExternalServiceError(f"No photoUri returned for {photo_name}")
        return str(uri)
