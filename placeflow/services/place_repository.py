"""
Placeflow - Place Repository

Persistence boundary for enriched places. The pipeline only needs
create/find/update/delete plus upsert; upsert keyed by place_id is what makes
a retried enrichment job safe to run twice.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from ..core.errors import InfrastructureError
from ..core.models import Place

logger = logging.getLogger(__name__)


class PlaceRepository(Protocol):
    async def create(self, place: Place) -> Place: ...

    async def find(self, place_id: str) -> Optional[Place]: ...

    async def update(self, place_id: str, changes: Dict[str, Any]) -> Optional[Place]: ...

    async def delete(self, place_id: str) -> bool: ...

    async def upsert(self, place: Place) -> Place: ...

    async def count(self) -> int: ...


class MemoryPlaceRepository:
    """Dict-backed repository for development and tests."""

    def __init__(self) -> None:
        self._places: Dict[str, Place] = {}
        self._lock = asyncio.Lock()

    async def create(self, place: Place) -> Place:
        async with self._lock:
            if place.place_id in self._places:
                raise ValueError(f"Place {place.place_id} already exists")
            self._places[place.place_id] = place.model_copy(deep=True)
            return place

    async def find(self, place_id: str) -> Optional[Place]:
        place = self._places.get(place_id)
        return place.model_copy(deep=True) if place else None

    async def update(self, place_id: str, changes: Dict[str, Any]) -> Optional[Place]:
        async with self._lock:
            current = self._places.get(place_id)
            if current is None:
                return None
            updated = Place.model_validate({**current.model_dump(), **changes})
            self._places[place_id] = updated
            return updated.model_copy(deep=True)

    async def delete(self, place_id: str) -> bool:
        async with self._lock:
            return self._places.pop(place_id, None) is not None

    async def upsert(self, place: Place) -> Place:
        async with self._lock:
            self._places[place.place_id] = place.model_copy(deep=True)
            return place

    async def count(self) -> int:
        return len(self._places)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS placeflow_places (
    place_id    text PRIMARY KEY,
    document    jsonb NOT NULL,
    created_at  timestamptz NOT NULL DEFAULT now(),
    updated_at  timestamptz NOT NULL DEFAULT now()
);
"""


class PostgresPlaceRepository:
    """Places stored as JSONB documents keyed by place_id."""

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    async def _fetchone(self, sql: str, params: tuple) -> Optional[Dict[str, Any]]:
        try:
            async with self._pool.connection() as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(sql, params)
                    return await cur.fetchone() if cur.description else None
        except psycopg.OperationalError as exc:
            raise InfrastructureError(f"Place store unavailable: {exc}") from exc

    async def ensure_schema(self) -> None:
        try:
            async with self._pool.connection() as conn:
                await conn.execute(SCHEMA_SQL)
        except psycopg.OperationalError as exc:
            raise InfrastructureError(f"Place store unavailable: {exc}") from exc

    async def create(self, place: Place) -> Place:
        try:
            await self._fetchone(
                "INSERT INTO placeflow_places (place_id, document) VALUES (%s, %s)",
                (place.place_id, Jsonb(place.model_dump(mode="json"))),
            )
        except psycopg.errors.UniqueViolation as exc:
            raise ValueError(f"Place {place.place_id} already exists") from exc
        return place

    async def find(self, place_id: str) -> Optional[Place]:
        row = await self._fetchone(
            "SELECT document FROM placeflow_places WHERE place_id = %s", (place_id,)
        )
        return Place.model_validate(row["document"]) if row else None

    async def update(self, place_id: str, changes: Dict[str, Any]) -> Optional[Place]:
        current = await self.find(place_id)
        if current is None:
            return None
        updated = Place.model_validate({**current.model_dump(), **changes})
        await self._fetchone(
            "UPDATE placeflow_places SET document = %s, updated_at = now() WHERE place_id = %s",
            (Jsonb(updated.model_dump(mode="json")), place_id),
        )
        return updated

    async def delete(self, place_id: str) -> bool:
        row = await self._fetchone(
            "DELETE FROM placeflow_places WHERE place_id = %s RETURNING place_id", (place_id,)
        )
        return row is not None

    async def upsert(self, place: Place) -> Place:
        await self._fetchone(
            """
            INSERT INTO placeflow_places (place_id, document)
            VALUES (%s, %s)
            ON CONFLICT (place_id)
            DO UPDATE SET document = EXCLUDED.document, updated_at = now()
            """,
            (place.place_id, Jsonb(place.model_dump(mode="json"))),
        )
        return place

    async def count(self) -> int:
        row = await self._fetchone("SELECT count(*) AS n FROM placeflow_places", ())
        return int(row["n"]) if row else 0

