"""Tests for services.place_repository.MemoryPlaceRepository."""

from __future__ import annotations

import pytest

from placeflow.core.models import Place
from placeflow.services.place_repository import MemoryPlaceRepository


def place(place_id: str = "p1", name: str = "Tokyo Tower") -> Place:
    return Place(place_id=place_id, name=name, latitude=35.6586, longitude=139.7454)


@pytest.mark.asyncio
async def test_create_and_find() -> None:
    repository = MemoryPlaceRepository()

    await repository.create(place())

    found = await repository.find("p1")
    assert found.name == "Tokyo Tower"
    assert await repository.find("missing") is None


@pytest.mark.asyncio
async def test_create_rejects_duplicates() -> None:
    repository = MemoryPlaceRepository()
    await repository.create(place())

    with pytest.raises(ValueError):
        await repository.create(place())


@pytest.mark.asyncio
async def test_update_validates_changes() -> None:
    repository = MemoryPlaceRepository()
    await repository.create(place())

    updated = await repository.update("p1", {"rating": 4.5, "category": "Visite"})

    assert updated.rating == 4.5
    assert (await repository.find("p1")).category == "Visite"
    assert await repository.update("missing", {"rating": 1}) is None


@pytest.mark.asyncio
async def test_upsert_replaces() -> None:
    repository = MemoryPlaceRepository()
    await repository.upsert(place(name="Old"))
    await repository.upsert(place(name="New"))

    assert (await repository.find("p1")).name == "New"
    assert await repository.count() == 1


@pytest.mark.asyncio
async def test_delete() -> None:
    repository = MemoryPlaceRepository()
    await repository.create(place())

    assert await repository.delete("p1") is True
    assert await repository.delete("p1") is False
    assert await repository.count() == 0


@pytest.mark.asyncio
async def test_stored_copies_are_isolated() -> None:
    repository = MemoryPlaceRepository()
    original = place()
    await repository.create(original)

    original.name = "Mutated"

    assert (await repository.find("p1")).name == "Tokyo Tower"
