"""Tests for core.config."""

from __future__ import annotations

import pytest

from placeflow.core.config import Settings, get_settings, reset_settings
from placeflow.core.models import QueueName


class TestBackend:
    def test_memory_without_database_url(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.delenv("QUEUE_BACKEND", raising=False)

        assert Settings(_env_file=None).QUEUE_BACKEND == "memory"

    def test_postgres_inferred_from_database_url(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("QUEUE_BACKEND", raising=False)
        monkeypatch.setenv("DATABASE_URL", "postgresql://app@localhost/placeflow")

        assert Settings(_env_file=None).QUEUE_BACKEND == "postgres"

    def test_postgres_requires_database_url(self) -> None:
        with pytest.raises(ValueError, match="DATABASE_URL"):
            Settings(_env_file=None, QUEUE_BACKEND="postgres", DATABASE_URL="")

    def test_inverted_region(self) -> None:
        with pytest.raises(ValueError, match="inverted"):
            Settings(_env_file=None, REGION_SOUTH=50.0, REGION_NORTH=40.0)


class TestDerived:
    def test_queue_configs_cover_every_queue(self) -> None:
        settings = Settings(
            _env_file=None,
            ENRICHMENT_CONCURRENCY=7,
            QUEUE_DEFAULT_ATTEMPTS=5,
            QUEUE_INITIAL_BACKOFF_SECONDS=2.5,
        )

        configs = settings.queue_configs()

        assert set(configs) == set(QueueName)
        assert configs[QueueName.ENRICHMENT].concurrency == 7
        assert configs[QueueName.IMPORT].concurrency == 1
        assert all(c.max_attempts == 5 for c in configs.values())
        assert all(c.initial_backoff_seconds == 2.5 for c in configs.values())

    def test_region_bounds(self) -> None:
        bounds = Settings(_env_file=None).region_bounds

        assert bounds.contains(35.68, 139.76)
        assert not bounds.contains(48.85, 2.35)

    def test_environment_is_read_case_insensitively(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("batch_size", "25")

        assert Settings(_env_file=None).BATCH_SIZE == 25


def test_get_settings_is_cached_until_reset(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BATCH_SIZE", "11")
    first = get_settings()
    monkeypatch.setenv("BATCH_SIZE", "12")

    assert get_settings() is first
    reset_settings()
    assert get_settings().BATCH_SIZE == 12
