"""Tests for core.logging."""

from __future__ import annotations

import json
import logging

import pytest

from placeflow.core.logging import (
    LogContext,
    StructuredJsonFormatter,
    Timer,
    get_current_context,
    log_worker_failure,
    redact_sensitive,
)


def make_record(message: str = "Job completed", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="placeflow.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    def test_includes_extras_and_context(self) -> None:
        formatter = StructuredJsonFormatter()

        with LogContext(job_id="job-1", queue_name="enrichment"):
            line = formatter.format(make_record(duration_ms=12.5, status="success"))

        payload = json.loads(line)
        assert payload["message"] == "Job completed"
        assert payload["level"] == "INFO"
        assert payload["job_id"] == "job-1"
        assert payload["queue_name"] == "enrichment"
        assert payload["duration_ms"] == 12.5

    def test_redacts_credentials(self) -> None:
        with LogContext(api_key="secret-value"):
            payload = json.loads(StructuredJsonFormatter().format(make_record()))

        assert payload["api_key"] == "[REDACTED]"


def test_log_context_is_restored() -> None:
    with LogContext(job_id="outer"):
        with LogContext(job_id="inner", place_id="p1"):
            assert get_current_context()["job_id"] == "inner"
        assert get_current_context()["job_id"] == "outer"
        assert "place_id" not in get_current_context()
    assert "job_id" not in get_current_context()


def test_redact_nested() -> None:
    data = {"headers": {"X-Api-Key": "k"}, "items": [{"password": "p", "name": "n"}]}

    assert redact_sensitive(data) == {
        "headers": {"X-Api-Key": "k"},
        "items": [{"password": "[REDACTED]", "name": "n"}],
    }


def test_timer_measures() -> None:
    with Timer() as timer:
        sum(range(1000))

    assert timer.elapsed_ms >= 0.0


def test_final_failure_logs_error_with_traceback(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("placeflow.test")
    error = ValueError("boom")

    with caplog.at_level(logging.WARNING, logger="placeflow.test"):
        log_worker_failure(logger, "image", "j1", error, 5.0, 1, 3, will_retry=True)
        log_worker_failure(logger, "image", "j1", error, 5.0, 3, 3, will_retry=False)

    retry, final = caplog.records
    assert retry.levelno == logging.WARNING
    assert retry.status == "retrying"
    assert retry.exc_info is None
    assert final.levelno == logging.ERROR
    assert final.status == "failed"
    assert final.exc_info is not None
