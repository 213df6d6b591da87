"""
Placeflow - Structured Logging

JSON log lines in production, colored console lines in development.
Every entry carries the logger name, level, message and any context bound
with LogContext (job_id, queue_name, place_id, ...).

Usage:
    from placeflow.core.logging import LogContext, get_logger

    logger = get_logger(__name__)

    with LogContext(job_id=job.id, queue_name="enrichment"):
        logger.info("Enrichment started")
"""

from __future__ import annotations

import json
import logging
import sys
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Generator

# =============================================================================
# Context Variables for Correlation
# =============================================================================

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


def get_current_context() -> Dict[str, Any]:
    return _log_context.get().copy()


def set_context(**kwargs: Any) -> None:
    """Set context values for the current task."""
    current = _log_context.get().copy()
    current.update(kwargs)
    _log_context.set(current)


def clear_context() -> None:
    _log_context.set({})


# =============================================================================
# Sensitive Data Redaction
# =============================================================================

REDACT_PATTERNS = frozenset({"password", "secret", "api_key", "apikey", "token"})


def redact_sensitive(data: Any, max_depth: int = 10) -> Any:
    """Recursively redact values whose key looks like a credential."""
    if max_depth <= 0:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            key_lower = str(key).lower()
            if any(pattern in key_lower for pattern in REDACT_PATTERNS):
                result[key] = "[REDACTED]"
            else:
                result[key] = redact_sensitive(value, max_depth - 1)
        return result

    if isinstance(data, (list, tuple)):
        return [redact_sensitive(item, max_depth - 1) for item in data]

    return data


# =============================================================================
# JSON Formatter
# =============================================================================


class StructuredJsonFormatter(logging.Formatter):
    """
    JSON log formatter for production environments.

    Output format:
    {
        "timestamp": "2025-03-07T10:30:00.123456Z",
        "level": "INFO",
        "logger": "placeflow.workers.orchestrator",
        "message": "Job completed",
        "job_id": "0b8e...",
        "queue_name": "enrichment",
        "duration_ms": 1234
    }
    """

    EXTRA_KEYS = (
        "job_id",
        "queue_name",
        "place_id",
        "attempt",
        "max_attempts",
        "duration_ms",
        "delay_seconds",
        "status",
        "error_kind",
        "error_type",
        "count",
        "batch_size",
        "path",
        "status_code",
    )

    def __init__(self, include_traceback: bool = True) -> None:
        super().__init__()
        self.include_traceback = include_traceback

    def format(self, record: logging.LogRecord) -> str:
        log_dict: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = get_current_context()
        if context:
            log_dict.update(context)

        for key in self.EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_dict[key] = value

        if record.exc_info and self.include_traceback:
            log_dict["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(redact_sensitive(log_dict), default=str, ensure_ascii=False)


# =============================================================================
# Console Formatter (for development)
# =============================================================================


class ColoredConsoleFormatter(logging.Formatter):
    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")

        context = get_current_context()
        context_parts = [
            f"{key}={context[key]}" for key in ("queue_name", "job_id", "place_id") if key in context
        ]
        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""

        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        line = (
            f"{color}[{timestamp}] {record.levelname:8}{self.RESET} "
            f"{record.name}:{context_str} {record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + "".join(traceback.format_exception(*record.exc_info))
        return line


# =============================================================================
# Split-Stream Handler (stdout for INFO/DEBUG, stderr for WARNING+)
# =============================================================================


class _MaxLevelFilter(logging.Filter):
    def __init__(self, max_level: int):
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno <= self.max_level


def _create_split_handlers(
    formatter: logging.Formatter,
    level: int = logging.DEBUG,
) -> list[logging.Handler]:
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(level)
    stdout_handler.addFilter(_MaxLevelFilter(logging.INFO))
    stdout_handler.setFormatter(formatter)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(max(level, logging.WARNING))
    stderr_handler.setFormatter(formatter)

    return [stdout_handler, stderr_handler]


# =============================================================================
# Logger Configuration
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    service_name: str = "placeflow",
) -> None:
    """
    Configure root logging for the API or a worker process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, use JSON format; else use colored console
        service_name: Service name bound into every log line
    """
    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter: logging.Formatter
    if json_output:
        formatter = StructuredJsonFormatter()
    else:
        formatter = ColoredConsoleFormatter()

    for handler in _create_split_handlers(formatter, numeric_level):
        root_logger.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

    set_context(service=service_name)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


# =============================================================================
# Context Manager
# =============================================================================


@contextmanager
def LogContext(**kwargs: Any) -> Generator[None, None, None]:
    """
    Add fields to all logs within the block.

    Usage:
        with LogContext(job_id="abc", queue_name="image"):
            logger.info("Processing")
    """
    token = _log_context.set({**_log_context.get(), **kwargs})
    try:
        yield
    finally:
        _log_context.reset(token)


# =============================================================================
# Timing Utilities
# =============================================================================


class Timer:
    """
    Context manager for timing code blocks.

    Usage:
        with Timer() as t:
            do_something()
        logger.info("Operation took", extra={"duration_ms": t.elapsed_ms})
    """

    def __init__(self) -> None:
        self.start_time: float = 0
        self.end_time: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.end_time = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        end = self.end_time or time.perf_counter()
        return (end - self.start_time) * 1000


# =============================================================================
# Worker Logging Helpers
# =============================================================================


def log_worker_start(
    logger: logging.Logger,
    queue_name: str,
    job_id: str,
    attempt: int,
    max_attempts: int,
) -> None:
    logger.info(
        "Job started",
        extra={
            "job_id": job_id,
            "queue_name": queue_name,
            "status": "started",
            "attempt": attempt,
            "max_attempts": max_attempts,
        },
    )


def log_worker_success(
    logger: logging.Logger,
    queue_name: str,
    job_id: str,
    duration_ms: float,
) -> None:
    logger.info(
        "Job completed",
        extra={
            "job_id": job_id,
            "queue_name": queue_name,
            "status": "success",
            "duration_ms": round(duration_ms, 2),
        },
    )


def log_worker_failure(
    logger: logging.Logger,
    queue_name: str,
    job_id: str,
    error: BaseException,
    duration_ms: float,
    attempt: int,
    max_attempts: int,
    will_retry: bool,
) -> None:
    """Retries log at WARNING without traceback; final failures at ERROR with it."""
    extra = {
        "job_id": job_id,
        "queue_name": queue_name,
        "status": "retrying" if will_retry else "failed",
        "duration_ms": round(duration_ms, 2),
        "attempt": attempt,
        "max_attempts": max_attempts,
        "error_type": type(error).__name__,
    }
    if will_retry:
        logger.warning(f"Job attempt failed: {error}", extra=extra)
    else:
        logger.error(f"Job failed: {error}", extra=extra, exc_info=error)
