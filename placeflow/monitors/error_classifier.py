"""
Placeflow - Error Classifier

Passive observer of orchestrator job events.

Every failed attempt (a RETRYING or FAILED event) becomes an ErrorRecord
bucketed by queue and by ErrorKind. Completed jobs count as successful
attempts, so the error rate is failed attempts / all attempts inside the
alert window.

Alert:
    rate > alert_threshold   -> alert becomes active, listeners notified
    rate <= alert_threshold  -> alert clears, listeners notified
Only transitions are signalled; the classifier never sends notifications
itself. While the alert is active a timer re-evaluates the rate when the
oldest outcome leaves the window, so the alert clears once traffic stops.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import httpx
import psycopg

from ..core.errors import PlaceflowError
from ..core.models import AlertSignal, ErrorKind, ErrorRecord, JobEvent, JobEventType
from ..core.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

AlertListener = Callable[[AlertSignal], None]

DAY_SECONDS = 86400.0
TREND_WINDOWS = {
    "daily": DAY_SECONDS,
    "weekly": 7 * DAY_SECONDS,
    "monthly": 30 * DAY_SECONDS,
}

# Added to the re-check delay so the expiring outcome is past the cutoff.
RECHECK_SLACK_SECONDS = 0.01

# Checked in order; the first matching keyword decides.
MESSAGE_KEYWORDS: Tuple[Tuple[ErrorKind, Tuple[str, ...]], ...] = (
    (ErrorKind.RATE_LIMIT, ("rate limit", "too many requests", "quota")),
    (
        ErrorKind.INFRASTRUCTURE,
        ("connection refused", "connection reset", "timed out", "timeout", "unavailable"),
    ),
    (ErrorKind.VALIDATION, ("invalid", "validation", "required", "missing")),
    (ErrorKind.EXTERNAL_SERVICE, ("api", "http", "upstream", "not found")),
)

INFRASTRUCTURE_TYPES = (
    psycopg.OperationalError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


def _status_code(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify(error: Optional[BaseException]) -> ErrorKind:
    """Bucket an exception: taxonomy first, then HTTP status, then its message."""
    if error is None:
        return ErrorKind.UNKNOWN
    if isinstance(error, PlaceflowError) and error.kind != ErrorKind.UNKNOWN:
        return error.kind
    if _status_code(error) == 429:
        return ErrorKind.RATE_LIMIT
    if isinstance(error, INFRASTRUCTURE_TYPES):
        return ErrorKind.INFRASTRUCTURE
    if isinstance(error, httpx.HTTPError):
        return ErrorKind.EXTERNAL_SERVICE

    message = str(error).lower()
    for kind, keywords in MESSAGE_KEYWORDS:
        if any(keyword in message for keyword in keywords):
            return kind
    return ErrorKind.UNKNOWN


class ErrorClassifier:
    """Rolling error statistics and the alert signal."""

    def __init__(
        self,
        scheduler: Scheduler,
        alert_threshold: float = 0.1,
        alert_window_seconds: float = 3600.0,
        recent_limit: int = 100,
    ) -> None:
        self.scheduler = scheduler
        self.alert_threshold = alert_threshold
        self.alert_window_seconds = alert_window_seconds
        self.recent_limit = recent_limit
        self._alert_listeners: List[AlertListener] = []
        self._recheck: Optional[TimerHandle] = None
        self.clear()

    def clear(self) -> None:
        self.stop()
        self._total = 0
        self._by_queue: Counter[str] = Counter()
        self._by_kind: Counter[str] = Counter({kind.value: 0 for kind in ErrorKind})
        self._recent: Deque[ErrorRecord] = deque(maxlen=self.recent_limit)
        self._error_times: Deque[float] = deque()
        # (timestamp, failed) per observed attempt
        self._outcomes: Deque[Tuple[float, bool]] = deque()
        self._alert_active = False

    def stop(self) -> None:
        """Cancel the pending alert re-check."""
        if self._recheck is not None:
            self._recheck.cancel()
            self._recheck = None

    # =========================================================================
    # Observation
    # =========================================================================

    def add_alert_listener(self, listener: AlertListener) -> None:
        self._alert_listeners.append(listener)

    def remove_alert_listener(self, listener: AlertListener) -> None:
        if listener in self._alert_listeners:
            self._alert_listeners.remove(listener)

    def on_job_event(self, event: JobEvent) -> None:
        """Orchestrator listener."""
        if event.type == JobEventType.COMPLETED:
            self._outcomes.append((event.timestamp, False))
        elif event.type in (JobEventType.RETRYING, JobEventType.FAILED):
            self.record_error(event)
            self._outcomes.append((event.timestamp, True))
        self.evaluate()

    def record_error(self, event: JobEvent) -> ErrorRecord:
        error = event.error
        kind = classify(error)
        record = ErrorRecord(
            id=str(uuid.uuid4()),
            queue_name=event.queue_name.value,
            kind=kind,
            message=(str(error) if error is not None else event.job.failed_reason or "")[:500],
            error_type=type(error).__name__ if error is not None else "Unknown",
            timestamp=event.timestamp,
            job_id=event.job.id,
        )
        self._total += 1
        self._by_queue[record.queue_name] += 1
        self._by_kind[kind.value] += 1
        self._recent.append(record)
        self._error_times.append(record.timestamp)
        logger.debug(
            "Error classified",
            extra={"job_id": record.job_id, "queue_name": record.queue_name, "error_kind": kind.value},
        )
        return record

    # =========================================================================
    # Rate and alert
    # =========================================================================

    def _prune(self, now: float) -> None:
        cutoff = now - self.alert_window_seconds
        while self._outcomes and self._outcomes[0][0] <= cutoff:
            self._outcomes.popleft()
        trend_cutoff = now - TREND_WINDOWS["monthly"]
        while self._error_times and self._error_times[0] < trend_cutoff:
            self._error_times.popleft()

    def error_rate(self) -> float:
        self._prune(self.scheduler.now())
        if not self._outcomes:
            return 0.0
        failed = sum(1 for _, is_failure in self._outcomes if is_failure)
        return failed / len(self._outcomes)

    @property
    def alert_active(self) -> bool:
        self.evaluate()
        return self._alert_active

    def evaluate(self) -> Optional[AlertSignal]:
        """Recompute the rate; returns the signal when the alert state changed."""
        rate = self.error_rate()
        should_alert = rate > self.alert_threshold
        if should_alert:
            self._arm_recheck()
        if should_alert == self._alert_active:
            return None

        self._alert_active = should_alert
        signal = AlertSignal(
            active=should_alert,
            error_rate=rate,
            threshold=self.alert_threshold,
            window_seconds=self.alert_window_seconds,
            timestamp=self.scheduler.now(),
        )
        if should_alert:
            logger.warning(f"Error rate {rate:.1%} above threshold {self.alert_threshold:.1%}")
        else:
            logger.info(f"Error rate back to {rate:.1%}; alert cleared")

        for listener in list(self._alert_listeners):
            try:
                listener(signal)
            except Exception:
                logger.exception("Alert listener failed")
        return signal

    def _arm_recheck(self) -> None:
        if self._recheck is not None or not self._outcomes:
            return
        expires_at = self._outcomes[0][0] + self.alert_window_seconds
        delay = max(expires_at - self.scheduler.now(), 0.0) + RECHECK_SLACK_SECONDS
        self._recheck = self.scheduler.call_later(delay, self._on_recheck)

    def _on_recheck(self) -> None:
        self._recheck = None
        self.evaluate()

    # =========================================================================
    # Reporting
    # =========================================================================

    def trends(self) -> Dict[str, int]:
        now = self.scheduler.now()
        return {
            name: sum(1 for ts in self._error_times if ts >= now - window)
            for name, window in TREND_WINDOWS.items()
        }

    def recent_errors(self) -> List[ErrorRecord]:
        """Newest first."""
        return list(reversed(self._recent))

    def get_error_stats(self) -> Dict[str, Any]:
        self.evaluate()
        return {
            "total_errors": self._total,
            "error_rate": self.error_rate(),
            "errors_by_queue": dict(self._by_queue),
            "errors_by_type": dict(self._by_kind),
            "recent_errors": [r.model_dump(mode="json") for r in self.recent_errors()],
            "trends": self.trends(),
            "alert_active": self._alert_active,
        }
