"""
Placeflow - Metrics Collector

Periodic per-queue snapshots, kept for retention_seconds.

Each tick, for every queue:
    processed / failed / active / waiting / delayed  current store counts
    throughput   jobs completed since the previous tick
    latency      mean duration (ms) of jobs that finished since the previous tick
    error_rate   failed / (failed + completed) since the previous tick

Interval counters are fed by orchestrator COMPLETED and FAILED events.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

from ..core.errors import PlaceflowError
from ..core.models import JobEvent, JobEventType, JobState, MetricsSnapshot, QueueName
from ..core.scheduler import Scheduler, TimerHandle
from ..workers.orchestrator import JobQueueOrchestrator, parse_queue_name

logger = logging.getLogger(__name__)

ALL_QUEUES = "all"


@dataclass
class _IntervalCounters:
    completed: int = 0
    failed: int = 0
    durations: List[float] = field(default_factory=list)


class MetricsCollector:
    def __init__(
        self,
        orchestrator: JobQueueOrchestrator,
        scheduler: Scheduler,
        collect_interval: float = 5.0,
        retention_seconds: float = 86400.0,
    ) -> None:
        self.orchestrator = orchestrator
        self.scheduler = scheduler
        self.collect_interval = collect_interval
        self.retention_seconds = retention_seconds
        self._series: Dict[QueueName, Deque[MetricsSnapshot]] = {q: deque() for q in QueueName}
        self._interval: Dict[QueueName, _IntervalCounters] = defaultdict(_IntervalCounters)
        self._timer: Optional[TimerHandle] = None
        self._running = False

    # =========================================================================
    # Observation
    # =========================================================================

    def on_job_event(self, event: JobEvent) -> None:
        """Orchestrator listener."""
        counters = self._interval[event.queue_name]
        if event.type == JobEventType.COMPLETED:
            counters.completed += 1
        elif event.type == JobEventType.FAILED:
            counters.failed += 1
        else:
            return
        if event.duration_seconds is not None:
            counters.durations.append(event.duration_seconds * 1000)

    # =========================================================================
    # Collection
    # =========================================================================

    async def collect(self) -> List[MetricsSnapshot]:
        """Take one snapshot per queue and evict expired ones."""
        now = self.scheduler.now()
        snapshots: List[MetricsSnapshot] = []
        for queue in QueueName:
            try:
                counts = await self.orchestrator.get_job_counts(queue)
            except PlaceflowError as exc:
                logger.warning(f"Metrics collection failed: {exc}", extra={"queue_name": queue.value})
                continue

            counters = self._interval.pop(queue, _IntervalCounters())
            finished = counters.completed + counters.failed
            snapshot = MetricsSnapshot(
                queue_name=queue.value,
                processed=counts[JobState.COMPLETED],
                failed=counts[JobState.FAILED],
                active=counts[JobState.ACTIVE],
                waiting=counts[JobState.WAITING],
                delayed=counts[JobState.DELAYED],
                throughput=counters.completed,
                latency=(
                    sum(counters.durations) / len(counters.durations) if counters.durations else 0.0
                ),
                error_rate=counters.failed / finished if finished else 0.0,
                timestamp=now,
            )
            self._series[queue].append(snapshot)
            snapshots.append(snapshot)

        self._evict(now)
        return snapshots

    def _evict(self, now: float) -> None:
        cutoff = now - self.retention_seconds
        for series in self._series.values():
            while series and series[0].timestamp < cutoff:
                series.popleft()

    # =========================================================================
    # Scheduling
    # =========================================================================

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._schedule()
        logger.info(f"Metrics collection every {self.collect_interval}s")

    def stop(self) -> None:
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def is_running(self) -> bool:
        return self._running

    def _schedule(self) -> None:
        self._timer = self.scheduler.call_later(self.collect_interval, self._tick)

    async def _tick(self) -> None:
        self._timer = None
        if not self._running:
            return
        try:
            await self.collect()
        except Exception:
            logger.exception("Metrics tick failed")
        finally:
            if self._running:
                self._schedule()

    # =========================================================================
    # Queries
    # =========================================================================

    def _window(self, queue: QueueName, duration: Optional[float]) -> List[MetricsSnapshot]:
        series = list(self._series[queue])
        if duration is None:
            return series
        cutoff = self.scheduler.now() - duration
        return [s for s in series if s.timestamp > cutoff]

    def get_metrics(
        self, queue: str | QueueName = ALL_QUEUES, duration: Optional[float] = None
    ) -> Dict[str, List[MetricsSnapshot]] | List[MetricsSnapshot]:
        """Retained series for one queue, or a mapping of all of them for "all"."""
        if queue == ALL_QUEUES:
            return {q.value: self._window(q, duration) for q in QueueName}
        return self._window(parse_queue_name(queue), duration)

    def get_latest(self, queue: str | QueueName) -> Optional[MetricsSnapshot]:
        series = self._series[parse_queue_name(queue)]
        return series[-1] if series else None

    def get_aggregated(self, queue: str | QueueName, duration: float) -> Optional[MetricsSnapshot]:
        """Field-wise mean of the snapshots taken in the last `duration` seconds."""
        name = parse_queue_name(queue)
        window = self._window(name, duration)
        if not window:
            return None

        def mean(values: List[float]) -> float:
            return sum(values) / len(values)

        return MetricsSnapshot(
            queue_name=name.value,
            processed=round(mean([s.processed for s in window])),
            failed=round(mean([s.failed for s in window])),
            active=round(mean([s.active for s in window])),
            waiting=round(mean([s.waiting for s in window])),
            delayed=round(mean([s.delayed for s in window])),
            throughput=round(mean([s.throughput for s in window])),
            latency=mean([s.latency for s in window]),
            error_rate=mean([s.error_rate for s in window]),
            timestamp=self.scheduler.now(),
        )
