"""
Placeflow - Queue Maintenance

Periodic housekeeping of finished jobs so the store does not grow without
bound. Every `interval_seconds`, for each queue:

    1. completed and failed jobs finished more than `retention_seconds` ago
       are cleaned
    2. completed jobs beyond `max_completed` and failed jobs beyond
       `max_failed` are trimmed, oldest first

Each step removes at most `batch_limit` jobs per queue and state; whatever
remains is picked up on the next pass. Removed jobs count toward the
queue's `removed` tally.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from ..core.errors import PlaceflowError
from ..core.models import JobState, QueueName
from ..core.scheduler import Scheduler, TimerHandle
from .orchestrator import JobQueueOrchestrator

logger = logging.getLogger(__name__)

DAY_SECONDS = 86400.0


class QueueMaintenance:
    def __init__(
        self,
        orchestrator: JobQueueOrchestrator,
        scheduler: Scheduler,
        interval_seconds: float = 3600.0,
        retention_seconds: float = 7 * DAY_SECONDS,
        max_completed: int = 1000,
        max_failed: int = 500,
        batch_limit: int = 1000,
    ) -> None:
        self.orchestrator = orchestrator
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds
        self.retention_seconds = retention_seconds
        self.max_completed = max_completed
        self.max_failed = max_failed
        self.batch_limit = batch_limit
        self._timer: Optional[TimerHandle] = None
        self._running = False

    async def run_once(self) -> Dict[QueueName, int]:
        """One maintenance pass; returns the number of jobs removed per queue."""
        caps = {JobState.COMPLETED: self.max_completed, JobState.FAILED: self.max_failed}
        removed: Dict[QueueName, int] = {}
        for queue in QueueName:
            count = 0
            try:
                for state, cap in caps.items():
                    count += len(
                        await self.orchestrator.clean(
                            queue, state, grace_seconds=self.retention_seconds, limit=self.batch_limit
                        )
                    )
                    count += len(
                        await self.orchestrator.trim(queue, state, keep=cap, limit=self.batch_limit)
                    )
            except PlaceflowError as exc:
                logger.warning(f"Queue maintenance failed: {exc}", extra={"queue_name": queue.value})
            removed[queue] = count

        total = sum(removed.values())
        if total:
            logger.info(f"Queue maintenance removed {total} job(s)", extra={"count": total})
        return removed

    # =========================================================================
    # Scheduling
    # =========================================================================

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._schedule()
        logger.info(f"Queue maintenance every {self.interval_seconds}s")

    def stop(self) -> None:
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def is_running(self) -> bool:
        return self._running

    def _schedule(self) -> None:
        self._timer = self.scheduler.call_later(self.interval_seconds, self._tick)

    async def _tick(self) -> None:
        self._timer = None
        if not self._running:
            return
        try:
            await self.run_once()
        except Exception:
            logger.exception("Queue maintenance tick failed")
        finally:
            if self._running:
                self._schedule()
