"""
Placeflow - Batch Accumulator

Groups individual work items into batches flushed by size or by time, and
bounds how many items of a batch execute at once.

Rules:
- Reaching batch_size flushes immediately; otherwise the first item of a new
  batch arms a batch_timeout timer.
- A flush swaps the pending list out in one synchronous step, so an item is
  never part of two flushes.
- Flushes never overlap. Items added during a flush wait for a follow-up
  flush that starts as soon as the current one ends.
- A batch is processed in chunks of max_concurrent items: one chunk at a
  time, items within a chunk concurrently.
- A failing item is reported as a FAILED batch event; its siblings go on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from ..core.models import BatchItem
from ..core.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

BatchProcessor = Callable[[BatchItem], Awaitable[Any]]


class BatchEventType(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class BatchEvent:
    type: BatchEventType
    item: BatchItem
    result: Any = None
    error: Optional[BaseException] = None


BatchListener = Callable[[BatchEvent], None]


def chunked(items: List[BatchItem], size: int) -> List[List[BatchItem]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class BatchAccumulator:
    """Size/time-bounded batching in front of a per-item processor."""

    def __init__(
        self,
        processor: BatchProcessor,
        scheduler: Scheduler,
        batch_size: int = 10,
        batch_timeout: float = 2.0,
        max_concurrent: int = 5,
    ) -> None:
        if batch_size < 1 or max_concurrent < 1:
            raise ValueError("batch_size and max_concurrent must be positive")
        self._processor = processor
        self._scheduler = scheduler
        self.batch_size = batch_size
        self.batch_timeout = batch_timeout
        self.max_concurrent = max_concurrent

        self._batch: List[BatchItem] = []
        self._timer: Optional[TimerHandle] = None
        self._processing = False
        self._active = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._listeners: List[BatchListener] = []

    # =========================================================================
    # Observers
    # =========================================================================

    def add_listener(self, listener: BatchListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: BatchListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: BatchEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Batch listener failed")

    # =========================================================================
    # Accumulation
    # =========================================================================

    async def add_to_batch(self, item: BatchItem) -> None:
        self._batch.append(item)
        if len(self._batch) >= self.batch_size:
            await self.flush()
        elif self._timer is None:
            self._timer = self._scheduler.call_later(self.batch_timeout, self._on_timeout)

    def _on_timeout(self) -> Awaitable[None]:
        self._timer = None
        return self.flush()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def flush(self) -> None:
        """
        Process everything pending. No-op when empty or when a flush is
        already running (that flush picks the new items up afterwards).
        """
        if self._processing or not self._batch:
            return

        self._cancel_timer()
        batch, self._batch = self._batch, []
        self._processing = True
        self._idle.clear()

        logger.debug("Flushing batch", extra={"batch_size": len(batch)})
        try:
            for chunk in chunked(batch, self.max_concurrent):
                await asyncio.gather(*(self._run_item(item) for item in chunk))
        finally:
            self._processing = False

        if self._batch:
            await self.flush()
        else:
            self._idle.set()

    async def _run_item(self, item: BatchItem) -> None:
        self._active += 1
        try:
            result = await self._processor(item)
        except Exception as exc:
            logger.warning(f"Batch item {item.id} failed: {exc}")
            self._emit(BatchEvent(type=BatchEventType.FAILED, item=item, error=exc))
        else:
            self._emit(BatchEvent(type=BatchEventType.COMPLETED, item=item, result=result))
        finally:
            self._active -= 1

    async def drain(self) -> None:
        """Flush pending items and wait until nothing is queued or running."""
        while self._batch or self._processing:
            if self._processing:
                await self._idle.wait()
            else:
                await self.flush()

    # =========================================================================
    # Introspection
    # =========================================================================

    def is_processing(self) -> bool:
        return self._processing

    def get_current_batch_size(self) -> int:
        return len(self._batch)

    def get_active_count(self) -> int:
        return self._active

    def has_pending_timer(self) -> bool:
        return self._timer is not None
