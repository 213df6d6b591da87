"""
Placeflow - Scheduler

Single timer abstraction shared by the batch accumulator (flush timeouts),
the job queue orchestrator (retry delays, idle polling) and the metrics
collector (collection ticks).

Components never call time.time(), asyncio.sleep() or loop.call_later()
directly; they go through a Scheduler so tests can substitute a fake clock.

Callbacks passed to call_later() may be plain functions or return an
awaitable; awaitables are run as tasks on the loop and their failures are
logged, never raised into the loop's exception handler.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Protocol, Set

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Any]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...

    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    """Clock plus delayed execution."""

    def now(self) -> float:
        """Current wall-clock time as epoch seconds."""
        ...

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle: ...

    async def sleep(self, delay: float) -> None: ...


class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task[Any]] = set()

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), self._fire, callback)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))

    def _fire(self, callback: TimerCallback) -> None:
        try:
            result = callback()
        except Exception:
            logger.exception("Scheduled callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduled task failed: %s", exc, exc_info=exc)

    async def shutdown(self) -> None:
        """Cancel tasks spawned by timer callbacks that are still running."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
