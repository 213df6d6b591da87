"""
Placeflow - Standalone Worker Runner

Runs the queue workers without the HTTP API, so enrichment throughput can
scale independently of the web process. Several runners may share one
Postgres queue store.

Usage:
    python -m placeflow.workers.runner

SIGTERM / SIGINT stop dispatch, let in-flight jobs finish for up to
SHUTDOWN_TIMEOUT_SECONDS and close the store.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from ..context import AppContext
from ..core.config import Settings, get_settings
from ..core.errors import InfrastructureError
from ..core.logging import configure_logging

logger = logging.getLogger(__name__)


class ShutdownSignal:
    """SIGTERM/SIGINT bridge onto an asyncio.Event."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.trigger, sig)
            except NotImplementedError:
                # Windows event loops have no add_signal_handler
                signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(self.trigger, signum))

    def trigger(self, signum: int = signal.SIGTERM) -> None:
        if not self._event.is_set():
            logger.info(f"Received {signal.Signals(signum).name}, initiating graceful shutdown...")
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


async def run(settings: Settings, shutdown: ShutdownSignal) -> None:
    context = AppContext(settings)
    await context.open(start_workers=True)
    logger.info("Worker runner started")
    try:
        await shutdown.wait()
    finally:
        await context.close()


async def _main() -> int:
    settings = get_settings()
    configure_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON, service_name="placeflow-worker")
    if settings.QUEUE_BACKEND == "memory":
        logger.warning("Worker runner on the memory store only sees jobs enqueued by itself")

    shutdown = ShutdownSignal()
    shutdown.install(asyncio.get_running_loop())
    try:
        await run(settings, shutdown)
    except InfrastructureError as exc:
        logger.error(f"Worker runner could not start: {exc}")
        return 1
    return 0


def main() -> None:
    sys.exit(asyncio.run(_main()))


if __name__ == "__main__":
    main()
