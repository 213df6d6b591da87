"""
Placeflow - Job Queue Orchestrator

Owns the named queues: enqueue, worker pools, retry/backoff and job state.

Lifecycle of a job:
    enqueue -> waiting (or delayed) -> active -> completed
                                            \\-> delayed -> waiting -> active ... (retry)
                                            \\-> failed (attempts exhausted / not retryable)

Failed jobs are retained for operator inspection until an explicit delete
or clean. Completed jobs are pruned beyond QueueConfig.remove_on_complete.

Observers register with add_listener() and receive a JobEvent for every
completed job, every retry and every final failure. Listener exceptions are
logged and never change job state.

Usage:
    orchestrator = JobQueueOrchestrator(store, queue_configs, scheduler)
    orchestrator.register_handler(QueueName.ENRICHMENT, handle_enrichment)
    await orchestrator.start()
    job = await orchestrator.enqueue(QueueName.ENRICHMENT, {"record": {...}})
    ...
    await orchestrator.close(timeout=30)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..core.config import QueueConfig
from ..core.errors import (
    InfrastructureError,
    JobNotFoundError,
    PlaceflowError,
    UnknownQueueError,
)
from ..core.logging import (
    LogContext,
    Timer,
    log_worker_failure,
    log_worker_start,
    log_worker_success,
)
from ..core.models import JobEvent, JobEventType, JobState, QueueJob, QueueName
from ..core.scheduler import Scheduler
from .backoff import RetryPolicy
from .queue_store import CLEANABLE_STATES, QueueStore

logger = logging.getLogger(__name__)

JobHandler = Callable[[QueueJob], Awaitable[Any]]
JobListener = Callable[[JobEvent], None]

DEFAULT_POLL_INTERVAL = 0.5


def parse_queue_name(value: str | QueueName) -> QueueName:
    """Resolve a queue name, raising UnknownQueueError outside the closed set."""
    if isinstance(value, QueueName):
        return value
    try:
        return QueueName(value)
    except ValueError:
        raise UnknownQueueError(f"Unknown queue: {value}", queue_name=value) from None


class JobQueueOrchestrator:
    """Durable named queues with per-queue worker pools."""

    def __init__(
        self,
        store: QueueStore,
        queue_configs: Dict[QueueName, QueueConfig],
        scheduler: Scheduler,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.poll_interval = poll_interval
        self._configs = {q: queue_configs.get(q, QueueConfig()) for q in QueueName}
        self._handlers: Dict[QueueName, JobHandler] = {}
        self._listeners: List[JobListener] = []
        self._workers: List[asyncio.Task[None]] = []
        self._in_flight: set[asyncio.Task[Any]] = set()
        self._running = False
        self._closed = False

    # =========================================================================
    # Registration
    # =========================================================================

    def config_for(self, queue: QueueName) -> QueueConfig:
        return self._configs[queue]

    def register_handler(self, queue: QueueName, handler: JobHandler) -> None:
        self._handlers[queue] = handler

    def add_listener(self, listener: JobListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: JobListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: JobEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    f"Job listener {getattr(listener, '__qualname__', listener)!r} failed",
                    extra={"job_id": event.job.id, "queue_name": event.queue_name.value},
                )

    # =========================================================================
    # Enqueue
    # =========================================================================

    async def enqueue(
        self,
        queue: QueueName | str,
        payload: Dict[str, Any],
        *,
        job_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
        delay: float = 0.0,
    ) -> QueueJob:
        """
        Write a job and return immediately.

        A job_id already present in the queue returns the stored job
        unchanged, so callers can retry an enqueue safely.

        Raises:
            UnknownQueueError: queue is not one of QueueName
            InfrastructureError: the store rejected the write; no job exists
        """
        name = parse_queue_name(queue)
        if self._closed:
            raise InfrastructureError("Orchestrator is closed")

        config = self._configs[name]
        now = self.scheduler.now()
        job = QueueJob(
            id=job_id or str(uuid.uuid4()),
            queue_name=name,
            data=payload,
            state=JobState.DELAYED if delay > 0 else JobState.WAITING,
            max_attempts=max_attempts or config.max_attempts,
            timestamp=now,
            ready_at=now + delay if delay > 0 else None,
        )
        try:
            stored, created = await self.store.add(job)
        except PlaceflowError:
            raise
        except Exception as exc:
            raise InfrastructureError(
                f"Failed to enqueue job on {name.value}: {exc}", queue_name=name.value
            ) from exc

        if created:
            logger.info(
                "Job enqueued",
                extra={"job_id": stored.id, "queue_name": name.value, "status": stored.state.value},
            )
        else:
            logger.debug(
                "Duplicate enqueue ignored",
                extra={"job_id": stored.id, "queue_name": name.value},
            )
        return stored

    # =========================================================================
    # Execution
    # =========================================================================

    async def process_next(self, queue: QueueName | str) -> bool:
        """
        Claim and run one job from `queue`.

        Returns False when the queue is paused, has no handler or nothing is
        due, True when a job was executed (whatever its outcome).
        """
        name = parse_queue_name(queue)
        handler = self._handlers.get(name)
        if handler is None or await self.store.is_paused(name):
            return False

        job = await self.store.claim(name, self.scheduler.now())
        if job is None:
            return False

        await self._execute(name, job, handler)
        return True

    async def _execute(self, queue: QueueName, job: QueueJob, handler: JobHandler) -> None:
        config = self._configs[queue]
        attempt = job.attempts_made + 1

        with LogContext(job_id=job.id, queue_name=queue.value):
            log_worker_start(logger, queue.value, job.id, attempt, job.max_attempts)
            error: Optional[Exception] = None
            with Timer() as timer:
                try:
                    await handler(job)
                except Exception as exc:
                    error = exc

            if error is None:
                await self._on_success(queue, job, config, timer.elapsed_ms)
            else:
                await self._on_failure(queue, job, config, error, timer.elapsed_ms)

    async def _on_success(
        self, queue: QueueName, job: QueueJob, config: QueueConfig, duration_ms: float
    ) -> None:
        stored = await self.store.complete(
            queue, job.id, self.scheduler.now(), config.remove_on_complete
        )
        log_worker_success(logger, queue.value, job.id, duration_ms)
        if stored is None:
            logger.warning("Job was deleted while active", extra={"job_id": job.id})
            stored = job.model_copy(update={"state": JobState.COMPLETED})
        self._emit(
            JobEvent(
                type=JobEventType.COMPLETED,
                job=stored,
                timestamp=self.scheduler.now(),
                duration_seconds=duration_ms / 1000,
            )
        )

    async def _on_failure(
        self,
        queue: QueueName,
        job: QueueJob,
        config: QueueConfig,
        error: Exception,
        duration_ms: float,
    ) -> None:
        attempts_made = job.attempts_made + 1
        policy = RetryPolicy(
            max_attempts=job.max_attempts, initial_delay=config.initial_backoff_seconds
        )
        decision = policy.decide(error, attempts_made)
        reason = str(error) or type(error).__name__
        now = self.scheduler.now()

        log_worker_failure(
            logger,
            queue.value,
            job.id,
            error,
            duration_ms,
            attempts_made,
            job.max_attempts,
            will_retry=decision.retry,
        )

        if decision.retry:
            stored = await self.store.retry_later(
                queue, job.id, attempts_made, now + decision.delay, reason
            )
            event_type = JobEventType.RETRYING
        else:
            stored = await self.store.fail(queue, job.id, attempts_made, now, reason)
            event_type = JobEventType.FAILED

        if stored is None:
            logger.warning("Job was deleted while active", extra={"job_id": job.id})
            stored = job.model_copy(update={"attempts_made": attempts_made, "failed_reason": reason})

        self._emit(
            JobEvent(
                type=event_type,
                job=stored,
                timestamp=now,
                error=error,
                duration_seconds=duration_ms / 1000,
                delay_seconds=decision.delay if decision.retry else None,
            )
        )

    # =========================================================================
    # Worker pools
    # =========================================================================

    async def start(self) -> None:
        """Recover stalled jobs and start `concurrency` worker loops per handled queue."""
        if self._running:
            return
        self._running = True

        for queue in self._handlers:
            config = self._configs[queue]
            recovered = await self.store.requeue_stalled(
                queue, self.scheduler.now() - config.stalled_timeout_seconds
            )
            if recovered:
                logger.warning(
                    f"Recovered {recovered} stalled job(s)",
                    extra={"queue_name": queue.value, "count": recovered},
                )
            for index in range(config.concurrency):
                task = asyncio.create_task(
                    self._worker_loop(queue), name=f"placeflow-{queue.value}-{index}"
                )
                self._workers.append(task)

        logger.info(
            "Queue workers started",
            extra={"count": len(self._workers)},
        )

    async def _worker_loop(self, queue: QueueName) -> None:
        while self._running:
            try:
                task = asyncio.ensure_future(self.process_next(queue))
                self._in_flight.add(task)
                try:
                    processed = await asyncio.shield(task)
                finally:
                    if task.done():
                        self._in_flight.discard(task)
            except asyncio.CancelledError:
                raise
            except InfrastructureError as exc:
                logger.error(f"Queue store unavailable: {exc}", extra={"queue_name": queue.value})
                processed = False
            except Exception:
                logger.exception("Worker loop iteration failed", extra={"queue_name": queue.value})
                processed = False

            if not processed and self._running:
                await self.scheduler.sleep(self.poll_interval)

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Queue control and inspection
    # =========================================================================

    async def pause(self, queue: QueueName | str) -> None:
        name = parse_queue_name(queue)
        await self.store.set_paused(name, True)
        logger.info("Queue paused", extra={"queue_name": name.value})

    async def resume(self, queue: QueueName | str) -> None:
        name = parse_queue_name(queue)
        await self.store.set_paused(name, False)
        logger.info("Queue resumed", extra={"queue_name": name.value})

    async def is_paused(self, queue: QueueName | str) -> bool:
        return await self.store.is_paused(parse_queue_name(queue))

    async def get_job_counts(self, queue: QueueName | str) -> Dict[JobState, int]:
        return await self.store.counts(parse_queue_name(queue))

    async def get_total_enqueued(self, queue: QueueName | str) -> int:
        return await self.store.total_enqueued(parse_queue_name(queue))

    async def get_removed(self, queue: QueueName | str) -> int:
        return await self.store.removed(parse_queue_name(queue))

    async def get_jobs(
        self,
        queue: QueueName | str,
        state: Optional[JobState] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[QueueJob], int]:
        """One page of jobs (newest first) and the total matching count."""
        page = max(page, 1)
        limit = max(limit, 1)
        return await self.store.list_jobs(
            parse_queue_name(queue), state, (page - 1) * limit, limit
        )

    async def get_job(self, queue: QueueName | str, job_id: str) -> QueueJob:
        name = parse_queue_name(queue)
        job = await self.store.get(name, job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found in {name.value}", job_id=job_id)
        return job

    async def get_all_jobs(self) -> Dict[QueueName, Dict[JobState, int]]:
        return {queue: await self.store.counts(queue) for queue in QueueName}

    async def delete_job(self, queue: QueueName | str, job_id: str) -> None:
        """Remove a job whatever its state. A running handler is not interrupted."""
        name = parse_queue_name(queue)
        if not await self.store.delete(name, job_id):
            raise JobNotFoundError(f"Job {job_id} not found in {name.value}", job_id=job_id)
        logger.info("Job deleted", extra={"job_id": job_id, "queue_name": name.value})

    async def retry_job(self, queue: QueueName | str, job_id: str) -> QueueJob:
        """Send a failed job back to waiting with a fresh attempt budget."""
        name = parse_queue_name(queue)
        job = await self.store.retry_failed(name, job_id)
        if job is None:
            raise JobNotFoundError(
                f"No failed job {job_id} in {name.value}", job_id=job_id
            )
        logger.info("Job re-queued", extra={"job_id": job_id, "queue_name": name.value})
        return job

    async def clean(
        self,
        queue: QueueName | str,
        state: JobState = JobState.COMPLETED,
        grace_seconds: float = 0.0,
        limit: int = 1000,
    ) -> List[str]:
        """Remove completed or failed jobs finished more than `grace_seconds` ago."""
        name = parse_queue_name(queue)
        if state not in CLEANABLE_STATES:
            raise ValueError(f"Only completed or failed jobs can be cleaned, not {state.value}")
        removed = await self.store.clean(
            name, state, self.scheduler.now() - grace_seconds, limit
        )
        if removed:
            logger.info(
                f"Cleaned {len(removed)} {state.value} job(s)",
                extra={"queue_name": name.value, "count": len(removed)},
            )
        return removed

    async def trim(
        self,
        queue: QueueName | str,
        state: JobState,
        keep: int,
        limit: int = 1000,
    ) -> List[str]:
        """Remove completed or failed jobs beyond the `keep` most recently enqueued."""
        name = parse_queue_name(queue)
        if state not in CLEANABLE_STATES:
            raise ValueError(f"Only completed or failed jobs can be trimmed, not {state.value}")
        surplus, _ = await self.store.list_jobs(name, state, max(keep, 0), limit)
        removed = [job.id for job in surplus if await self.store.delete(name, job.id)]
        if removed:
            logger.info(
                f"Trimmed {len(removed)} {state.value} job(s) beyond {keep}",
                extra={"queue_name": name.value, "count": len(removed)},
            )
        return removed

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def close(self, timeout: float = 30.0) -> None:
        """
        Stop dispatch, wait up to `timeout` for in-flight handlers, then
        cancel what remains and close the store.
        """
        if self._closed:
            return
        self._running = False
        self._closed = True

        in_flight = [t for t in self._in_flight if not t.done()]
        if in_flight:
            logger.info(
                f"Waiting for {len(in_flight)} in-flight job(s)",
                extra={"count": len(in_flight)},
            )
            _, pending = await asyncio.wait(in_flight, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(
                    f"Cancelled {len(pending)} job(s) still running after {timeout}s",
                    extra={"count": len(pending)},
                )
                await asyncio.gather(*pending, return_exceptions=True)

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        self._in_flight.clear()

        await self.store.close()
        logger.info("Orchestrator closed")
