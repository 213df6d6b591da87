"""
Placeflow - Durable Queue Store

Job persistence behind the orchestrator. Nothing else mutates queue state.

Two implementations share the QueueStore protocol:

- PostgresQueueStore: production store. One row per job; workers in any
  number of processes claim with FOR UPDATE SKIP LOCKED so a job is handed
  to exactly one worker at a time.
- MemoryQueueStore: single-process store for development and tests. Work
  queued here is lost on restart.

Counting rule (both stores): every newly added job increments
total_enqueued; explicit deletes, cleanups and completed-job pruning
increment removed. For each queue the per-state counts always sum to
total_enqueued - removed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter, deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Protocol, Tuple

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from ..core.errors import InfrastructureError
from ..core.models import JobState, QueueJob, QueueName

logger = logging.getLogger(__name__)

CLEANABLE_STATES = (JobState.COMPLETED, JobState.FAILED)


def empty_counts() -> Dict[JobState, int]:
    return {state: 0 for state in JobState}


class QueueStore(Protocol):
    """Durable job storage used by the orchestrator."""

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def add(self, job: QueueJob) -> Tuple[QueueJob, bool]:
        """Insert a job; returns (job, created). An existing id returns the stored job."""
        ...

    async def claim(self, queue: QueueName, now: float) -> Optional[QueueJob]:
        """Promote due delayed jobs, then move the oldest waiting job to active."""
        ...

    async def complete(
        self, queue: QueueName, job_id: str, now: float, remove_on_complete: Optional[int]
    ) -> Optional[QueueJob]: ...

    async def retry_later(
        self, queue: QueueName, job_id: str, attempts_made: int, ready_at: float, reason: str
    ) -> Optional[QueueJob]: ...

    async def fail(
        self, queue: QueueName, job_id: str, attempts_made: int, now: float, reason: str
    ) -> Optional[QueueJob]: ...

    async def get(self, queue: QueueName, job_id: str) -> Optional[QueueJob]: ...

    async def delete(self, queue: QueueName, job_id: str) -> bool: ...

    async def list_jobs(
        self, queue: QueueName, state: Optional[JobState], offset: int, limit: int
    ) -> Tuple[List[QueueJob], int]: ...

    async def counts(self, queue: QueueName) -> Dict[JobState, int]: ...

    async def set_paused(self, queue: QueueName, paused: bool) -> None: ...

    async def is_paused(self, queue: QueueName) -> bool: ...

    async def total_enqueued(self, queue: QueueName) -> int: ...

    async def removed(self, queue: QueueName) -> int: ...

    async def retry_failed(self, queue: QueueName, job_id: str) -> Optional[QueueJob]: ...

    async def clean(
        self, queue: QueueName, state: JobState, older_than: float, limit: int
    ) -> List[str]: ...

    async def requeue_stalled(self, queue: QueueName, older_than: float) -> int: ...

    async def health(self) -> Dict[str, Any]: ...


# =============================================================================
# In-memory store
# =============================================================================


class MemoryQueueStore:
    """Process-local queue store. Single process only."""

    backend = "memory"

    def __init__(self) -> None:
        self._jobs: Dict[QueueName, Dict[str, QueueJob]] = {q: {} for q in QueueName}
        self._waiting: Dict[QueueName, Deque[str]] = {q: deque() for q in QueueName}
        self._paused: set[QueueName] = set()
        self._enqueued: Counter[QueueName] = Counter()
        self._removed: Counter[QueueName] = Counter()
        self._lock = asyncio.Lock()
        self._closed = False
        self._started_at = time.monotonic()
        self._ops = 0

    async def open(self) -> None:
        self._closed = False
        self._started_at = time.monotonic()

    async def close(self) -> None:
        self._closed = True

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[None]:
        if self._closed:
            raise InfrastructureError("Queue store is closed")
        async with self._lock:
            self._ops += 1
            yield

    def _put(self, job: QueueJob, **changes: Any) -> QueueJob:
        updated = job.model_copy(update=changes)
        self._jobs[job.queue_name][job.id] = updated
        return updated.model_copy(deep=True)

    def _drop(self, queue: QueueName, job_id: str) -> Optional[QueueJob]:
        job = self._jobs[queue].pop(job_id, None)
        if job is None:
            return None
        if job.state == JobState.WAITING:
            try:
                self._waiting[queue].remove(job_id)
            except ValueError:
                pass
        self._removed[queue] += 1
        return job

    async def add(self, job: QueueJob) -> Tuple[QueueJob, bool]:
        async with self._locked():
            existing = self._jobs[job.queue_name].get(job.id)
            if existing is not None:
                return existing.model_copy(deep=True), False
            stored = self._put(job)
            if job.state == JobState.WAITING:
                self._waiting[job.queue_name].append(job.id)
            self._enqueued[job.queue_name] += 1
            return stored, True

    async def claim(self, queue: QueueName, now: float) -> Optional[QueueJob]:
        async with self._locked():
            jobs = self._jobs[queue]
            due = sorted(
                (j for j in jobs.values() if j.state == JobState.DELAYED and (j.ready_at or 0) <= now),
                key=lambda j: j.ready_at or 0,
            )
            for job in due:
                self._put(job, state=JobState.WAITING, ready_at=None)
                self._waiting[queue].append(job.id)

            if not self._waiting[queue]:
                return None
            job_id = self._waiting[queue].popleft()
            return self._put(jobs[job_id], state=JobState.ACTIVE, processed_on=now)

    async def complete(
        self, queue: QueueName, job_id: str, now: float, remove_on_complete: Optional[int]
    ) -> Optional[QueueJob]:
        async with self._locked():
            job = self._jobs[queue].get(job_id)
            if job is None:
                return None
            stored = self._put(
                job, state=JobState.COMPLETED, finished_on=now, failed_reason=None, ready_at=None
            )
            if remove_on_complete is not None:
                completed = sorted(
                    (j for j in self._jobs[queue].values() if j.state == JobState.COMPLETED),
                    key=lambda j: j.finished_on or 0,
                )
                excess = len(completed) - remove_on_complete
                for old in completed[: max(excess, 0)]:
                    self._drop(queue, old.id)
            return stored

    async def retry_later(
        self, queue: QueueName, job_id: str, attempts_made: int, ready_at: float, reason: str
    ) -> Optional[QueueJob]:
        async with self._locked():
            job = self._jobs[queue].get(job_id)
            if job is None:
                return None
            return self._put(
                job,
                state=JobState.DELAYED,
                attempts_made=attempts_made,
                ready_at=ready_at,
                failed_reason=reason,
            )

    async def fail(
        self, queue: QueueName, job_id: str, attempts_made: int, now: float, reason: str
    ) -> Optional[QueueJob]:
        async with self._locked():
            job = self._jobs[queue].get(job_id)
            if job is None:
                return None
            return self._put(
                job,
                state=JobState.FAILED,
                attempts_made=attempts_made,
                finished_on=now,
                ready_at=None,
                failed_reason=reason,
            )

    async def get(self, queue: QueueName, job_id: str) -> Optional[QueueJob]:
        async with self._locked():
            job = self._jobs[queue].get(job_id)
            return job.model_copy(deep=True) if job else None

    async def delete(self, queue: QueueName, job_id: str) -> bool:
        async with self._locked():
            return self._drop(queue, job_id) is not None

    async def list_jobs(
        self, queue: QueueName, state: Optional[JobState], offset: int, limit: int
    ) -> Tuple[List[QueueJob], int]:
        async with self._locked():
            matching = [
                j for j in reversed(self._jobs[queue].values()) if state is None or j.state == state
            ]
            page = matching[offset : offset + limit]
            return [j.model_copy(deep=True) for j in page], len(matching)

    async def counts(self, queue: QueueName) -> Dict[JobState, int]:
        async with self._locked():
            counts = empty_counts()
            for job in self._jobs[queue].values():
                counts[job.state] += 1
            return counts

    async def set_paused(self, queue: QueueName, paused: bool) -> None:
        async with self._locked():
            if paused:
                self._paused.add(queue)
            else:
                self._paused.discard(queue)

    async def is_paused(self, queue: QueueName) -> bool:
        async with self._locked():
            return queue in self._paused

    async def total_enqueued(self, queue: QueueName) -> int:
        async with self._locked():
            return self._enqueued[queue]

    async def removed(self, queue: QueueName) -> int:
        async with self._locked():
            return self._removed[queue]

    async def retry_failed(self, queue: QueueName, job_id: str) -> Optional[QueueJob]:
        async with self._locked():
            job = self._jobs[queue].get(job_id)
            if job is None or job.state != JobState.FAILED:
                return None
            stored = self._put(
                job,
                state=JobState.WAITING,
                attempts_made=0,
                finished_on=None,
                processed_on=None,
                failed_reason=None,
            )
            self._waiting[queue].append(job_id)
            return stored

    async def clean(
        self, queue: QueueName, state: JobState, older_than: float, limit: int
    ) -> List[str]:
        async with self._locked():
            doomed = [
                j.id
                for j in self._jobs[queue].values()
                if j.state == state and (j.finished_on or j.timestamp) < older_than
            ][:limit]
            for job_id in doomed:
                self._drop(queue, job_id)
            return doomed

    async def requeue_stalled(self, queue: QueueName, older_than: float) -> int:
        async with self._locked():
            stalled = [
                j
                for j in self._jobs[queue].values()
                if j.state == JobState.ACTIVE and (j.processed_on or 0) < older_than
            ]
            for job in stalled:
                self._put(job, state=JobState.WAITING, processed_on=None)
                self._waiting[queue].append(job.id)
            return len(stalled)

    async def health(self) -> Dict[str, Any]:
        uptime = time.monotonic() - self._started_at
        total_jobs = sum(len(jobs) for jobs in self._jobs.values())
        return {
            "backend": self.backend,
            "connected": not self._closed,
            "memory": {"jobs": total_jobs},
            "connected_clients": 1,
            "ops_per_sec": round(self._ops / uptime, 2) if uptime > 0 else 0.0,
            "uptime_seconds": round(uptime, 1),
        }


# =============================================================================
# PostgreSQL store
# =============================================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS placeflow_jobs (
    queue_name      text NOT NULL,
    id              text NOT NULL,
    seq             bigserial,
    data            jsonb NOT NULL DEFAULT '{}'::jsonb,
    state           text NOT NULL,
    attempts_made   integer NOT NULL DEFAULT 0,
    max_attempts    integer NOT NULL DEFAULT 3,
    timestamp       double precision NOT NULL,
    ready_at        double precision,
    processed_on    double precision,
    finished_on     double precision,
    failed_reason   text,
    PRIMARY KEY (queue_name, id)
);
CREATE INDEX IF NOT EXISTS placeflow_jobs_claim_idx
    ON placeflow_jobs (queue_name, state, seq);
CREATE TABLE IF NOT EXISTS placeflow_queues (
    queue_name      text PRIMARY KEY,
    is_paused       boolean NOT NULL DEFAULT false,
    total_enqueued  bigint NOT NULL DEFAULT 0,
    removed         bigint NOT NULL DEFAULT 0
);
"""

JOB_COLUMNS = (
    "queue_name, id, data, state, attempts_made, max_attempts, timestamp, "
    "ready_at, processed_on, finished_on, failed_reason"
)


def _row_to_job(row: Dict[str, Any]) -> QueueJob:
    return QueueJob(
        id=row["id"],
        queue_name=QueueName(row["queue_name"]),
        data=row["data"] or {},
        state=JobState(row["state"]),
        attempts_made=row["attempts_made"],
        max_attempts=row["max_attempts"],
        timestamp=row["timestamp"],
        ready_at=row["ready_at"],
        processed_on=row["processed_on"],
        finished_on=row["finished_on"],
        failed_reason=row["failed_reason"],
    )


class PostgresQueueStore:
    """
    Queue store on PostgreSQL.

    Safe to share between processes: claims lock the selected row with
    FOR UPDATE SKIP LOCKED, and counters live in placeflow_queues.
    """

    backend = "postgres"

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self._pool = pool

    @asynccontextmanager
    async def _cursor(self) -> AsyncIterator[psycopg.AsyncCursor[Dict[str, Any]]]:
        try:
            async with self._pool.connection() as conn:
                async with conn.transaction():
                    async with conn.cursor(row_factory=dict_row) as cur:
                        yield cur
        except psycopg.OperationalError as exc:
            raise InfrastructureError(f"Queue store unavailable: {exc}") from exc

    async def open(self) -> None:
        """Create the tables and seed one counter row per queue."""
        async with self._cursor() as cur:
            await cur.execute(SCHEMA_SQL)
            for queue in QueueName:
                await cur.execute(
                    "INSERT INTO placeflow_queues (queue_name) VALUES (%s) "
                    "ON CONFLICT (queue_name) DO NOTHING",
                    (queue.value,),
                )
        logger.info("Postgres queue store ready")

    async def close(self) -> None:
        # The pool belongs to AppContext.
        return None

    async def _bump(
        self, cur: psycopg.AsyncCursor[Any], queue: QueueName, column: str, n: int
    ) -> None:
        if n <= 0:
            return
        await cur.execute(
            f"UPDATE placeflow_queues SET {column} = {column} + %s WHERE queue_name = %s",
            (n, queue.value),
        )

    async def add(self, job: QueueJob) -> Tuple[QueueJob, bool]:
        async with self._cursor() as cur:
            await cur.execute(
                f"""
                INSERT INTO placeflow_jobs ({JOB_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (queue_name, id) DO NOTHING
                RETURNING {JOB_COLUMNS}
                """,
                (
                    job.queue_name.value,
                    job.id,
                    Jsonb(job.data),
                    job.state.value,
                    job.attempts_made,
                    job.max_attempts,
                    job.timestamp,
                    job.ready_at,
                    job.processed_on,
                    job.finished_on,
                    job.failed_reason,
                ),
            )
            row = await cur.fetchone()
            if row is not None:
                await self._bump(cur, job.queue_name, "total_enqueued", 1)
                return _row_to_job(row), True

            await cur.execute(
                f"SELECT {JOB_COLUMNS} FROM placeflow_jobs WHERE queue_name = %s AND id = %s",
                (job.queue_name.value, job.id),
            )
            existing = await cur.fetchone()
            if existing is None:
                raise InfrastructureError(f"Job {job.id} vanished during enqueue")
            return _row_to_job(existing), False

    async def claim(self, queue: QueueName, now: float) -> Optional[QueueJob]:
        async with self._cursor() as cur:
            await cur.execute(
                """
                UPDATE placeflow_jobs
                SET state = 'waiting',
                    ready_at = NULL,
                    seq = nextval(pg_get_serial_sequence('placeflow_jobs', 'seq'))
                WHERE queue_name = %s AND state = 'delayed' AND ready_at <= %s
                """,
                (queue.value, now),
            )
            await cur.execute(
                f"""
                WITH next_job AS (
                    SELECT id FROM placeflow_jobs
                    WHERE queue_name = %s AND state = 'waiting'
                    ORDER BY seq ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE placeflow_jobs j
                SET state = 'active', processed_on = %s
                FROM next_job
                WHERE j.queue_name = %s AND j.id = next_job.id
                RETURNING {", ".join("j." + c.strip() for c in JOB_COLUMNS.split(","))}
                """,
                (queue.value, now, queue.value),
            )
            row = await cur.fetchone()
            return _row_to_job(row) if row else None

    async def _update(
        self,
        cur: psycopg.AsyncCursor[Any],
        queue: QueueName,
        job_id: str,
        assignments: str,
        params: Tuple[Any, ...],
    ) -> Optional[QueueJob]:
        await cur.execute(
            f"""
            UPDATE placeflow_jobs SET {assignments}
            WHERE queue_name = %s AND id = %s
            RETURNING {JOB_COLUMNS}
            """,
            (*params, queue.value, job_id),
        )
        row = await cur.fetchone()
        return _row_to_job(row) if row else None

    async def complete(
        self, queue: QueueName, job_id: str, now: float, remove_on_complete: Optional[int]
    ) -> Optional[QueueJob]:
        async with self._cursor() as cur:
            job = await self._update(
                cur,
                queue,
                job_id,
                "state = 'completed', finished_on = %s, failed_reason = NULL, ready_at = NULL",
                (now,),
            )
            if job is not None and remove_on_complete is not None:
                await cur.execute(
                    """
                    WITH doomed AS (
                        SELECT id FROM placeflow_jobs
                        WHERE queue_name = %s AND state = 'completed'
                        ORDER BY finished_on DESC, seq DESC
                        OFFSET %s
                    )
                    DELETE FROM placeflow_jobs j
                    USING doomed
                    WHERE j.queue_name = %s AND j.id = doomed.id
                    """,
                    (queue.value, remove_on_complete, queue.value),
                )
                await self._bump(cur, queue, "removed", cur.rowcount)
            return job

    async def retry_later(
        self, queue: QueueName, job_id: str, attempts_made: int, ready_at: float, reason: str
    ) -> Optional[QueueJob]:
        async with self._cursor() as cur:
            return await self._update(
                cur,
                queue,
                job_id,
                "state = 'delayed', attempts_made = %s, ready_at = %s, failed_reason = %s",
                (attempts_made, ready_at, reason),
            )

    async def fail(
        self, queue: QueueName, job_id: str, attempts_made: int, now: float, reason: str
    ) -> Optional[QueueJob]:
        async with self._cursor() as cur:
            return await self._update(
                cur,
                queue,
                job_id,
                "state = 'failed', attempts_made = %s, finished_on = %s, "
                "ready_at = NULL, failed_reason = %s",
                (attempts_made, now, reason),
            )

    async def get(self, queue: QueueName, job_id: str) -> Optional[QueueJob]:
        async with self._cursor() as cur:
            await cur.execute(
                f"SELECT {JOB_COLUMNS} FROM placeflow_jobs WHERE queue_name = %s AND id = %s",
                (queue.value, job_id),
            )
            row = await cur.fetchone()
            return _row_to_job(row) if row else None

    async def delete(self, queue: QueueName, job_id: str) -> bool:
        async with self._cursor() as cur:
            await cur.execute(
                "DELETE FROM placeflow_jobs WHERE queue_name = %s AND id = %s",
                (queue.value, job_id),
            )
            deleted = cur.rowcount
            await self._bump(cur, queue, "removed", deleted)
            return deleted > 0

    async def list_jobs(
        self, queue: QueueName, state: Optional[JobState], offset: int, limit: int
    ) -> Tuple[List[QueueJob], int]:
        where = "queue_name = %s"
        params: List[Any] = [queue.value]
        if state is not None:
            where += " AND state = %s"
            params.append(state.value)
        async with self._cursor() as cur:
            await cur.execute(f"SELECT count(*) AS total FROM placeflow_jobs WHERE {where}", params)
            total_row = await cur.fetchone()
            await cur.execute(
                f"""
                SELECT {JOB_COLUMNS} FROM placeflow_jobs
                WHERE {where}
                ORDER BY seq DESC
                OFFSET %s LIMIT %s
                """,
                (*params, offset, limit),
            )
            rows = await cur.fetchall()
        return [_row_to_job(r) for r in rows], int(total_row["total"] if total_row else 0)

    async def counts(self, queue: QueueName) -> Dict[JobState, int]:
        counts = empty_counts()
        async with self._cursor() as cur:
            await cur.execute(
                "SELECT state, count(*) AS n FROM placeflow_jobs WHERE queue_name = %s GROUP BY state",
                (queue.value,),
            )
            for row in await cur.fetchall():
                counts[JobState(row["state"])] = int(row["n"])
        return counts

    async def _queue_row(self, queue: QueueName) -> Dict[str, Any]:
        async with self._cursor() as cur:
            await cur.execute(
                "SELECT is_paused, total_enqueued, removed FROM placeflow_queues WHERE queue_name = %s",
                (queue.value,),
            )
            row = await cur.fetchone()
        return row or {"is_paused": False, "total_enqueued": 0, "removed": 0}

    async def set_paused(self, queue: QueueName, paused: bool) -> None:
        async with self._cursor() as cur:
            await cur.execute(
                "UPDATE placeflow_queues SET is_paused = %s WHERE queue_name = %s",
                (paused, queue.value),
            )

    async def is_paused(self, queue: QueueName) -> bool:
        return bool((await self._queue_row(queue))["is_paused"])

    async def total_enqueued(self, queue: QueueName) -> int:
        return int((await self._queue_row(queue))["total_enqueued"])

    async def removed(self, queue: QueueName) -> int:
        return int((await self._queue_row(queue))["removed"])

    async def retry_failed(self, queue: QueueName, job_id: str) -> Optional[QueueJob]:
        async with self._cursor() as cur:
            await cur.execute(
                f"""
                UPDATE placeflow_jobs
                SET state = 'waiting', attempts_made = 0, finished_on = NULL,
                    processed_on = NULL, failed_reason = NULL,
                    seq = nextval(pg_get_serial_sequence('placeflow_jobs', 'seq'))
                WHERE queue_name = %s AND id = %s AND state = 'failed'
                RETURNING {JOB_COLUMNS}
                """,
                (queue.value, job_id),
            )
            row = await cur.fetchone()
            return _row_to_job(row) if row else None

    async def clean(
        self, queue: QueueName, state: JobState, older_than: float, limit: int
    ) -> List[str]:
        async with self._cursor() as cur:
            await cur.execute(
                """
                WITH doomed AS (
                    SELECT id FROM placeflow_jobs
                    WHERE queue_name = %s AND state = %s
                      AND coalesce(finished_on, timestamp) < %s
                    ORDER BY seq ASC
                    LIMIT %s
                )
                DELETE FROM placeflow_jobs j
                USING doomed
                WHERE j.queue_name = %s AND j.id = doomed.id
                RETURNING j.id
                """,
                (queue.value, state.value, older_than, limit, queue.value),
            )
            ids = [row["id"] for row in await cur.fetchall()]
            await self._bump(cur, queue, "removed", len(ids))
            return ids

    async def requeue_stalled(self, queue: QueueName, older_than: float) -> int:
        async with self._cursor() as cur:
            await cur.execute(
                """
                UPDATE placeflow_jobs
                SET state = 'waiting', processed_on = NULL
                WHERE queue_name = %s AND state = 'active' AND processed_on < %s
                """,
                (queue.value, older_than),
            )
            return cur.rowcount

    async def health(self) -> Dict[str, Any]:
        async with self._cursor() as cur:
            await cur.execute(
                """
                SELECT
                    pg_database_size(current_database()) AS database_bytes,
                    (SELECT count(*) FROM pg_stat_activity
                      WHERE datname = current_database()) AS connected_clients,
                    (SELECT xact_commit + xact_rollback FROM pg_stat_database
                      WHERE datname = current_database()) AS transactions,
                    extract(epoch FROM now() - pg_postmaster_start_time()) AS uptime_seconds
                """
            )
            row = await cur.fetchone()
        if row is None:
            raise InfrastructureError("Database statistics are unavailable")
        uptime = float(row["uptime_seconds"] or 0)
        transactions = int(row["transactions"] or 0)
        return {
            "backend": self.backend,
            "connected": True,
            "memory": {"database_bytes": int(row["database_bytes"] or 0)},
            "connected_clients": int(row["connected_clients"] or 0),
            "ops_per_sec": round(transactions / uptime, 2) if uptime > 0 else 0.0,
            "uptime_seconds": round(uptime, 1),
        }
