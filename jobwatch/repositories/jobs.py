"""Read-only repository for Procrastinate job queue tables."""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Optional

import asyncpg
import structlog

from jobwatch.errors import QueryError
from jobwatch.jobs.models import Job, JobDetail, JobEvent, StatusCount
from jobwatch.jobs.types import JobStatus

logger = structlog.get_logger(__name__)

# Caps the live view during bursty activity
RECENT_JOBS_LIMIT = 200

JOB_COLUMNS = """
    j.id, j.queue_name, j.task_name, j.priority, j.lock, j.queueing_lock,
    j.args, j.status, j.scheduled_at, j.attempts, j.abort_requested, j.worker_id
"""

# Failures that mean the store could not answer
_STORE_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)


class JobQueryRepository:
    """Stateless read operations against the job store.

    Every method acquires its own pool connection, so calls may run
    concurrently on the shared pool.
    """

    def __init__(self, pool):
        self._pool = pool

    @asynccontextmanager
    async def _query(self, operation: str) -> AsyncIterator[Any]:
        """Acquire a connection and map store failures to QueryError."""
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except _STORE_ERRORS as e:
            logger.warning("query_failed", operation=operation, error=str(e))
            raise QueryError(f"{operation}: {e}", operation=operation) from e
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("query_malformed_row", operation=operation, error=str(e))
            raise QueryError(
                f"{operation}: malformed row: {e}", operation=operation
            ) from e

    async def list_queues(self) -> list[str]:
        """Return all distinct queue names, sorted."""
        query = """
            SELECT DISTINCT queue_name FROM procrastinate_jobs
            ORDER BY queue_name
        """
        async with self._query("list_queues") as conn:
            rows = await conn.fetch(query)
            return [row["queue_name"] for row in rows]

    async def list_jobs(
        self,
        queue: str,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = 100,
        offset: int = 0,
    ) -> list[Job]:
        """List jobs for a queue, newest first.

        Args:
            queue: Queue name
            status: Optional status filter
            limit: Max results (None = unbounded)
            offset: Pagination offset

        Returns:
            Jobs ordered by id descending
        """
        conditions = ["j.queue_name = $1"]
        params: list[Any] = [queue]
        param_idx = 2

        if status is not None:
            conditions.append(f"j.status = ${param_idx}")
            params.append(JobStatus(status).value)
            param_idx += 1

        query = f"""
            SELECT {JOB_COLUMNS}
            FROM procrastinate_jobs j
            WHERE {" AND ".join(conditions)}
            ORDER BY j.id DESC
            LIMIT ${param_idx} OFFSET ${param_idx + 1}
        """
        params.extend([limit, offset])

        async with self._query("list_jobs") as conn:
            rows = await conn.fetch(query, *params)
            return [self._row_to_job(row) for row in rows]

    async def get_job(self, job_id: int) -> Optional[Job]:
        """Get a job by ID."""
        query = f"""
            SELECT {JOB_COLUMNS}
            FROM procrastinate_jobs j
            WHERE j.id = $1
        """
        async with self._query("get_job") as conn:
            row = await conn.fetchrow(query, job_id)
            return self._row_to_job(row) if row else None

    async def get_job_events(self, job_id: int) -> list[JobEvent]:
        """Get a job's event history, oldest first."""
        query = """
            SELECT id, job_id, type, at
            FROM procrastinate_events
            WHERE job_id = $1
            ORDER BY at ASC
        """
        async with self._query("get_job_events") as conn:
            rows = await conn.fetch(query, job_id)
            return [self._row_to_event(row) for row in rows]

    async def get_job_detail(self, job_id: int) -> Optional[JobDetail]:
        """Get a job plus its event history. None if the job does not exist."""
        job = await self.get_job(job_id)
        if job is None:
            return None
        events = await self.get_job_events(job_id)
        return JobDetail(job=job, events=events)

    async def count_by_status(self, queue: str) -> list[StatusCount]:
        """Count jobs per status for a queue.

        Only statuses present in the queue are returned; callers fill the
        rest with zero (see ``fill_status_counts``).
        """
        query = """
            SELECT status, COUNT(*) AS count
            FROM procrastinate_jobs
            WHERE queue_name = $1
            GROUP BY status
            ORDER BY status
        """
        async with self._query("count_by_status") as conn:
            rows = await conn.fetch(query, queue)
            return [
                StatusCount(status=JobStatus(row["status"]), count=row["count"])
                for row in rows
            ]

    async def list_recent_jobs(self, queue: str, since: datetime) -> list[Job]:
        """List jobs deferred at or after ``since``, newest first."""
        query = f"""
            SELECT {JOB_COLUMNS}
            FROM procrastinate_jobs j
            JOIN procrastinate_events e ON e.job_id = j.id
            WHERE j.queue_name = $1
              AND e.type = 'deferred'
              AND e.at >= $2
            ORDER BY j.id DESC
            LIMIT {RECENT_JOBS_LIMIT}
        """
        async with self._query("list_recent_jobs") as conn:
            rows = await conn.fetch(query, queue, since)
            return [self._row_to_job(row) for row in rows]

    async def list_orphaned(self, queue: str, threshold: timedelta) -> list[Job]:
        """List jobs that appear stuck or abandoned.

        Two strategies, unioned:

        1. ``doing`` jobs whose worker row is missing or whose last
           heartbeat is older than ``threshold``.
        2. ``todo`` jobs that are due (not scheduled in the future) and have
           had no event of any kind within ``threshold``.

        This is a heuristic: a slow dispatcher or a worker that stops
        heartbeating but still finishes will show up here.
        """
        query = f"""
            SELECT {JOB_COLUMNS}
            FROM procrastinate_jobs j
            LEFT JOIN procrastinate_workers w ON j.worker_id = w.id
            WHERE j.queue_name = $1
              AND j.status = 'doing'
              AND (w.id IS NULL OR w.last_heartbeat < now() - $2::interval)

            UNION ALL

            SELECT {JOB_COLUMNS}
            FROM procrastinate_jobs j
            WHERE j.queue_name = $1
              AND j.status = 'todo'
              AND (j.scheduled_at IS NULL OR j.scheduled_at <= now())
              AND NOT EXISTS (
                SELECT 1 FROM procrastinate_events e
                WHERE e.job_id = j.id AND e.at > now() - $2::interval
              )

            ORDER BY id ASC
        """
        async with self._query("list_orphaned") as conn:
            rows = await conn.fetch(query, queue, threshold)
            return [self._row_to_job(row) for row in rows]

    def _row_to_job(self, row) -> Job:
        """Convert a database row to a Job model."""
        args = row["args"]
        if isinstance(args, (str, bytes)):
            args = json.loads(args)
        return Job(
            id=row["id"],
            queue_name=row["queue_name"],
            task_name=row["task_name"],
            priority=row["priority"],
            lock=row["lock"],
            queueing_lock=row["queueing_lock"],
            args=args if args is not None else {},
            status=JobStatus(row["status"]),
            scheduled_at=row["scheduled_at"],
            attempts=row["attempts"],
            abort_requested=row["abort_requested"],
            worker_id=row["worker_id"],
        )

    def _row_to_event(self, row) -> JobEvent:
        """Convert a database row to a JobEvent model."""
        return JobEvent(
            id=row["id"],
            job_id=row["job_id"],
            type=row["type"],
            at=row["at"],
        )
