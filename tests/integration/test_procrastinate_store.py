"""Integration tests against a real PostgreSQL with Procrastinate-shaped tables.

Each test runs in a throwaway schema holding minimal versions of
procrastinate_jobs, procrastinate_workers and procrastinate_events.

Run with: JOBWATCH_TEST_DATABASE_URL=postgresql://... pytest tests/integration/ -v
Requires: docker run -d -p 5432:5432 -e POSTGRES_PASSWORD=postgres postgres:16
"""

import asyncio
import json
import os
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import asyncpg
import pytest

from jobwatch.jobs.types import JobStatus
from jobwatch.repositories.jobs import JobQueryRepository
from jobwatch.services.subscription import (
    GLOBAL_CHANNEL,
    SubscriptionChannel,
    queue_channel,
)

DATABASE_URL = os.getenv("JOBWATCH_TEST_DATABASE_URL", "")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        not DATABASE_URL,
        reason="JOBWATCH_TEST_DATABASE_URL not set - skipping integration tests",
    ),
]

SCHEMA_SQL = """
CREATE TABLE procrastinate_workers (
    id bigserial PRIMARY KEY,
    last_heartbeat timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE procrastinate_jobs (
    id bigserial PRIMARY KEY,
    queue_name text NOT NULL,
    task_name text NOT NULL,
    priority integer NOT NULL DEFAULT 0,
    lock text,
    queueing_lock text,
    args jsonb NOT NULL DEFAULT '{}',
    status text NOT NULL DEFAULT 'todo',
    scheduled_at timestamptz,
    attempts integer NOT NULL DEFAULT 0,
    abort_requested boolean NOT NULL DEFAULT false,
    worker_id bigint
);

CREATE TABLE procrastinate_events (
    id bigserial PRIMARY KEY,
    job_id bigint NOT NULL,
    type text NOT NULL,
    at timestamptz NOT NULL DEFAULT now()
);
"""


@pytest.fixture
async def pool():
    schema = f"jobwatch_test_{uuid4().hex[:8]}"
    admin = await asyncpg.connect(DATABASE_URL)
    await admin.execute(f"CREATE SCHEMA {schema}")
    pool = await asyncpg.create_pool(
        DATABASE_URL,
        min_size=1,
        max_size=3,
        server_settings={"search_path": schema},
    )
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)
    try:
        yield pool
    finally:
        await pool.close()
        await admin.execute(f"DROP SCHEMA {schema} CASCADE")
        await admin.close()


async def _add_worker(conn, heartbeat_age: timedelta) -> int:
    return await conn.fetchval(
        "INSERT INTO procrastinate_workers (last_heartbeat) "
        "VALUES (now() - $1::interval) RETURNING id",
        heartbeat_age,
    )


async def _add_job(
    conn,
    status: str = "todo",
    queue: str = "default",
    worker_id=None,
    scheduled_at=None,
    args=None,
) -> int:
    return await conn.fetchval(
        """
        INSERT INTO procrastinate_jobs
            (queue_name, task_name, status, worker_id, scheduled_at, args)
        VALUES ($1, 'tasks.send', $2, $3, $4, $5::jsonb)
        RETURNING id
        """,
        queue,
        status,
        worker_id,
        scheduled_at,
        json.dumps(args or {}),
    )


async def _add_event(conn, job_id: int, event_type: str, age: timedelta) -> None:
    await conn.execute(
        "INSERT INTO procrastinate_events (job_id, type, at) "
        "VALUES ($1, $2, now() - $3::interval)",
        job_id,
        event_type,
        age,
    )


@pytest.mark.asyncio
async def test_orphan_detection(pool):
    """Stale heartbeats and silent due todo jobs are flagged; healthy ones are not."""
    async with pool.acquire() as conn:
        stale_worker = await _add_worker(conn, timedelta(minutes=45))
        live_worker = await _add_worker(conn, timedelta(minutes=2))

        stale_doing = await _add_job(conn, "doing", worker_id=stale_worker)
        live_doing = await _add_job(conn, "doing", worker_id=live_worker)
        missing_worker = await _add_job(conn, "doing", worker_id=999_999)

        silent_todo = await _add_job(conn, "todo")
        await _add_event(conn, silent_todo, "deferred", timedelta(hours=2))
        active_todo = await _add_job(conn, "todo")
        await _add_event(conn, active_todo, "deferred", timedelta(minutes=5))
        future_todo = await _add_job(
            conn, "todo", scheduled_at=datetime.now(timezone.utc) + timedelta(hours=1)
        )

        other_queue = await _add_job(conn, "doing", queue="other", worker_id=stale_worker)

    repo = JobQueryRepository(pool)
    orphaned = await repo.list_orphaned("default", timedelta(minutes=30))
    ids = [job.id for job in orphaned]

    assert ids == sorted([stale_doing, missing_worker, silent_todo])
    assert live_doing not in ids
    assert active_todo not in ids
    assert future_todo not in ids
    assert other_queue not in ids


@pytest.mark.asyncio
async def test_counts_match_unbounded_list(pool):
    async with pool.acquire() as conn:
        for status in ("todo", "todo", "doing", "failed", "succeeded", "succeeded"):
            await _add_job(conn, status)
        await _add_job(conn, "todo", queue="other")

    repo = JobQueryRepository(pool)
    counts = await repo.count_by_status("default")
    jobs = await repo.list_jobs("default", limit=None)

    assert sum(c.count for c in counts) == len(jobs) == 6
    by_status = {c.status: c.count for c in counts}
    assert by_status[JobStatus.TODO] == 2
    assert by_status[JobStatus.SUCCEEDED] == 2
    assert JobStatus.CANCELLED not in by_status


@pytest.mark.asyncio
async def test_list_jobs_newest_first_with_filter(pool):
    async with pool.acquire() as conn:
        first = await _add_job(conn, "failed", args={"to": "a@example.com"})
        await _add_job(conn, "todo")
        third = await _add_job(conn, "failed")

    repo = JobQueryRepository(pool)
    failed = await repo.list_jobs("default", status=JobStatus.FAILED)

    assert [j.id for j in failed] == [third, first]
    assert failed[1].args == {"to": "a@example.com"}


@pytest.mark.asyncio
async def test_recent_jobs_window(pool):
    async with pool.acquire() as conn:
        recent = await _add_job(conn, "todo")
        await _add_event(conn, recent, "deferred", timedelta(minutes=10))
        old = await _add_job(conn, "succeeded")
        await _add_event(conn, old, "deferred", timedelta(hours=2))

    repo = JobQueryRepository(pool)
    since = datetime.now(timezone.utc) - timedelta(hours=1)
    jobs = await repo.list_recent_jobs("default", since)

    assert [j.id for j in jobs] == [recent]


@pytest.mark.asyncio
async def test_job_detail_events_ascending(pool):
    async with pool.acquire() as conn:
        job_id = await _add_job(conn, "succeeded")
        await _add_event(conn, job_id, "succeeded", timedelta(minutes=1))
        await _add_event(conn, job_id, "deferred", timedelta(minutes=3))
        await _add_event(conn, job_id, "started", timedelta(minutes=2))

    repo = JobQueryRepository(pool)
    detail = await repo.get_job_detail(job_id)

    assert [e.type for e in detail.events] == ["deferred", "started", "succeeded"]
    assert await repo.get_job_detail(job_id + 1000) is None


@pytest.mark.asyncio
async def test_subscription_receives_and_switches(pool):
    conn = await asyncpg.connect(DATABASE_URL)
    channel = SubscriptionChannel(conn, "default")
    await channel.start()

    async def notify(name: str, job_id: int) -> None:
        payload = json.dumps({"type": "job_updated", "job_id": job_id})
        async with pool.acquire() as c:
            await c.execute("SELECT pg_notify($1, $2)", name, payload)

    async def next_event():
        return await asyncio.wait_for(channel.events().__anext__(), timeout=5.0)

    try:
        await notify(queue_channel("default"), 1)
        assert (await next_event()).job_id == 1

        await channel.switch_queue("emails")
        await notify(queue_channel("default"), 2)
        await notify(queue_channel("emails"), 3)
        await notify(GLOBAL_CHANNEL, 4)

        assert (await next_event()).job_id == 3
        assert (await next_event()).job_id == 4
    finally:
        await channel.stop()
