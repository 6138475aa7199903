"""Job system data models."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from jobwatch.jobs.types import JobStatus


@dataclass(frozen=True)
class Job:
    """A row from procrastinate_jobs."""

    id: int
    queue_name: str
    task_name: str
    status: JobStatus
    priority: int = 0

    # Locks
    lock: Optional[str] = None
    queueing_lock: Optional[str] = None

    args: dict[str, Any] = field(default_factory=dict)
    scheduled_at: Optional[datetime] = None
    attempts: int = 0
    abort_requested: bool = False
    worker_id: Optional[int] = None


@dataclass(frozen=True)
class JobEvent:
    """A row from procrastinate_events."""

    id: int
    job_id: int
    type: str  # "deferred", "started", "succeeded", ...
    at: datetime


@dataclass(frozen=True)
class JobDetail:
    """A job together with its event history (ascending by time)."""

    job: Job
    events: list[JobEvent] = field(default_factory=list)


@dataclass(frozen=True)
class StatusCount:
    """Number of jobs in one status for a queue."""

    status: JobStatus
    count: int


@dataclass(frozen=True)
class ChangeEvent:
    """A decoded LISTEN/NOTIFY payload."""

    type: str
    job_id: int


def fill_status_counts(counts: Iterable[StatusCount]) -> list[StatusCount]:
    """Expand partial counts to one entry per status, in display order.

    Statuses missing from ``counts`` get a count of zero.
    """
    by_status = {c.status: c.count for c in counts}
    return [
        StatusCount(status=status, count=by_status.get(status, 0))
        for status in JobStatus.display_order()
    ]
