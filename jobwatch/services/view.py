"""View-update contract between the monitor and a renderer."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol

import structlog

from jobwatch.jobs.models import Job, JobDetail, StatusCount
from jobwatch.jobs.types import JobStatus
from jobwatch.services.messages import PendingAction, ViewKind

logger = structlog.get_logger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class MonitorSnapshot:
    """Everything a renderer may show. Built fresh after each state change."""

    state: ConnectionState
    connection_name: str
    queue: str
    generation: int
    active_view: ViewKind
    status_filter: Optional[JobStatus] = None
    jobs: list[Job] = field(default_factory=list)
    status_counts: list[StatusCount] = field(default_factory=list)
    recent_jobs: list[Job] = field(default_factory=list)
    orphaned_jobs: list[Job] = field(default_factory=list)
    queues: list[str] = field(default_factory=list)
    detail: Optional[JobDetail] = None
    last_error: Optional[str] = None
    notice: Optional[str] = None
    pending: Optional[PendingAction] = None
    subscribed: bool = False


class MonitorView(Protocol):
    """Anything that can refresh its visible state from a snapshot."""

    def update(self, snapshot: MonitorSnapshot) -> None: ...


class LoggingView:
    """Renders snapshots as structured log events.

    Only logs when the summary changes, so a quiet queue does not flood the
    log on every poll tick.
    """

    def __init__(self):
        self._last_summary: Optional[dict] = None

    def update(self, snapshot: MonitorSnapshot) -> None:
        summary = {
            "state": snapshot.state.value,
            "connection": snapshot.connection_name,
            "queue": snapshot.queue,
            "view": snapshot.active_view.value,
            "jobs": len(snapshot.jobs),
            "counts": {c.status.value: c.count for c in snapshot.status_counts},
            "recent": len(snapshot.recent_jobs),
            "orphaned": [j.id for j in snapshot.orphaned_jobs],
            "subscribed": snapshot.subscribed,
            "error": snapshot.last_error,
            "notice": snapshot.notice,
            "detail_job": snapshot.detail.job.id if snapshot.detail else None,
        }
        if summary == self._last_summary:
            return
        self._last_summary = summary

        if snapshot.last_error:
            logger.warning("monitor_view", **summary)
        else:
            logger.info("monitor_view", **summary)

        if snapshot.detail is not None:
            job = snapshot.detail.job
            logger.info(
                "monitor_job_detail",
                job_id=job.id,
                task=job.task_name,
                status=job.status.value,
                events=[(e.type, e.at.isoformat()) for e in snapshot.detail.events],
            )
