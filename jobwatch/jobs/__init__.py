"""Job system package."""

from jobwatch.jobs.types import JobStatus
from jobwatch.jobs.models import (
    ChangeEvent,
    Job,
    JobDetail,
    JobEvent,
    StatusCount,
    fill_status_counts,
)

__all__ = [
    "JobStatus",
    "Job",
    "JobEvent",
    "JobDetail",
    "StatusCount",
    "ChangeEvent",
    "fill_status_counts",
]
