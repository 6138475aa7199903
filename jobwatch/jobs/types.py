"""Job system type definitions."""

from enum import Enum


class JobStatus(str, Enum):
    """Job lifecycle statuses (procrastinate_job_status).

    Declaration order is the display order.
    """

    TODO = "todo"
    DOING = "doing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ABORTING = "aborting"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (job won't change)."""
        return self in (
            JobStatus.SUCCEEDED,
            JobStatus.FAILED,
            JobStatus.CANCELLED,
            JobStatus.ABORTED,
        )

    @classmethod
    def display_order(cls) -> list["JobStatus"]:
        """All statuses in display order."""
        return list(cls)
