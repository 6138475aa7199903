"""Typed messages consumed by the monitor controller.

Producers (scheduler, subscription drain, query tasks, timers, the user)
communicate with the controller only by putting these on its inbox.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from jobwatch.errors import StoreError
from jobwatch.jobs.models import ChangeEvent, Job, JobDetail, StatusCount
from jobwatch.jobs.types import JobStatus


class ViewKind(str, Enum):
    """Secondary views; exactly one is selected at a time."""

    STATUS = "status"
    LIVE = "live"
    ORPHANED = "orphaned"


class QueryKind(str, Enum):
    """Kinds of data the controller fetches."""

    JOBS = "jobs"
    STATUS_COUNTS = "status_counts"
    RECENT_JOBS = "recent_jobs"
    ORPHANED_JOBS = "orphaned_jobs"
    QUEUES = "queues"
    JOB_DETAIL = "job_detail"


# =============================================================================
# Producer messages
# =============================================================================


@dataclass
class Connected:
    """A connect attempt succeeded."""

    generation: int
    session: object  # jobwatch.services.session.Session


@dataclass
class ConnectFailed:
    """A connect attempt failed."""

    generation: int
    profile_name: str
    error: StoreError


@dataclass
class PollTick:
    """The poll scheduler fired."""

    generation: int


@dataclass
class ChangeReceived:
    """A change notification arrived from the subscription channel."""

    generation: int
    event: ChangeEvent


@dataclass
class SubscriptionEnded:
    """The subscription drain stopped (connection lost or cancelled)."""

    generation: int
    error: Optional[StoreError] = None


@dataclass
class QueryResult:
    """Successful result of one query, tagged with its generation."""

    generation: int
    kind: QueryKind
    data: Union[list[Job], list[StatusCount], list[str], Optional[JobDetail]] = None
    job_id: Optional[int] = None  # set for job detail requests


@dataclass
class QueryFailed:
    """Failed query, tagged with its generation."""

    generation: int
    kind: QueryKind
    error: StoreError
    job_id: Optional[int] = None


@dataclass
class NoticeExpired:
    """A transient notice reached its expiry time."""

    notice_id: int


# =============================================================================
# User actions
# =============================================================================


@dataclass
class SwitchQueue:
    queue: str


@dataclass
class SwitchConnection:
    name: str


@dataclass
class SelectView:
    view: ViewKind


@dataclass
class SetStatusFilter:
    status: Optional[JobStatus] = None


@dataclass
class OpenJobDetail:
    job_id: int


@dataclass
class CloseJobDetail:
    pass


@dataclass
class OpenQueuePicker:
    pass


@dataclass
class OpenConnectionPicker:
    pass


@dataclass
class PickTarget:
    """Move the picker selection to ``target``."""

    target: str


@dataclass
class ConfirmPending:
    pass


@dataclass
class CancelPending:
    pass


@dataclass
class Disconnect:
    pass


@dataclass
class Shutdown:
    pass


# =============================================================================
# Pending picker actions
# =============================================================================


@dataclass
class PendingQueueSwitch:
    """Queue picker open; ``target`` is the highlighted queue."""

    target: str
    choices: list[str] = field(default_factory=list)


@dataclass
class PendingConnectionSwitch:
    """Connection picker open; ``target`` is the highlighted connection."""

    target: str
    choices: list[str] = field(default_factory=list)


PendingAction = Union[PendingQueueSwitch, PendingConnectionSwitch]
