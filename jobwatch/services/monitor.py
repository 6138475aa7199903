"""Monitor controller: the single consumer that owns all visible state.

Producers (connect task, poll scheduler, subscription drain, query tasks,
notice timers, the user) only put messages on the inbox. ``run()`` takes
them off one at a time and is the only code that mutates ``MonitorState``.

Every query result carries the generation it was issued under. The
generation advances on each connect attempt and each queue switch; results
from an older generation are dropped.
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog
from prometheus_client import Counter

from jobwatch.config import MonitorConfig
from jobwatch.errors import ConfigError, StoreError, SubscriptionError
from jobwatch.jobs.models import Job, JobDetail, StatusCount, fill_status_counts
from jobwatch.jobs.types import JobStatus
from jobwatch.repositories.jobs import JobQueryRepository
from jobwatch.services.messages import (
    CancelPending,
    ChangeReceived,
    CloseJobDetail,
    ConfirmPending,
    ConnectFailed,
    Connected,
    Disconnect,
    NoticeExpired,
    OpenConnectionPicker,
    OpenJobDetail,
    OpenQueuePicker,
    PendingAction,
    PendingConnectionSwitch,
    PendingQueueSwitch,
    PickTarget,
    PollTick,
    QueryFailed,
    QueryKind,
    QueryResult,
    SelectView,
    SetStatusFilter,
    Shutdown,
    SubscriptionEnded,
    SwitchConnection,
    SwitchQueue,
    ViewKind,
)
from jobwatch.services.scheduler import PollScheduler
from jobwatch.services.session import Session, SessionManager
from jobwatch.services.view import ConnectionState, MonitorSnapshot, MonitorView

logger = structlog.get_logger(__name__)

JOB_LIST_LIMIT = 100
RECENT_WINDOW = timedelta(hours=1)
NOTICE_TTL_SECONDS = 4.0

STALE_RESULTS_TOTAL = Counter(
    "jobwatch_stale_results_total",
    "Query results dropped because their generation was superseded",
    ["kind"],
)

_VIEW_QUERIES = {
    ViewKind.STATUS: QueryKind.STATUS_COUNTS,
    ViewKind.LIVE: QueryKind.RECENT_JOBS,
    ViewKind.ORPHANED: QueryKind.ORPHANED_JOBS,
}


@dataclass
class MonitorState:
    """Externally visible state. Mutated only by MonitorController.handle()."""

    connection_name: str
    queue: str
    state: ConnectionState = ConnectionState.DISCONNECTED
    generation: int = 0
    active_view: ViewKind = ViewKind.STATUS
    status_filter: Optional[JobStatus] = None

    jobs: list[Job] = field(default_factory=list)
    status_counts: list[StatusCount] = field(default_factory=list)
    recent_jobs: list[Job] = field(default_factory=list)
    orphaned_jobs: list[Job] = field(default_factory=list)
    queues: list[str] = field(default_factory=list)
    detail: Optional[JobDetail] = None
    # Job whose detail was last requested; None once closed
    detail_job_id: Optional[int] = None

    last_error: Optional[str] = None
    notice: Optional[str] = None
    notice_id: int = 0
    pending: Optional[PendingAction] = None

    session: Optional[Session] = None


class NullView:
    """View that ignores updates."""

    def update(self, snapshot: MonitorSnapshot) -> None:
        pass


class MonitorController:
    """
    Central state machine of the monitor.

    States: disconnected -> connecting -> connected. Query failures never
    demote the state; they set ``last_error`` until the next success and the
    next poll tick retries.
    """

    def __init__(
        self,
        config: MonitorConfig,
        connection_name: str,
        queue: Optional[str] = None,
        view: Optional[MonitorView] = None,
        session_manager: Optional[SessionManager] = None,
        repository_factory: Callable[[Any], JobQueryRepository] = JobQueryRepository,
        notice_ttl: float = NOTICE_TTL_SECONDS,
    ):
        """
        Initialize controller.

        Args:
            config: Monitor configuration (profiles, poll interval, threshold)
            connection_name: Profile to connect to first
            queue: Queue override; defaults to the profile's default queue
            view: Renderer receiving snapshots after every state change
            session_manager: Owner of the pool and subscription
            repository_factory: Builds the query gateway from a pool
            notice_ttl: Seconds before a transient notice clears
        """
        profile = config.get_connection(connection_name)
        self._config = config
        self._view = view or NullView()
        self._sessions = session_manager or SessionManager()
        self._repository_factory = repository_factory
        self._notice_ttl = notice_ttl

        self.inbox: asyncio.Queue = asyncio.Queue()
        self._state = MonitorState(
            connection_name=connection_name,
            queue=queue or profile.default_queue,
        )
        self._repo: Optional[JobQueryRepository] = None
        self._scheduler = PollScheduler(self.inbox, config.poll_interval)
        self._drain_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> MonitorState:
        """Read-only access for tests and renderers; do not mutate."""
        return self._state

    def snapshot(self) -> MonitorSnapshot:
        """Build an immutable snapshot of the current state."""
        s = self._state
        subscribed = bool(s.session and s.session.subscription is not None)
        return MonitorSnapshot(
            state=s.state,
            connection_name=s.connection_name,
            queue=s.queue,
            generation=s.generation,
            active_view=s.active_view,
            status_filter=s.status_filter,
            jobs=list(s.jobs),
            status_counts=fill_status_counts(s.status_counts),
            recent_jobs=list(s.recent_jobs),
            orphaned_jobs=list(s.orphaned_jobs),
            queues=list(s.queues),
            detail=s.detail,
            last_error=s.last_error,
            notice=s.notice,
            pending=s.pending,
            subscribed=subscribed,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def send(self, message: Any) -> None:
        """Enqueue a message (user actions use this)."""
        self.inbox.put_nowait(message)

    async def stop(self) -> None:
        """Ask ``run()`` to exit after the messages already queued."""
        await self.inbox.put(Shutdown())

    async def run(self) -> None:
        """Connect, then process messages until Shutdown."""
        logger.info(
            "monitor_starting",
            connection=self._state.connection_name,
            queue=self._state.queue,
            poll_interval_s=self._scheduler.interval,
        )
        self._begin_connect(switching=False)
        self._render()
        try:
            while True:
                message = await self.inbox.get()
                if isinstance(message, Shutdown):
                    break
                await self.handle(message)
        finally:
            await self._teardown()
            logger.info("monitor_stopped")

    async def handle(self, message: Any) -> None:
        """Apply one message to the state, then refresh the view."""
        handler = self._handlers.get(type(message))
        if handler is None:
            logger.warning("monitor_unknown_message", message_type=type(message).__name__)
            return
        await handler(self, message)
        self._render()

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def _begin_connect(self, switching: bool) -> None:
        """Start a connect attempt for the current connection/queue."""
        s = self._state
        try:
            profile = self._config.get_connection(s.connection_name)
        except ConfigError as e:
            s.last_error = str(e)
            return

        s.generation += 1
        s.state = ConnectionState.CONNECTING
        generation = s.generation
        queue = s.queue

        logger.info(
            "monitor_connecting",
            connection=profile.name,
            queue=queue,
            generation=generation,
        )

        async def attempt() -> None:
            try:
                if switching:
                    session = await self._sessions.switch(profile, queue)
                else:
                    session = await self._sessions.connect(profile, queue)
            except StoreError as e:
                await self.inbox.put(
                    ConnectFailed(generation=generation, profile_name=profile.name, error=e)
                )
                return
            await self.inbox.put(Connected(generation=generation, session=session))

        self._spawn(attempt())

    async def _on_connected(self, msg: Connected) -> None:
        s = self._state
        if msg.generation != s.generation:
            logger.debug("monitor_stale_connect_dropped", generation=msg.generation)
            return

        session: Session = msg.session
        s.session = session
        s.state = ConnectionState.CONNECTED
        s.last_error = None
        self._repo = self._repository_factory(session.pool)

        logger.info(
            "monitor_connected",
            connection=session.profile_name,
            queue=session.queue,
            subscribed=session.subscription is not None,
        )

        await self._arm(session)
        self._fetch_full()

    async def _on_connect_failed(self, msg: ConnectFailed) -> None:
        s = self._state
        if msg.generation != s.generation:
            return

        s.state = ConnectionState.DISCONNECTED
        s.session = None
        self._repo = None
        logger.warning(
            "monitor_connect_failed", connection=msg.profile_name, error=str(msg.error)
        )
        # Prior data stays on screen, visibly stale
        self._show_notice(f"Connection failed: {msg.profile_name}")

    async def _on_switch_connection(self, msg: SwitchConnection) -> None:
        s = self._state
        try:
            profile = self._config.get_connection(msg.name)
        except ConfigError as e:
            s.last_error = str(e)
            return

        await self._disarm()
        s.session = None
        self._repo = None
        s.connection_name = profile.name
        s.queue = profile.default_queue
        self._clear_detail()
        s.last_error = None
        self._begin_connect(switching=True)

    async def _on_disconnect(self, msg: Disconnect) -> None:
        s = self._state
        await self._disarm()
        s.generation += 1
        s.session = None
        s.state = ConnectionState.DISCONNECTED
        self._repo = None
        self._spawn(self._sessions.close())
        logger.info("monitor_disconnected", connection=s.connection_name)

    async def _on_switch_queue(self, msg: SwitchQueue) -> None:
        s = self._state
        s.queue = msg.queue
        self._clear_detail()

        if s.state == ConnectionState.CONNECTING:
            # Restart the attempt so the new session watches the new queue
            self._begin_connect(switching=True)
            return

        s.generation += 1
        logger.info("monitor_queue_switched", queue=msg.queue, generation=s.generation)

        session = s.session
        if s.state != ConnectionState.CONNECTED or session is None:
            return

        session.queue = msg.queue
        await self._arm(session)
        if session.subscription is not None:
            self._spawn(
                self._resubscribe(session.subscription, msg.queue, s.generation)
            )
        self._fetch_full()

    async def _resubscribe(self, subscription, queue: str, generation: int) -> None:
        try:
            await subscription.switch_queue(queue)
        except SubscriptionError as e:
            await self.inbox.put(SubscriptionEnded(generation=generation, error=e))

    async def _on_subscription_ended(self, msg: SubscriptionEnded) -> None:
        s = self._state
        session = s.session
        if msg.generation != s.generation or session is None:
            return
        subscription = session.subscription
        if subscription is None:
            return

        # Poll-only from here on; not surfaced as an error
        logger.warning(
            "monitor_subscription_lost",
            queue=s.queue,
            error=str(msg.error) if msg.error else None,
        )
        session.subscription = None
        self._cancel_drain()
        self._spawn(subscription.stop())

    async def _arm(self, session: Session) -> None:
        """Start (or restart) the scheduler and drain for the current generation."""
        generation = self._state.generation
        await self._scheduler.start(session, generation)
        self._cancel_drain()
        if session.subscription is not None:
            self._drain_task = asyncio.create_task(
                self._drain(session.subscription, generation)
            )

    async def _disarm(self) -> None:
        await self._scheduler.stop()
        self._cancel_drain()

    def _cancel_drain(self) -> None:
        if self._drain_task is not None:
            self._drain_task.cancel()
            self._drain_task = None

    async def _drain(self, subscription, generation: int) -> None:
        """Funnel subscription events into the inbox."""
        async for event in subscription.events():
            await self.inbox.put(ChangeReceived(generation=generation, event=event))
        await self.inbox.put(
            SubscriptionEnded(generation=generation, error=subscription.last_error)
        )

    async def _teardown(self) -> None:
        await self._disarm()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self._sessions.close()
        self._state.session = None
        self._state.state = ConnectionState.DISCONNECTED

    # =========================================================================
    # Refresh triggers
    # =========================================================================

    async def _on_poll_tick(self, msg: PollTick) -> None:
        if msg.generation != self._state.generation:
            return
        self._fetch_refresh()

    async def _on_change(self, msg: ChangeReceived) -> None:
        if msg.generation != self._state.generation:
            return
        logger.debug(
            "monitor_change_received", event_type=msg.event.type, job_id=msg.event.job_id
        )
        self._fetch_refresh()

    # =========================================================================
    # Query results
    # =========================================================================

    async def _on_query_result(self, msg: QueryResult) -> None:
        s = self._state
        if self._is_superseded(msg):
            return

        s.last_error = None
        if msg.kind == QueryKind.JOBS:
            s.jobs = list(msg.data)
        elif msg.kind == QueryKind.STATUS_COUNTS:
            s.status_counts = list(msg.data)
        elif msg.kind == QueryKind.RECENT_JOBS:
            s.recent_jobs = list(msg.data)
        elif msg.kind == QueryKind.ORPHANED_JOBS:
            s.orphaned_jobs = list(msg.data)
        elif msg.kind == QueryKind.QUEUES:
            s.queues = list(msg.data)
        elif msg.kind == QueryKind.JOB_DETAIL:
            if msg.data is None:
                s.detail_job_id = None
                self._show_notice("Job not found")
            else:
                s.detail = msg.data

    async def _on_query_failed(self, msg: QueryFailed) -> None:
        s = self._state
        if self._is_superseded(msg):
            return
        s.last_error = str(msg.error)
        logger.warning("monitor_query_failed", kind=msg.kind.value, error=str(msg.error))

    def _is_superseded(self, msg) -> bool:
        """True if a result belongs to an older generation or detail request."""
        s = self._state
        if msg.generation != s.generation:
            reason = "generation"
        elif msg.kind == QueryKind.JOB_DETAIL and msg.job_id != s.detail_job_id:
            # Detail closed, or another job's detail requested since
            reason = "detail_request"
        else:
            return False

        STALE_RESULTS_TOTAL.labels(kind=msg.kind.value).inc()
        logger.debug(
            "monitor_stale_result_dropped",
            kind=msg.kind.value,
            reason=reason,
            generation=msg.generation,
            current=s.generation,
        )
        return True

    # =========================================================================
    # User actions
    # =========================================================================

    async def _on_select_view(self, msg: SelectView) -> None:
        self._state.active_view = msg.view
        self._fetch(_VIEW_QUERIES[msg.view])

    async def _on_set_status_filter(self, msg: SetStatusFilter) -> None:
        self._state.status_filter = msg.status
        self._fetch(QueryKind.JOBS)

    async def _on_open_job_detail(self, msg: OpenJobDetail) -> None:
        self._state.detail_job_id = msg.job_id
        self._fetch(QueryKind.JOB_DETAIL, job_id=msg.job_id)

    async def _on_close_job_detail(self, msg: CloseJobDetail) -> None:
        self._clear_detail()

    def _clear_detail(self) -> None:
        self._state.detail = None
        self._state.detail_job_id = None

    async def _on_open_queue_picker(self, msg: OpenQueuePicker) -> None:
        s = self._state
        if not s.queues:
            return
        target = s.queue if s.queue in s.queues else s.queues[0]
        s.pending = PendingQueueSwitch(target=target, choices=list(s.queues))

    async def _on_open_connection_picker(self, msg: OpenConnectionPicker) -> None:
        s = self._state
        s.pending = PendingConnectionSwitch(
            target=s.connection_name, choices=self._config.connection_names
        )

    async def _on_pick_target(self, msg: PickTarget) -> None:
        s = self._state
        if s.pending is not None and msg.target in s.pending.choices:
            s.pending = replace(s.pending, target=msg.target)

    async def _on_confirm_pending(self, msg: ConfirmPending) -> None:
        s = self._state
        pending, s.pending = s.pending, None
        if isinstance(pending, PendingQueueSwitch):
            await self._on_switch_queue(SwitchQueue(queue=pending.target))
        elif isinstance(pending, PendingConnectionSwitch):
            await self._on_switch_connection(SwitchConnection(name=pending.target))

    async def _on_cancel_pending(self, msg: CancelPending) -> None:
        self._state.pending = None

    # =========================================================================
    # Notices
    # =========================================================================

    def _show_notice(self, text: str) -> None:
        s = self._state
        s.notice_id += 1
        s.notice = text
        notice_id = s.notice_id

        async def expire() -> None:
            await asyncio.sleep(self._notice_ttl)
            await self.inbox.put(NoticeExpired(notice_id=notice_id))

        self._spawn(expire())

    async def _on_notice_expired(self, msg: NoticeExpired) -> None:
        s = self._state
        if msg.notice_id == s.notice_id:
            s.notice = None

    # =========================================================================
    # Query dispatch
    # =========================================================================

    def _fetch_full(self) -> None:
        """Initial fetch after connect or queue switch."""
        self._fetch(QueryKind.JOBS)
        self._fetch(QueryKind.STATUS_COUNTS)
        self._fetch(QueryKind.QUEUES)
        view_query = _VIEW_QUERIES[self._state.active_view]
        if view_query != QueryKind.STATUS_COUNTS:
            self._fetch(view_query)

    def _fetch_refresh(self) -> None:
        """Per-tick fetch: the job list plus the selected secondary view only."""
        self._fetch(QueryKind.JOBS)
        self._fetch(_VIEW_QUERIES[self._state.active_view])

    def _fetch(self, kind: QueryKind, job_id: Optional[int] = None) -> None:
        """Issue one query in its own task, tagged with the current generation."""
        s = self._state
        repo = self._repo
        if s.state != ConnectionState.CONNECTED or repo is None:
            return

        queue = s.queue
        if kind == QueryKind.JOBS:
            coro = repo.list_jobs(queue, status=s.status_filter, limit=JOB_LIST_LIMIT)
        elif kind == QueryKind.STATUS_COUNTS:
            coro = repo.count_by_status(queue)
        elif kind == QueryKind.RECENT_JOBS:
            since = datetime.now(timezone.utc) - RECENT_WINDOW
            coro = repo.list_recent_jobs(queue, since)
        elif kind == QueryKind.ORPHANED_JOBS:
            coro = repo.list_orphaned(queue, self._config.orphan_threshold)
        elif kind == QueryKind.QUEUES:
            coro = repo.list_queues()
        else:
            coro = repo.get_job_detail(job_id)

        self._spawn(self._run_query(kind, s.generation, coro, job_id))

    async def _run_query(
        self,
        kind: QueryKind,
        generation: int,
        coro: Awaitable[Any],
        job_id: Optional[int] = None,
    ) -> None:
        try:
            data = await coro
        except StoreError as e:
            await self.inbox.put(
                QueryFailed(generation=generation, kind=kind, error=e, job_id=job_id)
            )
            return
        await self.inbox.put(
            QueryResult(generation=generation, kind=kind, data=data, job_id=job_id)
        )

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _render(self) -> None:
        self._view.update(self.snapshot())

    _handlers = {
        Connected: _on_connected,
        ConnectFailed: _on_connect_failed,
        SwitchConnection: _on_switch_connection,
        Disconnect: _on_disconnect,
        SwitchQueue: _on_switch_queue,
        SubscriptionEnded: _on_subscription_ended,
        PollTick: _on_poll_tick,
        ChangeReceived: _on_change,
        QueryResult: _on_query_result,
        QueryFailed: _on_query_failed,
        SelectView: _on_select_view,
        SetStatusFilter: _on_set_status_filter,
        OpenJobDetail: _on_open_job_detail,
        CloseJobDetail: _on_close_job_detail,
        OpenQueuePicker: _on_open_queue_picker,
        OpenConnectionPicker: _on_open_connection_picker,
        PickTarget: _on_pick_target,
        ConfirmPending: _on_confirm_pending,
        CancelPending: _on_cancel_pending,
        NoticeExpired: _on_notice_expired,
    }
