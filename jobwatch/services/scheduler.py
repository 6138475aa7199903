"""Poll scheduler: a recurring tick while a session is active."""

import asyncio
from datetime import timedelta
from typing import Optional, Union

import structlog
from prometheus_client import Counter, Gauge

from jobwatch.config import MIN_POLL_INTERVAL
from jobwatch.services.messages import PollTick

logger = structlog.get_logger(__name__)


POLL_TICKS_TOTAL = Counter(
    "jobwatch_poll_ticks_total",
    "Total poll ticks delivered to the monitor",
)
POLL_ENABLED = Gauge(
    "jobwatch_poll_enabled",
    "Whether the poll scheduler is running (1=running, 0=stopped)",
)


class PollScheduler:
    """
    Sends a PollTick into the monitor inbox every ``interval``.

    The loop is bound to one session and generation. It exits on its own
    once the session is closed, so it never fires without an active session.
    """

    def __init__(self, inbox: asyncio.Queue, interval: Union[timedelta, float]):
        """
        Initialize scheduler.

        Args:
            inbox: Monitor inbox that receives PollTick messages
            interval: Poll interval (clamped to the 1 second floor)
        """
        if isinstance(interval, timedelta):
            interval = interval.total_seconds()
        self._inbox = inbox
        self._interval = max(interval, MIN_POLL_INTERVAL.total_seconds())
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def interval(self) -> float:
        """Effective interval in seconds."""
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, session, generation: int) -> None:
        """(Re)arm the timer for ``session`` under ``generation``."""
        await self.stop()
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._tick_loop(session, generation))
        POLL_ENABLED.set(1)
        logger.debug(
            "poll_scheduler_started", interval_s=self._interval, generation=generation
        )

    async def stop(self) -> None:
        """Stop the timer. Safe to call when not running."""
        task = self._task
        self._task = None
        if task is None:
            return
        self._stop_event.set()
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        POLL_ENABLED.set(0)

    async def _tick_loop(self, session, generation: int) -> None:
        """Main loop - runs until stopped or the session closes."""
        try:
            while session.is_open and not self._stop_event.is_set():
                # Wait for next tick (interruptible)
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(), timeout=self._interval
                    )
                    break
                except asyncio.TimeoutError:
                    pass

                if not session.is_open:
                    break
                POLL_TICKS_TOTAL.inc()
                await self._inbox.put(PollTick(generation=generation))
        finally:
            POLL_ENABLED.set(0)

        logger.debug("poll_scheduler_exited", generation=generation)
