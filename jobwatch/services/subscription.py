"""LISTEN/NOTIFY subscription on a dedicated PostgreSQL connection.

The channel watches one queue-scoped channel plus the global channel and
turns raw notification payloads into ChangeEvent objects.
"""

import asyncio
import json
from typing import AsyncIterator, Optional

import asyncpg
import structlog
from prometheus_client import Counter

from jobwatch.errors import DecodeError, SubscriptionError
from jobwatch.jobs.models import ChangeEvent

logger = structlog.get_logger(__name__)

GLOBAL_CHANNEL = "procrastinate_any_queue_v1"
QUEUE_CHANNEL_PREFIX = "procrastinate_queue_v1#"

# Producers block when the consumer falls this far behind
EVENT_BUFFER_SIZE = 64

NOTIFICATIONS_TOTAL = Counter(
    "jobwatch_notifications_total",
    "Notifications received on the subscription channel",
    ["status"],  # delivered, malformed
)

_CONNECTION_LOST = object()

_LISTEN_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)


def queue_channel(queue: str) -> str:
    """Channel name carrying notifications for one queue."""
    return f"{QUEUE_CHANNEL_PREFIX}{queue}"


def decode_payload(payload: str) -> ChangeEvent:
    """Decode a notification payload of the form ``{"type": ..., "job_id": ...}``.

    Raises:
        DecodeError: If the payload is not valid JSON or lacks the fields.
    """
    try:
        data = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"invalid JSON: {e}", payload=str(payload)) from e

    if not isinstance(data, dict):
        raise DecodeError("payload is not an object", payload=payload)

    event_type = data.get("type")
    job_id = data.get("job_id")
    if not isinstance(event_type, str):
        raise DecodeError("missing or invalid 'type'", payload=payload)
    if isinstance(job_id, bool) or not isinstance(job_id, int):
        raise DecodeError("missing or invalid 'job_id'", payload=payload)

    return ChangeEvent(type=event_type, job_id=job_id)


class SubscriptionChannel:
    """
    Receives change notifications for one queue.

    Features:
    - Subscribes to the queue channel and the global channel
    - Atomic queue switch: unsubscribe everything, then subscribe again
    - Drops malformed payloads without stopping
    - Bounded event buffer; the receive loop waits when it is full
    - Reports a lost connection once and stops (no reconnect)
    """

    def __init__(
        self,
        conn,
        queue: str,
        buffer_size: int = EVENT_BUFFER_SIZE,
        idle_timeout: float = 1.0,
    ):
        """
        Initialize the channel.

        Args:
            conn: Dedicated asyncpg connection (not from a pool)
            queue: Queue to watch
            buffer_size: Capacity of the decoded event buffer
            idle_timeout: How often ``events()`` checks whether the loop ended
        """
        self._conn = conn
        self._queue = queue
        self._idle_timeout = idle_timeout
        self._raw: asyncio.Queue = asyncio.Queue()
        self._events: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=buffer_size)
        self._channels: list[str] = []
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        # One LISTEN/UNLISTEN sequence at a time on the connection
        self._lock = asyncio.Lock()
        self.last_error: Optional[SubscriptionError] = None

    @property
    def queue(self) -> str:
        """Queue currently watched."""
        return self._queue

    @property
    def channels(self) -> list[str]:
        """Channels currently subscribed."""
        return list(self._channels)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Subscribe and start the receive loop.

        Raises:
            SubscriptionError: If LISTEN fails.
        """
        async with self._lock:
            await self._subscribe()
            self._conn.add_termination_listener(self._on_terminated)
            self._task = asyncio.create_task(self._receive_loop())
        logger.info("subscription_started", queue=self._queue, channels=self._channels)

    async def switch_queue(self, new_queue: str) -> None:
        """Watch a different queue.

        Unsubscribes from every channel before subscribing again, so events
        from the old queue cannot leak into the new queue's view. Concurrent
        switches run one after another in call order.

        Raises:
            SubscriptionError: If UNLISTEN or LISTEN fails, or the channel
                was stopped.
        """
        async with self._lock:
            if self._closed:
                raise SubscriptionError("subscription stopped")
            old_queue = self._queue
            await self._unsubscribe_all()
            self._queue = new_queue
            await self._subscribe()
        logger.info(
            "subscription_queue_switched",
            old_queue=old_queue,
            new_queue=new_queue,
        )

    async def events(self) -> AsyncIterator[ChangeEvent]:
        """Yield decoded events until the receive loop ends."""
        while True:
            try:
                event = await asyncio.wait_for(
                    self._events.get(), timeout=self._idle_timeout
                )
            except asyncio.TimeoutError:
                if self._task is None or self._task.done():
                    break
                continue
            yield event

    async def stop(self) -> None:
        """Cancel the loop, drop listeners and close the connection. Idempotent."""
        if self._closed:
            return
        self._closed = True

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        async with self._lock:
            if not self._conn.is_closed():
                try:
                    await self._unsubscribe_all()
                except SubscriptionError as e:
                    logger.debug("subscription_unlisten_on_stop_failed", error=str(e))
                try:
                    await self._conn.close()
                except _LISTEN_ERRORS as e:
                    logger.warning("subscription_close_failed", error=str(e))

        logger.info("subscription_stopped", queue=self._queue)

    # =========================================================================
    # Internal Methods
    # =========================================================================

    async def _subscribe(self) -> None:
        for channel in (queue_channel(self._queue), GLOBAL_CHANNEL):
            try:
                await self._conn.add_listener(channel, self._on_notification)
            except _LISTEN_ERRORS as e:
                raise SubscriptionError(f"LISTEN {channel}: {e}") from e
            self._channels.append(channel)

    async def _unsubscribe_all(self) -> None:
        for channel in list(self._channels):
            try:
                await self._conn.remove_listener(channel, self._on_notification)
            except _LISTEN_ERRORS as e:
                raise SubscriptionError(f"UNLISTEN {channel}: {e}") from e
            if channel in self._channels:
                self._channels.remove(channel)

    def _on_notification(self, conn, pid: int, channel: str, payload: str) -> None:
        self._raw.put_nowait(payload)

    def _on_terminated(self, conn) -> None:
        self._raw.put_nowait(_CONNECTION_LOST)

    async def _receive_loop(self) -> None:
        """Decode raw payloads and hand them to the event buffer."""
        log = logger.bind(queue=self._queue)
        while True:
            try:
                payload = await self._raw.get()

                if payload is _CONNECTION_LOST:
                    if not self._closed:
                        self.last_error = SubscriptionError(
                            "subscription connection lost"
                        )
                        log.error("subscription_connection_lost")
                    break

                try:
                    event = decode_payload(payload)
                except DecodeError as e:
                    NOTIFICATIONS_TOTAL.labels(status="malformed").inc()
                    log.warning(
                        "notification_malformed",
                        error=str(e),
                        payload=e.payload[:200],
                    )
                    continue

                NOTIFICATIONS_TOTAL.labels(status="delivered").inc()
                await self._events.put(event)

            except asyncio.CancelledError:
                log.debug("subscription_loop_cancelled")
                break
