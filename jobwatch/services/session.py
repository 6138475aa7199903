"""Session lifecycle: query pool plus subscription channel for one profile."""

import asyncio
from dataclasses import dataclass
from typing import Optional

import asyncpg
import structlog

from jobwatch.config import ConnectionProfile, Settings, get_settings
from jobwatch.errors import ConnectError, SubscriptionError
from jobwatch.services.subscription import SubscriptionChannel

logger = structlog.get_logger(__name__)

_CONNECT_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)


@dataclass
class Session:
    """The live pairing of query pool, subscription and active queue."""

    pool: asyncpg.Pool
    subscription: Optional[SubscriptionChannel]
    queue: str
    profile_name: str
    is_open: bool = True


class SessionManager:
    """
    Owns at most one Session at a time.

    The pool and the subscription channel are always opened and closed
    together; switching profiles closes the old pair before opening a new one.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()
        self._session: Optional[Session] = None
        # Serializes connect/switch/close so two sessions never coexist
        self._lock = asyncio.Lock()

    @property
    def session(self) -> Optional[Session]:
        """The current Session, if any."""
        return self._session

    async def connect(self, profile: ConnectionProfile, queue: str) -> Session:
        """Open a Session for ``profile`` watching ``queue``.

        Any current Session is closed first. A subscription failure is not
        fatal: the Session is returned with ``subscription=None`` and the
        monitor relies on polling alone.

        Raises:
            ConnectError: If the pool cannot be created or the store does not
                answer. No Session is kept in that case.
        """
        async with self._lock:
            await self._close()
            return await self._connect(profile, queue)

    async def switch(self, profile: ConnectionProfile, queue: str) -> Session:
        """Tear down the current Session, then connect to ``profile``.

        A failed switch leaves no Session open.
        """
        async with self._lock:
            await self._close()
            return await self._connect(profile, queue)

    async def close(self) -> None:
        """Close the current Session. Safe to call repeatedly."""
        async with self._lock:
            await self._close()

    # =========================================================================
    # Internal Methods
    # =========================================================================

    async def _connect(self, profile: ConnectionProfile, queue: str) -> Session:
        log = logger.bind(connection=profile.name, queue=queue)
        log.info("session_connecting", host=profile.host, port=profile.port)

        pool = await self._open_pool(profile)
        try:
            subscription = await self._open_subscription(profile, queue)
        except BaseException:
            # Cancelled or failed before the Session owns the pool
            pool.terminate()
            raise

        self._session = Session(
            pool=pool,
            subscription=subscription,
            queue=queue,
            profile_name=profile.name,
        )
        log.info("session_connected", subscribed=subscription is not None)
        return self._session

    async def _close(self) -> None:
        session = self._session
        self._session = None
        if session is None or not session.is_open:
            return
        session.is_open = False

        log = logger.bind(connection=session.profile_name, queue=session.queue)

        # Subscription first, then the pool
        if session.subscription is not None:
            await session.subscription.stop()

        try:
            await session.pool.close()
        except _CONNECT_ERRORS as e:
            log.warning("session_pool_close_failed", error=str(e))

        log.info("session_closed")

    async def _open_pool(self, profile: ConnectionProfile) -> asyncpg.Pool:
        pool = None
        try:
            pool = await asyncpg.create_pool(
                profile.dsn,
                min_size=0,
                max_size=self._settings.db_pool_max_size,
                timeout=self._settings.db_connect_timeout,
                command_timeout=self._settings.db_command_timeout,
            )
            await pool.fetchval("SELECT 1")
            return pool
        except _CONNECT_ERRORS as e:
            logger.warning("session_connect_failed", connection=profile.name, error=str(e))
            if pool is not None:
                pool.terminate()
            raise ConnectError(
                f"connect to {profile.name}: {e}", profile_name=profile.name
            ) from e

    async def _open_subscription(
        self, profile: ConnectionProfile, queue: str
    ) -> Optional[SubscriptionChannel]:
        try:
            conn = await asyncpg.connect(
                profile.dsn, timeout=self._settings.db_connect_timeout
            )
        except _CONNECT_ERRORS as e:
            logger.warning(
                "subscription_connect_failed", connection=profile.name, error=str(e)
            )
            return None

        subscription = SubscriptionChannel(conn, queue)
        try:
            await subscription.start()
        except SubscriptionError as e:
            logger.warning(
                "subscription_start_failed", connection=profile.name, error=str(e)
            )
            await subscription.stop()
            return None
        return subscription
