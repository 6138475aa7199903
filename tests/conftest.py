"""Root conftest for test suite.

Integration tests need a PostgreSQL database and are skipped unless
JOBWATCH_TEST_DATABASE_URL is set.
Run explicitly with: JOBWATCH_TEST_DATABASE_URL=postgresql://... pytest -m integration
"""

import asyncio
import os

import asyncpg
import pytest

from jobwatch.config import ConnectionProfile, MonitorConfig


def pytest_collection_modifyitems(config, items):
    """Skip integration tests when no test database is configured."""
    if os.getenv("JOBWATCH_TEST_DATABASE_URL"):
        return

    skip_integration = pytest.mark.skip(
        reason="integration tests need JOBWATCH_TEST_DATABASE_URL"
    )
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


@pytest.fixture
def monitor_config() -> MonitorConfig:
    """Two connection profiles, fast polling."""
    return MonitorConfig(
        poll_interval=1,
        orphan_threshold="30m",
        connections=[
            ConnectionProfile(
                name="local",
                host="localhost",
                database="app",
                username="app",
                default_queue="default",
            ),
            ConnectionProfile(
                name="staging",
                host="staging.db",
                database="app",
                username="app",
                default_queue="emails",
            ),
        ],
    )


class FakeListenConnection:
    """In-memory stand-in for a dedicated asyncpg LISTEN connection.

    Like asyncpg, it rejects an operation while another is in progress, and
    a channel is UNLISTENed once its last callback is removed.
    """

    def __init__(self):
        self.listeners: dict[str, list] = {}
        self.termination_listeners: list = []
        self._busy = False
        self._closed = False

    async def _operation(self) -> None:
        if self._busy:
            raise asyncpg.InterfaceError(
                "cannot perform operation: another operation is in progress"
            )
        self._busy = True
        try:
            await asyncio.sleep(0.001)
        finally:
            self._busy = False

    async def add_listener(self, channel, callback) -> None:
        await self._operation()
        self.listeners.setdefault(channel, []).append(callback)

    async def remove_listener(self, channel, callback) -> None:
        await self._operation()
        callbacks = self.listeners.get(channel, [])
        if callback in callbacks:
            callbacks.remove(callback)
        if not callbacks:
            self.listeners.pop(channel, None)

    def add_termination_listener(self, callback) -> None:
        self.termination_listeners.append(callback)

    def is_closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        await self._operation()
        self._closed = True

    def notify(self, channel: str, payload: str) -> None:
        for callback in list(self.listeners.get(channel, [])):
            callback(self, 1234, channel, payload)


@pytest.fixture
def listen_connection() -> FakeListenConnection:
    return FakeListenConnection()
