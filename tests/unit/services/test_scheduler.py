"""Unit tests for the poll scheduler."""

import asyncio
from datetime import timedelta
from types import SimpleNamespace

import pytest
from prometheus_client import REGISTRY

from jobwatch.services import scheduler as scheduler_module
from jobwatch.services.messages import PollTick
from jobwatch.services.scheduler import PollScheduler


@pytest.fixture
def no_floor(monkeypatch):
    """Allow sub-second intervals so tests run fast."""
    monkeypatch.setattr(scheduler_module, "MIN_POLL_INTERVAL", timedelta(0))


class TestPollSchedulerInit:
    def test_interval_clamped_to_floor(self):
        scheduler = PollScheduler(asyncio.Queue(), 0.2)
        assert scheduler.interval == 1.0

    def test_timedelta_interval(self):
        scheduler = PollScheduler(asyncio.Queue(), timedelta(seconds=3))
        assert scheduler.interval == 3.0

    def test_not_running_initially(self):
        scheduler = PollScheduler(asyncio.Queue(), 5)
        assert scheduler.is_running is False


class TestPollSchedulerLoop:
    @pytest.mark.asyncio
    async def test_ticks_carry_generation(self, no_floor):
        inbox = asyncio.Queue()
        session = SimpleNamespace(is_open=True)
        scheduler = PollScheduler(inbox, 0.01)

        await scheduler.start(session, 7)
        msg = await asyncio.wait_for(inbox.get(), timeout=1.0)
        await scheduler.stop()

        assert msg == PollTick(generation=7)
        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_exits_when_session_closes(self, no_floor):
        inbox = asyncio.Queue()
        session = SimpleNamespace(is_open=True)
        scheduler = PollScheduler(inbox, 0.01)

        await scheduler.start(session, 1)
        await asyncio.wait_for(inbox.get(), timeout=1.0)
        session.is_open = False
        await asyncio.wait_for(scheduler._task, timeout=1.0)

        assert scheduler.is_running is False
        while not inbox.empty():
            inbox.get_nowait()
        await asyncio.sleep(0.05)
        assert inbox.empty()

    @pytest.mark.asyncio
    async def test_poll_enabled_cleared_when_session_closes(self, no_floor):
        inbox = asyncio.Queue()
        session = SimpleNamespace(is_open=True)
        scheduler = PollScheduler(inbox, 0.01)

        await scheduler.start(session, 1)
        assert REGISTRY.get_sample_value("jobwatch_poll_enabled") == 1

        session.is_open = False
        await asyncio.wait_for(scheduler._task, timeout=1.0)

        assert REGISTRY.get_sample_value("jobwatch_poll_enabled") == 0

    @pytest.mark.asyncio
    async def test_no_ticks_for_closed_session(self, no_floor):
        inbox = asyncio.Queue()
        session = SimpleNamespace(is_open=False)
        scheduler = PollScheduler(inbox, 0.01)

        await scheduler.start(session, 1)
        await asyncio.sleep(0.05)

        assert inbox.empty()
        assert scheduler.is_running is False

    @pytest.mark.asyncio
    async def test_restart_replaces_previous_loop(self, no_floor):
        inbox = asyncio.Queue()
        session = SimpleNamespace(is_open=True)
        scheduler = PollScheduler(inbox, 0.01)

        await scheduler.start(session, 1)
        await scheduler.start(session, 2)
        ticks = [await asyncio.wait_for(inbox.get(), timeout=1.0) for _ in range(3)]
        await scheduler.stop()

        assert {t.generation for t in ticks} == {2}

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self):
        scheduler = PollScheduler(asyncio.Queue(), 5)
        await scheduler.stop()
        assert scheduler.is_running is False
