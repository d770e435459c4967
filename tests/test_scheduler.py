"""
Unit tests for SyncScheduler: single in-flight pass and error containment.
"""

import asyncio

import pytest

from eds_graph_sync.models import CollaboratorUnavailable
from eds_graph_sync.models import SyncStats
from eds_graph_sync.sync.scheduler import SyncScheduler


class GatedOrchestrator:
    """run_pass() blocks until release() is called."""

    def __init__(self):
        self.calls = []
        self.full_requested = False
        self.gate = asyncio.Event()
        self.error: Exception | None = None

    def request_full_resync(self):
        self.full_requested = True

    def release(self):
        self.gate.set()

    async def run_pass(self, force_full: bool = False) -> SyncStats:
        self.calls.append(force_full)
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return SyncStats(synced=1)


@pytest.mark.asyncio
async def test_trigger_while_in_flight_is_noop():
    orchestrator = GatedOrchestrator()
    scheduler = SyncScheduler(orchestrator, interval_minutes=15)

    first = asyncio.create_task(scheduler.trigger())
    await asyncio.sleep(0)
    assert scheduler.in_flight

    assert await scheduler.trigger() is None
    orchestrator.release()
    stats = await first

    assert stats.synced == 1
    assert orchestrator.calls == [False]
    assert scheduler.in_flight is False
    assert scheduler.last_stats is stats


@pytest.mark.asyncio
async def test_failed_pass_is_reported_and_released():
    orchestrator = GatedOrchestrator()
    orchestrator.error = CollaboratorUnavailable("EDS registry unreachable")
    orchestrator.release()
    scheduler = SyncScheduler(orchestrator, interval_minutes=15)

    assert await scheduler.trigger() is None
    assert scheduler.last_error == "EDS registry unreachable"
    assert scheduler.in_flight is False

    orchestrator.error = None
    assert (await scheduler.trigger()).synced == 1
    assert scheduler.last_error is None


@pytest.mark.asyncio
async def test_unexpected_error_does_not_escape():
    orchestrator = GatedOrchestrator()
    orchestrator.error = KeyError("boom")
    orchestrator.release()
    scheduler = SyncScheduler(orchestrator, interval_minutes=15)

    assert await scheduler.trigger() is None
    assert scheduler.in_flight is False


@pytest.mark.asyncio
async def test_full_trigger_and_request_are_forwarded():
    orchestrator = GatedOrchestrator()
    orchestrator.release()
    scheduler = SyncScheduler(orchestrator, interval_minutes=15)

    scheduler.request_full_resync()
    await scheduler.trigger(full=True)

    assert orchestrator.full_requested
    assert orchestrator.calls == [True]


@pytest.mark.asyncio
async def test_run_forever_stops():
    orchestrator = GatedOrchestrator()
    orchestrator.release()
    scheduler = SyncScheduler(orchestrator, interval_minutes=0.001)

    task = asyncio.create_task(scheduler.run_forever())
    while len(orchestrator.calls) < 2:
        await asyncio.sleep(0.01)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=1)

    assert len(orchestrator.calls) >= 2
