"""Tests for the periodic pass scheduler."""

import asyncio

import pytest

from groupguard.scheduler.periodic_scheduler import PeriodicScheduler


@pytest.mark.asyncio
async def test_run_once_returns_pass_result():
    async def run_pass():
        return "done"

    scheduler = PeriodicScheduler("TEST", run_pass, lambda: 60)
    assert await scheduler.run_once() == "done"
    assert scheduler.passes_completed == 1


@pytest.mark.asyncio
async def test_run_once_swallows_pass_errors():
    async def run_pass():
        raise RuntimeError("boom")

    scheduler = PeriodicScheduler("TEST", run_pass, lambda: 60)
    assert await scheduler.run_once() is None
    assert scheduler.passes_completed == 1


@pytest.mark.asyncio
async def test_start_runs_immediately_and_shutdown_stops():
    ran = asyncio.Event()

    async def run_pass():
        ran.set()

    scheduler = PeriodicScheduler("TEST", run_pass, lambda: 3600)
    scheduler.start()
    assert scheduler.running

    await asyncio.wait_for(ran.wait(), timeout=1)
    await scheduler.shutdown()

    assert not scheduler.running
    assert scheduler.passes_completed == 1


@pytest.mark.asyncio
async def test_delayed_start_waits_one_interval():
    calls = []

    async def run_pass():
        calls.append(1)

    scheduler = PeriodicScheduler("TEST", run_pass, lambda: 3600, run_immediately=False)
    scheduler.start()
    await asyncio.sleep(0.01)
    await scheduler.shutdown()

    assert calls == []


@pytest.mark.asyncio
async def test_repeats_on_interval():
    calls = []

    async def run_pass():
        calls.append(1)

    scheduler = PeriodicScheduler("TEST", run_pass, lambda: 0)
    scheduler.start()
    for _ in range(20):
        await asyncio.sleep(0)
    await scheduler.shutdown()

    assert len(calls) >= 2


@pytest.mark.asyncio
async def test_shutdown_lets_in_flight_pass_finish():
    started = asyncio.Event()
    release = asyncio.Event()
    finished = []

    async def run_pass():
        started.set()
        await release.wait()
        finished.append(True)

    scheduler = PeriodicScheduler("TEST", run_pass, lambda: 3600)
    scheduler.start()
    await asyncio.wait_for(started.wait(), timeout=1)

    stopping = asyncio.create_task(scheduler.shutdown())
    await asyncio.sleep(0.01)
    assert not stopping.done()

    release.set()
    await asyncio.wait_for(stopping, timeout=1)

    assert finished == [True]
    assert scheduler.passes_completed == 1
    assert not scheduler.running


@pytest.mark.asyncio
async def test_shutdown_cancels_pass_after_stop_timeout():
    started = asyncio.Event()
    finished = []

    async def run_pass():
        started.set()
        await asyncio.Event().wait()
        finished.append(True)

    scheduler = PeriodicScheduler("TEST", run_pass, lambda: 3600, stop_timeout=0.01)
    scheduler.start()
    await asyncio.wait_for(started.wait(), timeout=1)

    await asyncio.wait_for(scheduler.shutdown(), timeout=1)

    assert finished == []
    assert not scheduler.running
