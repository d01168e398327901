import asyncio

import pytest

from app.services.scheduler import Scheduler


class ManualSleep:
    """Stand-in for asyncio.sleep that only returns when the test says so."""

    def __init__(self):
        self.delays = []
        self._waiters = []

    async def __call__(self, delay):
        self.delays.append(delay)
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        await fut

    def tick(self):
        waiters, self._waiters = self._waiters, []
        for fut in waiters:
            if not fut.done():
                fut.set_result(None)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


async def settle():
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_runs_once_at_start_then_every_interval():
    sleep, clock = ManualSleep(), FakeClock()
    calls = []

    async def action():
        calls.append(clock.now)

    scheduler = Scheduler(clock=clock, sleep=sleep)
    await scheduler.start(60, action)
    await settle()
    assert calls == [0.0]
    assert sleep.delays == [60]

    clock.now = 60.0
    sleep.tick()
    await settle()
    assert calls == [0.0, 60.0]
    assert sleep.delays == [60, 60]

    await scheduler.stop()
    assert not scheduler.running


@pytest.mark.asyncio
async def test_cadence_does_not_drift_with_late_wakeups():
    sleep, clock = ManualSleep(), FakeClock()

    async def action():
        pass

    scheduler = Scheduler(clock=clock, sleep=sleep)
    await scheduler.start(60, action)
    await settle()

    clock.now = 63.0  # woke up late
    sleep.tick()
    await settle()
    assert sleep.delays[-1] == pytest.approx(57.0)

    clock.now = 250.0  # slept through several ticks
    sleep.tick()
    await settle()
    assert sleep.delays[-1] == pytest.approx(50.0)

    await scheduler.stop()


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped():
    sleep, clock = ManualSleep(), FakeClock()
    gate = asyncio.Event()
    active = 0
    peak = 0
    started = 0

    async def slow_action():
        nonlocal active, peak, started
        started += 1
        active += 1
        peak = max(peak, active)
        await gate.wait()
        active -= 1

    scheduler = Scheduler(clock=clock, sleep=sleep)
    await scheduler.start(60, slow_action)
    await settle()
    assert scheduler.in_flight

    clock.now = 60.0
    sleep.tick()
    await settle()
    assert started == 1
    assert scheduler.skipped == 1

    gate.set()
    await settle()
    assert not scheduler.in_flight

    clock.now = 120.0
    sleep.tick()
    await settle()
    assert started == 2
    assert peak == 1

    await scheduler.stop()


@pytest.mark.asyncio
async def test_failing_action_does_not_stop_the_loop():
    sleep, clock = ManualSleep(), FakeClock()
    calls = 0

    async def flaky():
        nonlocal calls
        calls += 1
        raise RuntimeError("cycle blew up")

    scheduler = Scheduler(clock=clock, sleep=sleep)
    await scheduler.start(60, flaky)
    await settle()

    clock.now = 60.0
    sleep.tick()
    await settle()

    assert calls == 2
    assert scheduler.running
    await scheduler.stop()


@pytest.mark.asyncio
async def test_stop_interrupts_in_flight_run():
    sleep = ManualSleep()
    cancelled = asyncio.Event()

    async def hangs():
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.set()
            raise

    scheduler = Scheduler(sleep=sleep)
    await scheduler.start(60, hangs)
    await settle()

    await scheduler.stop()

    assert cancelled.is_set()
    assert not scheduler.running and not scheduler.in_flight


@pytest.mark.asyncio
async def test_wait_returns_after_stop():
    scheduler = Scheduler(sleep=ManualSleep())

    async def action():
        pass

    await scheduler.start(60, action)
    waiter = asyncio.create_task(scheduler.wait())
    await settle()
    assert not waiter.done()

    await scheduler.stop()
    await asyncio.wait_for(waiter, timeout=1)


@pytest.mark.asyncio
async def test_rejects_bad_interval_and_double_start():
    scheduler = Scheduler(sleep=ManualSleep())

    async def action():
        pass

    with pytest.raises(ValueError):
        await scheduler.start(0, action)

    await scheduler.start(60, action)
    with pytest.raises(RuntimeError):
        await scheduler.start(60, action)
    await scheduler.stop()
