"""Fixed-cadence asyncio scheduler with a no-overlap guard.

The loop fires once immediately and then every *interval* seconds measured
from the start, regardless of how long each run takes.  A tick that arrives
while the previous run is still in flight is skipped, never queued, so two
dispatch cycles can not pick up the same due reminder.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

_LOGGER = logging.getLogger(__name__)

Action = Callable[[], Awaitable[object]]


class Scheduler:
    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._clock = clock
        self._sleep = sleep
        self._action: Optional[Action] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None
        self.runs = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def in_flight(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    async def start(self, interval: float, action: Action) -> None:
        """Begin ticking. Returns as soon as the loop is scheduled."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        if self.running:
            raise RuntimeError("scheduler already started")
        self._action = action
        self._loop_task = asyncio.create_task(self._loop(interval), name="scheduler-loop")

    async def wait(self) -> None:
        """Block until the loop ends (i.e. until :meth:`stop` is called)."""
        if self._loop_task is None:
            return
        await asyncio.wait({self._loop_task})

    async def stop(self) -> None:
        """Stop ticking and interrupt an in-flight run.

        An interrupted dispatch leaves its reminders pending in the store,
        so they are retried on the next start.
        """
        for task in (self._loop_task, self._run_task):
            if task is not None and not task.done():
                task.cancel()
        for task in (self._loop_task, self._run_task):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._run_task = None

    def trigger(self) -> bool:
        """Run the action now unless a previous run is still going."""
        if self._action is None:
            raise RuntimeError("scheduler has no action; call start() first")
        if self.in_flight:
            self.skipped += 1
            _LOGGER.warning("Previous dispatch cycle still running; skipping this tick")
            return False
        self.runs += 1
        self._run_task = asyncio.create_task(self._run_action(), name="scheduler-run")
        return True

    async def _run_action(self) -> None:
        try:
            await self._action()
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            _LOGGER.exception("Scheduled run failed")

    async def _loop(self, interval: float) -> None:
        next_tick = self._clock()
        while True:
            self.trigger()
            next_tick += interval
            delay = next_tick - self._clock()
            if delay < 0:
                # Fell behind (e.g. host suspended); realign to the cadence
                next_tick += (int(-delay // interval) + 1) * interval
                delay = next_tick - self._clock()
            await self._sleep(delay)
