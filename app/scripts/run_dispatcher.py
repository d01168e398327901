"""Long-running reminder dispatch worker.

Runs one cycle immediately, then one every ``DISPATCH_INTERVAL_SECONDS``
(60 by default) until the process is stopped:
    python -m app.scripts.run_dispatcher
"""

from __future__ import annotations

import asyncio
import logging
import signal

from app.services.dispatcher import DispatchEngine, log_event
from app.services.scheduler import Scheduler
from config import settings
import db

_LOGGER = logging.getLogger("app.scripts.run_dispatcher")


async def main(interval: float | None = None) -> None:
    interval = interval or settings.DISPATCH_INTERVAL_SECONDS
    engine = DispatchEngine(listeners=[log_event])
    scheduler = Scheduler()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(scheduler.stop()))
        except NotImplementedError:  # pragma: no cover - e.g. Windows
            pass

    await scheduler.start(interval, engine.run_cycle)
    _LOGGER.info("🚀 Reminder worker started")
    _LOGGER.info("⏰ Checking for reminders every %s seconds...", interval)
    try:
        await scheduler.wait()
    finally:
        await scheduler.stop()
        await db.dispose_engine()
        _LOGGER.info("Reminder worker stopped")


if __name__ == "__main__":  # pragma: no cover
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(main())
