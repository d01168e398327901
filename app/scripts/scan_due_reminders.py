"""One-shot dispatch cycle for cron-style deployments.
Run from an external schedule every minute:
    python -m app.scripts.scan_due_reminders

Exits non-zero when the due reminders could not be loaded.
"""

from __future__ import annotations

import asyncio
import logging
import sys

from app.services.dispatcher import DispatchEngine, log_event
from app.types.reminder_contract import CycleReport
from config import settings
import db

_LOGGER = logging.getLogger("app.scripts.scan_due_reminders")


async def main() -> CycleReport:
    engine = DispatchEngine(listeners=[log_event])
    try:
        return await engine.run_cycle()
    finally:
        await db.dispose_engine()


if __name__ == "__main__":  # pragma: no cover
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _LOGGER.info("[CRON] scan_due_reminders: job started")
    report = asyncio.run(main())
    if report.aborted:
        _LOGGER.error("[CRON] scan_due_reminders: job failed: %s", report.error)
        sys.exit(1)
    _LOGGER.info(
        "[CRON] scan_due_reminders: job completed (due=%d sent=%d failed=%d write_failed=%d)",
        report.due, report.sent, report.failed, report.write_failed,
    )
