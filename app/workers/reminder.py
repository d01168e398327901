"""Celery task wrapping one dispatch cycle."""

from __future__ import annotations

import asyncio

from app.celery_app import celery_app
from app.services.dispatcher import DispatchEngine, log_event
import db


async def _run_cycle() -> dict:
    engine = DispatchEngine(listeners=[log_event])
    try:
        report = await engine.run_cycle()
    finally:
        # Each task gets a fresh event loop; pooled connections can't outlive it
        await db.dispose_engine()
    return report.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Celery Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="app.workers.reminder.dispatch_due", bind=True, ignore_result=True)
def dispatch_due(self):  # noqa: D401
    """Run one dispatch cycle synchronously inside the worker.

    A cycle whose batch read fails is not retried here; the next beat tick
    is the retry.
    """
    return asyncio.run(_run_cycle())
