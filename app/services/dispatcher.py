"""
Dispatch engine: one pass over the due, pending reminders.

For each reminder selected by ``list_due_reminders`` the engine makes exactly
one delivery attempt and writes the outcome back:

    pending ──deliver ok──▶ sent      (terminal)
    pending ──deliver err─▶ failed    (terminal until the retry endpoint)

Nothing raised by delivery or by a per-reminder write escapes ``run_cycle``.
A failed batch read aborts the cycle; the next tick tries again.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from types import ModuleType
from typing import Any, Callable, Iterable, List, Optional

import db
from app.types.reminder_contract import (
    CycleReport,
    DeliveryResult,
    DispatchEvent,
    DispatchOutcome,
    ReminderStatus,
)
from app.utils import wecom
from config import settings

_LOGGER = logging.getLogger(__name__)

Deliver = Callable[[str, str, Optional[str]], DeliveryResult]
Listener = Callable[[DispatchEvent], None]


class DispatchEngine:
    """Runs dispatch cycles against a persistence gateway.

    ``gateway`` is anything exposing ``list_due_reminders(now, limit)`` and
    ``update_reminder_status(id, status, error_message)`` coroutines, the
    :mod:`db` package by default.  ``deliver`` is a blocking callable; it is
    run in a worker thread so a slow endpoint does not block the event loop.
    """

    def __init__(
        self,
        gateway: ModuleType | Any = db,
        deliver: Deliver = wecom.deliver,
        batch_size: int | None = None,
        listeners: Iterable[Listener] = (),
    ):
        self._gateway = gateway
        self._deliver = deliver
        self.batch_size = settings.DISPATCH_BATCH_SIZE if batch_size is None else batch_size
        self._listeners: List[Listener] = list(listeners)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    async def run_cycle(self, now: datetime | None = None) -> CycleReport:
        now = now or datetime.now(timezone.utc)
        report = CycleReport(started_at=now)
        _LOGGER.info("[%s] Checking for pending reminders...", now.isoformat())

        try:
            due = await self._gateway.list_due_reminders(now, limit=self.batch_size)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.error("Could not load due reminders, skipping cycle: %s", exc)
            report.aborted = True
            report.error = str(exc)
            return report

        report.due = len(due)
        _LOGGER.info("Found %d reminders to process", report.due)

        for reminder in due:
            event = await self._process(reminder)
            report.record(event)
            self._emit(event)
        return report

    async def _process(self, reminder) -> DispatchEvent:
        result = await self._attempt(reminder)
        status = ReminderStatus.sent if result.ok else ReminderStatus.failed
        event = DispatchEvent(
            reminder_id=reminder.id,
            webhook_id=reminder.webhook_id,
            title=reminder.title,
            outcome=DispatchOutcome(status.value),
            error=result.reason,
        )

        try:
            await self._gateway.update_reminder_status(reminder.id, status, result.reason)
        except Exception as exc:  # noqa: BLE001
            # The store keeps its last committed state: a still-pending row is
            # re-selected next cycle, an already dispatched one is left alone
            _LOGGER.error(
                "Could not record %s for reminder %s (%s): %s",
                status.value, reminder.id, reminder.title, exc,
            )
            event.outcome = DispatchOutcome.write_failed
            event.error = str(exc)
            return event

        if result.ok:
            _LOGGER.info("✓ Sent reminder: %s", reminder.title)
        else:
            _LOGGER.warning("✗ Failed to send reminder: %s %s", reminder.title, result.reason)
        return event

    async def _attempt(self, reminder) -> DeliveryResult:
        webhook = getattr(reminder, "webhook", None)
        if webhook is None:
            return DeliveryResult.failure(f"Webhook {reminder.webhook_id} not found")
        try:
            return await asyncio.to_thread(
                self._deliver, webhook.url, reminder.title, reminder.content
            )
        except Exception as exc:  # noqa: BLE001
            return DeliveryResult.failure(str(exc) or exc.__class__.__name__)

    def _emit(self, event: DispatchEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("Dispatch listener %r failed", listener)


def log_event(event: DispatchEvent) -> None:
    """Default listener: one structured log record per processed reminder."""
    _LOGGER.info("dispatch_event", extra={"dispatch_event": event.model_dump(mode="json")})
