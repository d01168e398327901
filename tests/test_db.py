from datetime import datetime, timedelta, timezone

import pytest

from app.errors import InvalidStateError, NotFoundError
from app.types.reminder_contract import (
    ReminderCreate,
    ReminderStatus,
    ReminderUpdate,
    WebhookCreate,
    WebhookUpdate,
)

UTC = timezone.utc
NOW = datetime(2026, 10, 19, 9, 1, tzinfo=UTC)


async def _webhook(store, name="team", default=False):
    return await store.create_webhook(
        WebhookCreate(name=name, url=f"https://hook.example/{name}", is_default=default)
    )


async def _reminder(store, webhook, remind_at=NOW - timedelta(minutes=1), title="Stand-up"):
    return await store.create_reminder(
        ReminderCreate(title=title, remind_at=remind_at, webhook_id=webhook.id)
    )


@pytest.mark.asyncio
async def test_create_reminder_starts_pending(store):
    hook = await _webhook(store)

    reminder = await _reminder(store, hook)

    assert reminder.status == "pending"
    assert reminder.error_message is None
    assert reminder.webhook.url == "https://hook.example/team"


@pytest.mark.asyncio
async def test_create_reminder_requires_existing_webhook(store):
    with pytest.raises(NotFoundError):
        await store.create_reminder(
            ReminderCreate(title="x", remind_at=NOW, webhook_id=404)
        )


@pytest.mark.asyncio
async def test_list_due_filters_status_time_and_limit(store):
    hook = await _webhook(store)
    due = [await _reminder(store, hook, NOW - timedelta(minutes=i), f"due {i}") for i in range(3)]
    await _reminder(store, hook, NOW + timedelta(minutes=1), "later")
    sent = await _reminder(store, hook, NOW - timedelta(hours=1), "done")
    await store.update_reminder_status(sent.id, ReminderStatus.sent)

    rows = await store.list_due_reminders(NOW, limit=100)
    assert sorted(r.id for r in rows) == sorted(r.id for r in due)
    assert all(r.webhook is not None for r in rows)

    assert len(await store.list_due_reminders(NOW, limit=2)) == 2


@pytest.mark.asyncio
async def test_update_status_keeps_error_only_on_failed(store):
    hook = await _webhook(store)
    reminder = await _reminder(store, hook)

    failed = await store.update_reminder_status(reminder.id, "failed", "invalid webhook url")
    assert (failed.status, failed.error_message) == ("failed", "invalid webhook url")

    other = await _reminder(store, hook)
    sent = await store.update_reminder_status(other.id, "sent", "ignored")
    assert (sent.status, sent.error_message) == ("sent", None)

    with pytest.raises(ValueError):
        await store.update_reminder_status(other.id, "failed", None)
    with pytest.raises(NotFoundError):
        await store.update_reminder_status(404, "sent")


@pytest.mark.asyncio
async def test_update_status_never_overwrites_a_dispatched_reminder(store):
    hook = await _webhook(store)
    reminder = await _reminder(store, hook)
    await store.update_reminder_status(reminder.id, "sent")

    # A late write from an overlapping cycle must not touch the sent row
    with pytest.raises(InvalidStateError):
        await store.update_reminder_status(reminder.id, "failed", "late duplicate")
    with pytest.raises(InvalidStateError):
        await store.update_reminder_status(reminder.id, "sent")

    row = await store.get_reminder(reminder.id)
    assert (row.status, row.error_message) == ("sent", None)

    failed = await _reminder(store, hook)
    await store.update_reminder_status(failed.id, "failed", "timeout")
    with pytest.raises(InvalidStateError):
        await store.update_reminder_status(failed.id, "sent")
    row = await store.get_reminder(failed.id)
    assert (row.status, row.error_message) == ("failed", "timeout")


@pytest.mark.asyncio
async def test_reset_to_pending_only_from_failed(store):
    hook = await _webhook(store)
    reminder = await _reminder(store, hook)
    await store.update_reminder_status(reminder.id, "failed", "timeout")

    reset = await store.reset_reminder_to_pending(reminder.id)
    assert (reset.status, reset.error_message) == ("pending", None)

    # pending → rejected, unchanged
    with pytest.raises(InvalidStateError):
        await store.reset_reminder_to_pending(reminder.id)
    assert (await store.get_reminder(reminder.id)).status == "pending"

    # sent → rejected, unchanged
    await store.update_reminder_status(reminder.id, "sent")
    with pytest.raises(InvalidStateError):
        await store.reset_reminder_to_pending(reminder.id)
    assert (await store.get_reminder(reminder.id)).status == "sent"

    with pytest.raises(NotFoundError):
        await store.reset_reminder_to_pending(404)


@pytest.mark.asyncio
async def test_edit_allowed_only_while_pending(store):
    hook = await _webhook(store)
    reminder = await _reminder(store, hook)

    later = NOW + timedelta(days=1)
    edited = await store.update_reminder(
        reminder.id, ReminderUpdate(title="Retro", content="bring notes", remind_at=later)
    )
    assert edited.title == "Retro"
    assert edited.content == "bring notes"

    await store.update_reminder_status(reminder.id, "sent")
    with pytest.raises(InvalidStateError):
        await store.update_reminder(reminder.id, ReminderUpdate(remind_at=NOW))


@pytest.mark.asyncio
async def test_list_reminders_paginates_newest_due_first(store):
    hook = await _webhook(store)
    for i in range(5):
        await _reminder(store, hook, NOW + timedelta(hours=i), f"r{i}")
    failed = await _reminder(store, hook, NOW - timedelta(days=1), "old")
    await store.update_reminder_status(failed.id, "failed", "boom")

    rows, total = await store.list_reminders(page=1, page_size=2)
    assert total == 6
    assert [r.title for r in rows] == ["r4", "r3"]

    rows, total = await store.list_reminders(status="failed")
    assert total == 1 and rows[0].title == "old"


@pytest.mark.asyncio
async def test_single_default_webhook(store):
    first = await _webhook(store, "first", default=True)
    second = await _webhook(store, "second", default=True)

    hooks = {h.name: h.is_default for h in await store.list_webhooks()}
    assert hooks == {"first": False, "second": True}

    await store.update_webhook(first.id, WebhookUpdate(is_default=True))
    hooks = {h.name: h.is_default for h in await store.list_webhooks()}
    assert hooks == {"first": True, "second": False}
    assert second.id != first.id


@pytest.mark.asyncio
async def test_webhook_delete_blocked_while_referenced(store):
    hook = await _webhook(store)
    reminder = await _reminder(store, hook)

    with pytest.raises(InvalidStateError, match="1 reminders are using this webhook"):
        await store.delete_webhook(hook.id)

    await store.delete_reminder(reminder.id)
    await store.delete_webhook(hook.id)
    with pytest.raises(NotFoundError):
        await store.get_webhook(hook.id)
