"""Pydantic models that define the contract between the CRUD layer, the
dispatch worker and the webhook endpoint.

These classes are intentionally framework-agnostic so they can be reused by
workers, API responses, and tests without pulling in FastAPI or database
layers.  The status guards at the bottom are the single source of truth for
which transitions each side is allowed to make.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.errors import InvalidStateError


class ReminderStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"


class _ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


def _as_utc(v: datetime) -> datetime:
    # Naive timestamps are taken to be UTC
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


def _non_empty(v: Optional[str], field: str) -> Optional[str]:
    if v is None:
        return v
    if not v.strip():
        raise ValueError(f"{field} must be a non-empty string")
    return v.strip()


def _http_url(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    if not v.startswith(("http://", "https://")):
        raise ValueError("url must start with http:// or https://")
    return v


# ──────────────────────────────
# Webhook targets
# ──────────────────────────────


class WebhookCreate(_ApiModel):
    name: str
    url: str
    is_default: bool = False

    @field_validator("name")
    def _name(cls, v):  # noqa: N805
        return _non_empty(v, "name")

    @field_validator("url")
    def _url(cls, v):  # noqa: N805
        return _http_url(v)


class WebhookUpdate(_ApiModel):
    name: Optional[str] = None
    url: Optional[str] = None
    is_default: Optional[bool] = None

    @field_validator("name")
    def _name(cls, v):  # noqa: N805
        return _non_empty(v, "name")

    @field_validator("url")
    def _url(cls, v):  # noqa: N805
        return _http_url(v)


class WebhookRef(_ApiModel):
    id: int
    name: str


class WebhookOut(WebhookRef):
    url: str
    is_default: bool


# ──────────────────────────────
# Reminders
# ──────────────────────────────


class ReminderCreate(_ApiModel):
    title: str
    content: Optional[str] = None
    remind_at: datetime
    webhook_id: int

    @field_validator("title")
    def _title(cls, v):  # noqa: N805
        return _non_empty(v, "title")

    @field_validator("remind_at")
    def _remind_at(cls, v):  # noqa: N805
        return _as_utc(v)


class ReminderUpdate(_ApiModel):
    """Partial update; only fields that are set are written."""

    title: Optional[str] = None
    content: Optional[str] = None
    remind_at: Optional[datetime] = None
    webhook_id: Optional[int] = None

    @field_validator("title")
    def _title(cls, v):  # noqa: N805
        return _non_empty(v, "title")

    @field_validator("remind_at")
    def _remind_at(cls, v):  # noqa: N805
        return _as_utc(v) if v is not None else v


class ReminderOut(_ApiModel):
    id: int
    title: str
    content: Optional[str] = None
    remind_at: datetime
    status: ReminderStatus
    error_message: Optional[str] = None
    webhook_id: int
    webhook: Optional[WebhookRef] = None


class Pagination(_ApiModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class ReminderPage(_ApiModel):
    data: List[ReminderOut]
    pagination: Pagination


# ──────────────────────────────
# Delivery + dispatch observability
# ──────────────────────────────


class DeliveryResult(BaseModel):
    """Outcome of exactly one webhook delivery attempt."""

    ok: bool
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "DeliveryResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str) -> "DeliveryResult":
        return cls(ok=False, reason=reason or "Unknown error")


class DispatchOutcome(str, Enum):
    sent = "sent"
    failed = "failed"
    # Delivery was attempted but the status write did not land; the reminder
    # stays pending and is re-selected next cycle.
    write_failed = "write_failed"


class DispatchEvent(BaseModel):
    """One structured event per reminder processed by a dispatch cycle."""

    reminder_id: int
    webhook_id: Optional[int] = None
    title: str
    outcome: DispatchOutcome
    error: Optional[str] = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CycleReport(BaseModel):
    started_at: datetime
    due: int = 0
    sent: int = 0
    failed: int = 0
    write_failed: int = 0
    aborted: bool = False
    error: Optional[str] = None

    def record(self, event: DispatchEvent) -> None:
        if event.outcome is DispatchOutcome.sent:
            self.sent += 1
        elif event.outcome is DispatchOutcome.failed:
            self.failed += 1
        else:
            self.write_failed += 1


# ──────────────────────────────
# Status transition guards
# ──────────────────────────────


def ensure_editable(status: ReminderStatus | str) -> None:
    """Reminders may only be edited (title, content, due time, target) while pending."""
    if ReminderStatus(status) is not ReminderStatus.pending:
        raise InvalidStateError("Only pending reminders can be edited")


def ensure_retryable(status: ReminderStatus | str) -> None:
    """Only failed reminders can be put back into the dispatch pool."""
    if ReminderStatus(status) is not ReminderStatus.failed:
        raise InvalidStateError("Only failed reminders can be retried")


def ensure_dispatch_outcome(status: ReminderStatus | str, error_message: Optional[str]) -> Optional[str]:
    """Validate a dispatch write and return the error message to store.

    A sent reminder never carries an error; a failed one always does.
    """
    status = ReminderStatus(status)
    if status is ReminderStatus.pending:
        raise InvalidStateError("Dispatch may only mark reminders sent or failed")
    if status is ReminderStatus.sent:
        return None
    if not error_message or not error_message.strip():
        raise ValueError("error_message is required when marking a reminder failed")
    return error_message
