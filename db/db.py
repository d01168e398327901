"""
Async DB helpers for the reminder dispatch service.
Uses SQLAlchemy 2.0 + asyncpg driver – no raw SQL strings in app code.

The dispatch worker only ever touches three helpers here
(``list_due_reminders``, ``update_reminder_status`` and
``reset_reminder_to_pending``); everything else backs the CRUD API.
"""

from __future__ import annotations

import functools
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, ForeignKey, Index, String, Text, func, select, update
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import (
    DeclarativeBase, Mapped, mapped_column, relationship, selectinload
)
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
)

from app.errors import InvalidStateError, NotFoundError, PersistenceError
from app.types.reminder_contract import (
    ReminderCreate,
    ReminderStatus,
    ReminderUpdate,
    WebhookCreate,
    WebhookUpdate,
    ensure_dispatch_outcome,
    ensure_editable,
    ensure_retryable,
)

# ──────────────────────────────────────────────────────────────────────
# 1. Declarative metadata
# ──────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    pass

# ──────────────────────────────────────────────────────────────────────
# 2. Lazy engine / session factory
# ──────────────────────────────────────────────────────────────────────
_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None

def _build_url(url: str | None = None) -> str:
    url = url or os.getenv("DATABASE_URL") or os.getenv("DATABASE_PUBLIC_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set")
    if url.startswith(("postgres://", "postgresql://")):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    return url

def configure(url: str | None = None, **engine_kwargs: Any) -> AsyncEngine:
    """(Re)build the engine, e.g. to point tests at an in-memory SQLite."""
    global _engine, _session_maker
    url = _build_url(url)
    if url.startswith("postgresql+asyncpg://"):
        engine_kwargs.setdefault("pool_size", 5)
        engine_kwargs.setdefault("max_overflow", 5)
    _engine = create_async_engine(url, **engine_kwargs)
    _session_maker = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine

def get_engine() -> AsyncEngine:
    if _engine is None:
        configure()
    return _engine

@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    get_engine()
    async with _session_maker() as session:
        yield session

def _persistence_errors(fn):
    """Surface driver/ORM failures as PersistenceError to the dispatch worker."""
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except SQLAlchemyError as exc:
            raise PersistenceError(str(exc)) from exc
    return wrapper

def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

# ──────────────────────────────────────────────────────────────────────
# 3. ORM models
# ──────────────────────────────────────────────────────────────────────

class Webhook(Base):
    __tablename__ = "webhooks"

    id:         Mapped[int]  = mapped_column(primary_key=True, autoincrement=True)
    name:       Mapped[str]  = mapped_column(String(255))
    url:        Mapped[str]  = mapped_column(Text)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Reminder(Base):
    __tablename__ = "reminders"
    __table_args__ = (
        Index("ix_reminders_status_remind_at", "status", "remind_at"),
        CheckConstraint(
            "(status = 'failed') = (error_message IS NOT NULL)",
            name="ck_reminders_error_iff_failed",
        ),
    )

    id:            Mapped[int]  = mapped_column(primary_key=True, autoincrement=True)
    title:         Mapped[str]  = mapped_column(String(255))
    content:       Mapped[str | None] = mapped_column(Text)
    remind_at:     Mapped[datetime]   = mapped_column(DateTime(timezone=True))
    status:        Mapped[str]  = mapped_column(String(16), default=ReminderStatus.pending.value)
    error_message: Mapped[str | None] = mapped_column(Text)
    webhook_id:    Mapped[int]  = mapped_column(ForeignKey("webhooks.id"))
    created_at:    Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at:    Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    webhook: Mapped[Webhook | None] = relationship(lazy="selectin")


# ──────────────────────────────────────────────────────────────────────
# 4. DDL helper (run once at startup or from Alembic)
# ──────────────────────────────────────────────────────────────────────
async def create_all():
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ──────────────────────────────────────────────────────────────────────
# 5. Dispatch gateway
# ──────────────────────────────────────────────────────────────────────

# 5.1 Due reminders ----------------------------------------------------
@_persistence_errors
async def list_due_reminders(now: datetime, limit: int = 100) -> list[Reminder]:
    """Pending reminders due at or before *now*, with their webhook loaded."""
    async with session_scope() as s:
        stmt = (
            select(Reminder)
            .options(selectinload(Reminder.webhook))
            .where(
                Reminder.status == ReminderStatus.pending.value,
                Reminder.remind_at <= _utc(now),
            )
            .order_by(Reminder.remind_at)
            .limit(limit)
        )
        res = await s.execute(stmt)
        return list(res.scalars().all())


# 5.2 Status write -----------------------------------------------------
@_persistence_errors
async def update_reminder_status(
    rid: int, status: ReminderStatus | str, error_message: str | None = None
) -> Reminder:
    """pending → sent/failed, with status + error_message in one statement.

    A reminder that already left pending (e.g. written by an overlapping
    cycle) is never overwritten: InvalidStateError, row untouched.
    """
    error_message = ensure_dispatch_outcome(status, error_message)
    async with session_scope() as s:
        res = await s.execute(
            update(Reminder)
            .where(
                Reminder.id == rid,
                Reminder.status == ReminderStatus.pending.value,
            )
            .values(status=ReminderStatus(status).value, error_message=error_message)
        )
        await s.commit()
        if res.rowcount == 0:
            current = await s.get(Reminder, rid)
            if current is None:
                raise NotFoundError(f"Reminder {rid} not found")
            raise InvalidStateError(
                f"Reminder {rid} is already {current.status}; only pending reminders can be dispatched"
            )
        return await _load_reminder(s, rid)


# 5.3 Retry trigger ----------------------------------------------------
@_persistence_errors
async def reset_reminder_to_pending(rid: int) -> Reminder:
    """failed → pending with the error cleared; anything else is rejected untouched."""
    async with session_scope() as s:
        res = await s.execute(
            update(Reminder)
            .where(
                Reminder.id == rid,
                Reminder.status == ReminderStatus.failed.value,
            )
            .values(status=ReminderStatus.pending.value, error_message=None)
        )
        await s.commit()
        if res.rowcount == 0:
            current = await s.get(Reminder, rid)
            if current is None:
                raise NotFoundError(f"Reminder {rid} not found")
            ensure_retryable(current.status)
        return await _load_reminder(s, rid)


async def _load_reminder(s: AsyncSession, rid: int) -> Reminder:
    res = await s.execute(
        select(Reminder)
        .options(selectinload(Reminder.webhook))
        .where(Reminder.id == rid)
        .execution_options(populate_existing=True)
    )
    reminder = res.scalar_one_or_none()
    if reminder is None:
        raise NotFoundError(f"Reminder {rid} not found")
    return reminder


# ──────────────────────────────────────────────────────────────────────
# 6. CRUD helpers (API layer)
# ──────────────────────────────────────────────────────────────────────

# 6.1 Reminders --------------------------------------------------------
async def _require_webhook(s: AsyncSession, webhook_id: int) -> Webhook:
    webhook = await s.get(Webhook, webhook_id)
    if webhook is None:
        raise NotFoundError(f"Webhook {webhook_id} not found")
    return webhook


async def create_reminder(data: ReminderCreate) -> Reminder:
    async with session_scope() as s:
        await _require_webhook(s, data.webhook_id)
        reminder = Reminder(
            title=data.title,
            content=data.content,
            remind_at=_utc(data.remind_at),
            status=ReminderStatus.pending.value,
            webhook_id=data.webhook_id,
        )
        s.add(reminder)
        await s.commit()
        return await _load_reminder(s, reminder.id)


async def get_reminder(rid: int) -> Reminder:
    async with session_scope() as s:
        return await _load_reminder(s, rid)


async def list_reminders(
    status: ReminderStatus | str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[Reminder], int]:
    page = max(page, 1)
    async with session_scope() as s:
        stmt = select(Reminder).options(selectinload(Reminder.webhook))
        if status:
            stmt = stmt.where(Reminder.status == ReminderStatus(status).value)
        stmt = (
            stmt.order_by(Reminder.remind_at.desc(), Reminder.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        res = await s.execute(stmt)
        rows = list(res.scalars().all())
    total = await count_reminders(status=status)
    return rows, total


async def count_reminders(
    status: ReminderStatus | str | None = None,
    webhook_id: int | None = None,
) -> int:
    async with session_scope() as s:
        stmt = select(func.count(Reminder.id))
        if status:
            stmt = stmt.where(Reminder.status == ReminderStatus(status).value)
        if webhook_id is not None:
            stmt = stmt.where(Reminder.webhook_id == webhook_id)
        res = await s.execute(stmt)
        return int(res.scalar_one())


async def update_reminder(rid: int, data: ReminderUpdate) -> Reminder:
    changes = data.model_dump(exclude_unset=True)
    async with session_scope() as s:
        reminder = await s.get(Reminder, rid)
        if reminder is None:
            raise NotFoundError(f"Reminder {rid} not found")
        ensure_editable(reminder.status)
        # content may be cleared; the required fields may not
        for key in ("title", "remind_at", "webhook_id"):
            if key in changes and changes[key] is None:
                del changes[key]
        if "webhook_id" in changes:
            await _require_webhook(s, changes["webhook_id"])
        if "remind_at" in changes:
            changes["remind_at"] = _utc(changes["remind_at"])
        if not changes:
            return await _load_reminder(s, rid)
        # Status is re-checked in the WHERE so a dispatch write that lands
        # between the read above and this update is not overwritten.
        res = await s.execute(
            update(Reminder)
            .where(
                Reminder.id == rid,
                Reminder.status == ReminderStatus.pending.value,
            )
            .values(**changes)
        )
        await s.commit()
        if res.rowcount == 0:
            raise InvalidStateError("Only pending reminders can be edited")
        return await _load_reminder(s, rid)


async def delete_reminder(rid: int) -> None:
    async with session_scope() as s:
        reminder = await s.get(Reminder, rid)
        if reminder is None:
            raise NotFoundError(f"Reminder {rid} not found")
        await s.delete(reminder)
        await s.commit()


# 6.2 Webhook targets --------------------------------------------------
async def _clear_default(s: AsyncSession, keep_id: int | None = None) -> None:
    stmt = update(Webhook).where(Webhook.is_default.is_(True))
    if keep_id is not None:
        stmt = stmt.where(Webhook.id != keep_id)
    await s.execute(stmt.values(is_default=False))


async def create_webhook(data: WebhookCreate) -> Webhook:
    async with session_scope() as s:
        if data.is_default:
            await _clear_default(s)
        webhook = Webhook(name=data.name, url=data.url, is_default=data.is_default)
        s.add(webhook)
        await s.commit()
        await s.refresh(webhook)
        return webhook


async def get_webhook(wid: int) -> Webhook:
    async with session_scope() as s:
        return await _require_webhook(s, wid)


async def list_webhooks() -> list[Webhook]:
    async with session_scope() as s:
        res = await s.execute(
            select(Webhook).order_by(Webhook.created_at.desc(), Webhook.id.desc())
        )
        return list(res.scalars().all())


async def update_webhook(wid: int, data: WebhookUpdate) -> Webhook:
    changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    async with session_scope() as s:
        webhook = await _require_webhook(s, wid)
        if changes.get("is_default"):
            await _clear_default(s, keep_id=wid)
        for key, value in changes.items():
            setattr(webhook, key, value)
        await s.commit()
        await s.refresh(webhook)
        return webhook


async def delete_webhook(wid: int) -> None:
    in_use = await count_reminders(webhook_id=wid)
    if in_use > 0:
        raise InvalidStateError(f"Cannot delete: {in_use} reminders are using this webhook")
    async with session_scope() as s:
        webhook = await _require_webhook(s, wid)
        await s.delete(webhook)
        await s.commit()


async def dispose_engine():
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_maker = None
