import math
from typing import List, Optional

from fastapi import FastAPI, Query, Request, status
from fastapi.responses import JSONResponse

import db
from app.errors import InvalidStateError, NotFoundError
from app.types.reminder_contract import (
    Pagination,
    ReminderCreate,
    ReminderOut,
    ReminderPage,
    ReminderStatus,
    ReminderUpdate,
    WebhookCreate,
    WebhookOut,
    WebhookUpdate,
)
from config import settings

app = FastAPI(title="Reminder Service")


@app.on_event("shutdown")
async def shutdown_event():
    await db.dispose_engine()


# --------------------------------------------
# Error mapping
# --------------------------------------------

@app.exception_handler(NotFoundError)
async def not_found_handler(_request: Request, exc: NotFoundError):
    return JSONResponse({"error": str(exc)}, status_code=status.HTTP_404_NOT_FOUND)


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(_request: Request, exc: InvalidStateError):
    return JSONResponse({"error": str(exc)}, status_code=status.HTTP_400_BAD_REQUEST)


# --------------------------------------------
# Reminders
# --------------------------------------------

@app.get("/api/reminders", response_model=ReminderPage)
async def list_reminders(
    status_: Optional[ReminderStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=100, alias="pageSize"),
):
    rows, total = await db.list_reminders(status=status_, page=page, page_size=page_size)
    return ReminderPage(
        data=[ReminderOut.model_validate(r) for r in rows],
        pagination=Pagination(
            page=page,
            page_size=page_size,
            total=total,
            total_pages=math.ceil(total / page_size),
        ),
    )


@app.post("/api/reminders", response_model=ReminderOut, status_code=status.HTTP_201_CREATED)
async def create_reminder(body: ReminderCreate):
    return await db.create_reminder(body)


@app.get("/api/reminders/{reminder_id}", response_model=ReminderOut)
async def get_reminder(reminder_id: int):
    return await db.get_reminder(reminder_id)


@app.put("/api/reminders/{reminder_id}", response_model=ReminderOut)
async def update_reminder(reminder_id: int, body: ReminderUpdate):
    # Only pending reminders can be edited
    return await db.update_reminder(reminder_id, body)


@app.delete("/api/reminders/{reminder_id}")
async def delete_reminder(reminder_id: int):
    await db.delete_reminder(reminder_id)
    return {"success": True}


@app.post("/api/reminders/{reminder_id}/retry", response_model=ReminderOut)
async def retry_reminder(reminder_id: int):
    # Back to pending; the worker picks it up on its next cycle
    return await db.reset_reminder_to_pending(reminder_id)


# --------------------------------------------
# Webhook targets
# --------------------------------------------

@app.get("/api/webhooks", response_model=List[WebhookOut])
async def list_webhooks():
    return await db.list_webhooks()


@app.post("/api/webhooks", response_model=WebhookOut, status_code=status.HTTP_201_CREATED)
async def create_webhook(body: WebhookCreate):
    return await db.create_webhook(body)


@app.put("/api/webhooks/{webhook_id}", response_model=WebhookOut)
async def update_webhook(webhook_id: int, body: WebhookUpdate):
    return await db.update_webhook(webhook_id, body)


@app.delete("/api/webhooks/{webhook_id}")
async def delete_webhook(webhook_id: int):
    await db.delete_webhook(webhook_id)
    return {"success": True}
