"""Celery application for the beat-driven deployment of the dispatch cycle.

Start beat plus a single-slot worker with:
    celery -A app.celery_app beat -l info
    celery -A app.celery_app worker -Q reminder -l info --concurrency=1

One worker slot keeps cycles from overlapping; beat entries expire after one
interval so ticks that queue up behind a slow cycle are dropped.
"""

from celery import Celery

from config import settings

BROKER_URL = settings.REDIS_URL

celery_app = Celery("reminder_dispatch", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings
celery_app.conf.task_acks_late = False  # a redelivered cycle could double-send
celery_app.conf.worker_prefetch_multiplier = 1

celery_app.conf.task_routes = {
    "app.workers.reminder.dispatch_due": {"queue": "reminder"},
}

# Beat schedule: dispatch due reminders every interval (one minute by default)
celery_app.conf.beat_schedule = {
    "dispatch-due-reminders": {
        "task": "app.workers.reminder.dispatch_due",
        "schedule": settings.DISPATCH_INTERVAL_SECONDS,
        "options": {"expires": settings.DISPATCH_INTERVAL_SECONDS},
    }
}

# --- Ensure tasks are registered ---
import app.workers.reminder  # noqa: E402,F401
