from .db import (
    Base,
    Reminder,
    Webhook,
    configure,
    get_engine,
    session_scope,
    create_all,
    dispose_engine,
    list_due_reminders,
    update_reminder_status,
    reset_reminder_to_pending,
    create_reminder,
    get_reminder,
    list_reminders,
    count_reminders,
    update_reminder,
    delete_reminder,
    create_webhook,
    get_webhook,
    list_webhooks,
    update_webhook,
    delete_webhook,
)  # noqa: F401
