"""Error taxonomy shared by the dispatch worker and the CRUD layer."""

from __future__ import annotations


class ReminderServiceError(Exception):
    """Base class for all reminder service errors."""


class DeliveryError(ReminderServiceError):
    """A single webhook delivery attempt failed (transport or endpoint error)."""


class PersistenceError(ReminderServiceError):
    """The reminder store could not be read or written."""


class InvalidStateError(ReminderServiceError):
    """The requested transition is not allowed from the reminder's current status."""


class NotFoundError(ReminderServiceError):
    """The referenced reminder or webhook target does not exist."""
