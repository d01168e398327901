"""WeCom-style group-bot webhook client.

One POST per call, no retries.  ``post_message`` raises DeliveryError on any
failure; ``deliver`` folds that into a ``DeliveryResult`` so the dispatch
cycle never has to catch anything.
"""

from __future__ import annotations

import logging
from typing import Optional

import requests

from app.errors import DeliveryError
from app.types.reminder_contract import DeliveryResult
from config import settings

_LOGGER = logging.getLogger(__name__)

MESSAGE_PREFIX = "⏰ Reminder: "
FALLBACK_REASON = "Failed to send message"


def format_message(title: str, content: Optional[str] = None) -> str:
    if content:
        return f"{MESSAGE_PREFIX}{title}\n{content}"
    return f"{MESSAGE_PREFIX}{title}"


def build_payload(title: str, content: Optional[str] = None) -> dict:
    return {"msgtype": "text", "text": {"content": format_message(title, content)}}


def post_message(
    url: str,
    title: str,
    content: Optional[str] = None,
    timeout: Optional[float] = None,
) -> dict:
    """POST the reminder to *url* and return the accepted ``errcode`` reply.

    Raises DeliveryError for transport errors, unreadable replies, HTTP errors
    and non-zero ``errcode``.
    """
    timeout = settings.WEBHOOK_TIMEOUT if timeout is None else timeout
    try:
        response = requests.post(url, json=build_payload(title, content), timeout=timeout)
    except requests.RequestException as e:
        # Connection errors, timeouts, invalid URLs
        raise DeliveryError(str(e) or e.__class__.__name__) from e

    try:
        body = response.json()
    except ValueError as e:
        if not response.ok:
            raise DeliveryError(f"HTTP {response.status_code}") from e
        raise DeliveryError(f"Invalid response from webhook: {e}") from e

    if not isinstance(body, dict):
        raise DeliveryError(f"Invalid response from webhook: {body!r}")

    errcode = body.get("errcode") or 0
    if errcode != 0:
        _LOGGER.debug("Webhook %s rejected message: %s", url, body)
        raise DeliveryError(body.get("errmsg") or FALLBACK_REASON)
    if not response.ok:
        raise DeliveryError(body.get("errmsg") or f"HTTP {response.status_code}")
    return body


def deliver(
    url: str,
    title: str,
    content: Optional[str] = None,
    timeout: Optional[float] = None,
) -> DeliveryResult:
    """Single attempt; every failure is folded into the returned result."""
    try:
        post_message(url, title, content, timeout=timeout)
    except DeliveryError as e:
        return DeliveryResult.failure(str(e))
    return DeliveryResult.success()
