"""Fire-and-forget status notifications for subscribers."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)


async def dispatch_letter_notification(
    *,
    letter_id: str,
    subscriber_id: str,
    status: str,
    notes: Optional[str] = None,
) -> bool:
    """
    Post a status event to the notification webhook.

    Never raises: the transition being announced is already committed.
    Returns True when the webhook accepted the event.
    """
    url = (settings.NOTIFICATION_WEBHOOK_URL or "").strip()
    if not url:
        logger.debug("notification_skipped letter=%s status=%s (no webhook)", letter_id, status)
        return False

    payload = {
        "event": f"letter.{status}",
        "letter_id": letter_id,
        "subscriber_id": subscriber_id,
        "status": status,
        "notes": notes,
        "sent_at": datetime.now(timezone.utc).isoformat(),
    }
    try:
        async with httpx.AsyncClient(timeout=settings.NOTIFICATION_TIMEOUT_SECONDS) as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()
    except Exception as exc:
        logger.warning("notification_failed letter=%s status=%s error=%s", letter_id, status, exc)
        return False

    logger.info("notification_sent letter=%s status=%s", letter_id, status)
    return True
