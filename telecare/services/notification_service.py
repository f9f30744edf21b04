"""
Notification dispatch

State changes commit first; notifications are enqueued afterwards as ARQ
jobs. A failure here is logged and never propagates back into the booking,
payment or refund that triggered it.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Protocol

from arq.connections import ArqRedis
from pydantic import BaseModel

from ..shared.constants import NotificationCategory

logger = logging.getLogger(__name__)

DELIVERY_TASK = "deliver_notification_task"


class NotificationRequest(BaseModel):
    category: str
    recipient: dict
    payload: dict
    defer_until: Optional[datetime] = None


class NotificationDispatcher(Protocol):
    async def send(
        self, category: str, recipient: dict, payload: dict, defer_until: Optional[datetime] = None
    ) -> dict: ...


class ArqNotificationDispatcher:
    """Enqueue notifications for the ARQ worker"""

    def __init__(self, pool: ArqRedis):
        self.pool = pool

    async def send(
        self, category: str, recipient: dict, payload: dict, defer_until: Optional[datetime] = None
    ) -> dict:
        if category not in NotificationCategory.ALL:
            return {"success": False, "error": f"Unknown notification category: {category}"}

        options = {}
        if defer_until is not None:
            # Stored timestamps are naive UTC
            options["_defer_until"] = defer_until.replace(tzinfo=timezone.utc)

        job = await self.pool.enqueue_job(DELIVERY_TASK, category, recipient, payload, **options)
        if job is None:
            return {"success": False, "error": "Notification job already queued"}
        return {"success": True, "messageId": job.job_id}


def recipient_for(user) -> dict:
    return {"user_id": user.id, "name": user.full_name, "email": user.email, "phone": user.phone}


async def dispatch_notifications(
    dispatcher: Optional[NotificationDispatcher], notifications: list[NotificationRequest]
) -> list[dict]:
    """Send each notification independently; failures are logged and reported, not raised"""
    results = []
    if dispatcher is None:
        if notifications:
            logger.warning(f"⚠️ No notification dispatcher configured - dropping {len(notifications)} notifications")
        return results

    for notification in notifications:
        recipient_id = notification.recipient.get("user_id")
        try:
            result = await dispatcher.send(
                notification.category,
                notification.recipient,
                notification.payload,
                defer_until=notification.defer_until,
            )
        except Exception as e:
            logger.error(f"❌ Failed to queue {notification.category} for user {recipient_id}: {e}")
            result = {"success": False, "error": str(e)}
        else:
            if result.get("success"):
                logger.info(f"📧 Queued {notification.category} for user {recipient_id}")
            else:
                logger.warning(
                    f"⚠️ {notification.category} for user {recipient_id} not queued: {result.get('error')}"
                )
        results.append(result)
    return results
