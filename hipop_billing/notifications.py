# hipop_billing/notifications.py
"""
Notification and audit sinks backed by MongoDB.

InAppNotificationSink stores user-facing notifications in `notifications`;
the client app reads them from there. SystemLogAuditSink appends reset
audit entries to `system_logs`.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from motor.motor_asyncio import AsyncIOMotorDatabase

from hipop_billing.billing.base import AuditLogSink, NotificationSink
from hipop_billing.config.database import NOTIFICATIONS, SYSTEM_LOGS
from hipop_billing.errors import BillingError, store_call

logger = logging.getLogger("hipop_billing.notifications")


class InAppNotificationSink(NotificationSink):
    """
    In-app notification delivery via database storage.

    Delivery failures are logged and reported as False; they never propagate
    into the accounting path that triggered them.
    """

    channel_id = "in_app"

    def __init__(self, db: AsyncIOMotorDatabase, *, timeout_s: float):
        self.collection = db[NOTIFICATIONS]
        self.timeout_s = timeout_s

    async def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> bool:
        notification_doc = {
            "user_id": user_id,
            "type": kind,
            "title": payload.get("title", ""),
            "message": payload.get("message", ""),
            "data": payload.get("data") or {},
            "read": False,
            "created_at": datetime.now(timezone.utc),
            "channel": self.channel_id,
        }
        try:
            result = await store_call(
                self.collection.insert_one(notification_doc), self.timeout_s, "notifications.insert"
            )
        except BillingError as e:
            logger.error(f"Failed to send in-app notification: {e}")
            return False

        logger.info(f"In-app notification sent to user {user_id}: {result.inserted_id}")
        return True


class SystemLogAuditSink(AuditLogSink):
    """Append-only audit entries: {type, action, details, timestamp}."""

    def __init__(self, db: AsyncIOMotorDatabase, *, timeout_s: float, log_type: str = "usage_reset"):
        self.collection = db[SYSTEM_LOGS]
        self.timeout_s = timeout_s
        self.log_type = log_type

    async def record(self, action: str, details: Dict[str, Any]) -> None:
        """Raises StoreUnavailableError when the entry cannot be written."""
        await store_call(
            self.collection.insert_one(
                {
                    "type": self.log_type,
                    "action": action,
                    "details": details,
                    "timestamp": datetime.now(timezone.utc),
                }
            ),
            self.timeout_s,
            "system_logs.insert",
        )
