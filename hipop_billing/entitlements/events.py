# hipop_billing/entitlements/events.py
"""
Usage Event Emission

Emits usage events to an optional webhook.

Events:
- usage.recorded: After usage is committed
- usage.threshold_crossed: When a recorded usage crossed the alert threshold
- usage.limit_reached: When a limit check or reservation was denied
- usage.reset: After a reset job finished

Webhook Support:
Set USAGE_WEBHOOK_URL to receive events. Webhooks are fire-and-forget: a
slow or failing receiver never delays or fails the operation that emitted
the event.

Also builds the user-facing notification for threshold crossings.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import httpx

logger = logging.getLogger("hipop_billing.entitlements.events")

WEBHOOK_TIMEOUT_S = 10.0

NOTIFICATION_KIND = "usage_limit_warning"
NOTIFICATION_TITLE = "Usage Limit Warning"


def build_limit_notification(
    feature_name: str,
    current_usage: int,
    limit: int,
    percentage: int,
) -> Dict[str, Any]:
    """Title, message and data for a usage_limit_warning notification."""
    if percentage >= 100:
        message = (
            f"You've reached your {feature_name} limit ({current_usage}/{limit}). "
            f"Upgrade to continue using this feature."
        )
        action = "upgrade_required"
    else:
        message = f"You're at {percentage}% of your {feature_name} limit ({current_usage}/{limit})."
        action = "upgrade_suggested"

    return {
        "title": NOTIFICATION_TITLE,
        "message": message,
        "data": {
            "feature_name": feature_name,
            "current_usage": current_usage,
            "limit": limit,
            "percentage": percentage,
            "recommended_action": action,
        },
    }


class UsageEventEmitter:
    """
    Posts usage events to USAGE_WEBHOOK_URL in background tasks.

    With no URL configured every emit is a no-op.
    """

    def __init__(self, webhook_url: Optional[str] = None, *, timeout_s: float = WEBHOOK_TIMEOUT_S):
        self.webhook_url = webhook_url
        self.timeout_s = timeout_s
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def send_webhook(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Deliver one event. Never raises."""
        if not self.webhook_url:
            return

        webhook_payload = {
            "event": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                response = await client.post(self.webhook_url, json=webhook_payload)
            if response.status_code >= 400:
                logger.warning(f"Webhook returned {response.status_code} for {event_type}")
            else:
                logger.debug(f"Webhook sent successfully for {event_type}")
        except httpx.HTTPError as e:
            logger.warning(f"Webhook send failed for {event_type}: {e}")

    def emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.webhook_url:
            return
        try:
            task = asyncio.get_running_loop().create_task(self.send_webhook(event_type, payload))
        except RuntimeError:
            # No running loop (sync caller); skip webhook
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight webhook deliveries (used on shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def emit_recorded(self, user_id: str, feature_name: str, amount: int, new_total: int, limit: int, month: str) -> None:
        self.emit(
            "usage.recorded",
            {
                "user_id": user_id,
                "feature_name": feature_name,
                "amount": amount,
                "current_usage": new_total,
                "limit": limit,
                "month": month,
            },
        )

    def emit_threshold_crossed(self, user_id: str, feature_name: str, current_usage: int, limit: int, percentage: int) -> None:
        self.emit(
            "usage.threshold_crossed",
            {
                "user_id": user_id,
                "feature_name": feature_name,
                "current_usage": current_usage,
                "limit": limit,
                "percentage": percentage,
            },
        )
        logger.info(f"Usage threshold reached: {user_id} at {percentage}% of {feature_name} ({current_usage}/{limit})")

    def emit_limit_reached(self, user_id: str, feature_name: str, attempted: int, current_usage: int, limit: int) -> None:
        self.emit(
            "usage.limit_reached",
            {
                "user_id": user_id,
                "feature_name": feature_name,
                "attempted": attempted,
                "current_usage": current_usage,
                "limit": limit,
            },
        )
        logger.info(f"Usage limit reached: {user_id} attempted {attempted} {feature_name} (limit: {limit})")

    def emit_reset(self, reset_type: str, summary: Dict[str, Any]) -> None:
        self.emit("usage.reset", {"reset_type": reset_type, **summary})
