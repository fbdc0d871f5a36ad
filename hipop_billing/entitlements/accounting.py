# hipop_billing/entitlements/accounting.py
"""
Usage Accounting Engine

Records consumption events against the current month and raises threshold
alerts.

Flow for record_usage:
1. Validate input (nothing is touched on failure)
2. Resolve the user's effective limit
3. In one transaction: atomically increment the month and lifetime counters
   and, if the new total is at or above the alert threshold, insert an alert
4. After commit: notify the user at or above the notify threshold, emit
   webhook events

Alerts are not deduplicated: every recording that leaves usage at or above a
threshold produces a new alert (and notification above the notify threshold).
"""
import logging
from datetime import datetime
from typing import Any, Mapping, Optional

from hipop_billing.billing.base import (
    UNLIMITED,
    LimitCheck,
    NotificationSink,
    Reservation,
    UsageAlert,
    UsageResult,
)
from hipop_billing.config.settings import Settings
from hipop_billing.entitlements.events import (
    NOTIFICATION_KIND,
    UsageEventEmitter,
    build_limit_notification,
)
from hipop_billing.entitlements.resolver import EntitlementResolver
from hipop_billing.entitlements.usage import UsageStore, month_key, usage_percentage, utcnow
from hipop_billing.logs.logging_config import log_operation
from hipop_billing.validation import (
    sanitize_metadata,
    validate_amount,
    validate_feature_name,
    validate_user_id,
)

logger = logging.getLogger("hipop_billing.entitlements.accounting")


class UsageAccountingEngine:
    def __init__(
        self,
        store: UsageStore,
        resolver: EntitlementResolver,
        settings: Settings,
        notifier: NotificationSink,
        events: Optional[UsageEventEmitter] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.settings = settings
        self.notifier = notifier
        self.events = events or UsageEventEmitter()

    async def record_usage(
        self,
        user_id: str,
        feature_name: str,
        amount: int = 1,
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> UsageResult:
        """
        Record `amount` units of `feature_name` for the current month.

        Amount 0 is a valid no-op recording that still updates last_activity.

        Raises:
            InvalidInputError: bad user id, feature name, amount or metadata
            StoreUnavailableError: nothing was committed; safe to retry
        """
        user_id = validate_user_id(user_id)
        feature_name = validate_feature_name(feature_name)
        amount = validate_amount(amount)
        clean_metadata = sanitize_metadata(metadata)
        now = now or utcnow()
        month = month_key(now)

        with log_operation(logger, "record_usage", user_id=user_id, feature=feature_name, amount=amount):
            entitlement = await self.resolver.resolve(user_id)
            limit = self.resolver.limit_for(entitlement, feature_name)

            async def apply(session) -> UsageResult:
                new_total = await self.store.increment(
                    user_id, feature_name, amount, month, now, clean_metadata, session=session
                )
                return await self._evaluate_thresholds(user_id, feature_name, new_total, limit, month, now, session)

            result = await self.store.run_transaction(apply)

        await self._after_commit(user_id, feature_name, amount, result)
        return result

    async def reserve_and_record(
        self,
        user_id: str,
        feature_name: str,
        amount: int = 1,
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Reservation:
        """
        Check and record in one atomic step.

        The increment is applied only when current + amount <= limit (or the
        limit is unlimited), so concurrent callers cannot jointly overshoot
        the quota the way check_limit followed by record_usage can.

        Raises:
            InvalidInputError: bad input
            StoreUnavailableError: nothing was committed; safe to retry
        """
        user_id = validate_user_id(user_id)
        feature_name = validate_feature_name(feature_name)
        amount = validate_amount(amount, field_name="requestedAmount", minimum=1)
        clean_metadata = sanitize_metadata(metadata)
        now = now or utcnow()
        month = month_key(now)

        with log_operation(logger, "reserve_and_record", user_id=user_id, feature=feature_name, amount=amount):
            entitlement = await self.resolver.resolve(user_id)
            limit = self.resolver.limit_for(entitlement, feature_name)

            async def apply(session) -> Optional[UsageResult]:
                if limit == UNLIMITED:
                    new_total: Optional[int] = await self.store.increment(
                        user_id, feature_name, amount, month, now, clean_metadata, session=session
                    )
                else:
                    new_total = await self.store.increment_if_within(
                        user_id, feature_name, amount, limit, month, now, clean_metadata, session=session
                    )
                if new_total is None:
                    return None
                return await self._evaluate_thresholds(user_id, feature_name, new_total, limit, month, now, session)

            result = await self.store.run_transaction(apply)

            if result is None:
                current = await self.store.get_current_usage(user_id, feature_name, month)
                self.events.emit_limit_reached(user_id, feature_name, amount, current, limit)
                check = LimitCheck(
                    allowed=False,
                    current_usage=current,
                    limit=limit,
                    would_exceed_limit=True,
                    percentage_used=usage_percentage(current, limit),
                    remaining_usage=max(0, limit - current),
                    tier=entitlement.tier,
                )
                return Reservation(check=check)

        await self._after_commit(user_id, feature_name, amount, result)
        previous = result.new_total - amount
        check = LimitCheck(
            allowed=True,
            current_usage=previous,
            limit=limit,
            would_exceed_limit=False,
            percentage_used=usage_percentage(previous, limit),
            remaining_usage=UNLIMITED if limit == UNLIMITED else max(0, limit - previous),
            tier=entitlement.tier,
        )
        return Reservation(check=check, usage=result)

    async def _evaluate_thresholds(
        self,
        user_id: str,
        feature_name: str,
        new_total: int,
        limit: int,
        month: str,
        now: datetime,
        session,
    ) -> UsageResult:
        percentage = usage_percentage(new_total, limit)
        alert = None
        if limit > 0 and new_total > 0 and percentage >= self.settings.usage_alert_threshold:
            alert = UsageAlert(
                user_id=user_id,
                feature_name=feature_name,
                current_usage=new_total,
                limit=limit,
                percentage=percentage,
                timestamp=now,
            )
            await self.store.insert_alert(alert, session=session)
            logger.warning(f"Usage alert: {user_id} at {percentage}% of {feature_name} ({new_total}/{limit})")
        return UsageResult(new_total=new_total, limit=limit, percentage_used=percentage, month=month, alert=alert)

    async def _after_commit(self, user_id: str, feature_name: str, amount: int, result: UsageResult) -> None:
        self.events.emit_recorded(user_id, feature_name, amount, result.new_total, result.limit, result.month)
        if result.alert is None:
            return

        self.events.emit_threshold_crossed(
            user_id, feature_name, result.new_total, result.limit, result.percentage_used
        )
        if result.percentage_used >= self.settings.usage_notify_threshold:
            result.notified = await self._notify(user_id, feature_name, result)

    async def _notify(self, user_id: str, feature_name: str, result: UsageResult) -> bool:
        payload = build_limit_notification(feature_name, result.new_total, result.limit, result.percentage_used)
        try:
            delivered = await self.notifier.notify(user_id, NOTIFICATION_KIND, payload)
        except Exception as e:
            # Sinks should not raise; a broken one still must not fail accounting
            logger.error(f"Notification sink raised for {user_id}/{feature_name}: {e}")
            return False
        if not delivered:
            logger.warning(f"Usage notification not delivered to {user_id} for {feature_name}")
        return bool(delivered)
