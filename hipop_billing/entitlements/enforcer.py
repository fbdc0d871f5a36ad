# hipop_billing/entitlements/enforcer.py
"""
Limit Enforcement Gate

Pre-flight check run before an action is allowed. Read-only: it never
touches a counter. Callers record usage separately after the action
succeeds (or use reserve_and_record to do both atomically).

Fails secure: any internal error yields allowed=False with
error="limit_enforcement_failed", so a broken store never turns into
unmetered access.
"""
import logging
from datetime import datetime
from typing import Optional

from hipop_billing.billing.base import UNLIMITED, LimitCheck, SubscriptionTier
from hipop_billing.entitlements.events import UsageEventEmitter
from hipop_billing.entitlements.resolver import EntitlementResolver
from hipop_billing.entitlements.usage import UsageStore, month_key, usage_percentage, utcnow
from hipop_billing.validation import validate_amount, validate_feature_name, validate_user_id

logger = logging.getLogger("hipop_billing.entitlements.enforcer")

ENFORCEMENT_FAILED = "limit_enforcement_failed"


class LimitEnforcementGate:
    def __init__(
        self,
        store: UsageStore,
        resolver: EntitlementResolver,
        events: Optional[UsageEventEmitter] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.events = events or UsageEventEmitter()

    async def check_limit(
        self,
        user_id: str,
        feature_name: str,
        requested_amount: int = 1,
        *,
        now: Optional[datetime] = None,
    ) -> LimitCheck:
        """
        Would `requested_amount` more units of `feature_name` fit the user's quota?

        Raises:
            InvalidInputError: bad input (caller error, not an internal failure)
        """
        user_id = validate_user_id(user_id)
        feature_name = validate_feature_name(feature_name)
        requested_amount = validate_amount(requested_amount, field_name="requestedAmount", minimum=1)
        month = month_key(now or utcnow())

        try:
            entitlement = await self.resolver.resolve(user_id)
            limit = self.resolver.limit_for(entitlement, feature_name)
            current = await self.store.get_current_usage(user_id, feature_name, month)
        except Exception as e:
            logger.error(f"Limit check failed for {user_id}/{feature_name}; denying: {e}")
            return LimitCheck(
                allowed=False,
                current_usage=0,
                limit=0,
                would_exceed_limit=False,
                percentage_used=0,
                remaining_usage=0,
                tier=SubscriptionTier.FREE.value,
                error=ENFORCEMENT_FAILED,
            )

        unlimited = limit == UNLIMITED
        would_exceed = not unlimited and current + requested_amount > limit
        check = LimitCheck(
            allowed=not would_exceed,
            current_usage=current,
            limit=limit,
            would_exceed_limit=would_exceed,
            percentage_used=usage_percentage(current, limit),
            remaining_usage=UNLIMITED if unlimited else max(0, limit - current),
            tier=entitlement.tier,
        )

        if would_exceed:
            self.events.emit_limit_reached(user_id, feature_name, requested_amount, current, limit)
        else:
            logger.debug(f"Limit check passed: {user_id} {feature_name} {current}+{requested_amount}/{limit}")
        return check
