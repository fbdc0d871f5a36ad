# hipop_billing/entitlements/analytics.py
"""
Usage analytics: a read-only view over the monthly counters of one user.

Nothing here writes; it only aggregates what accounting already stored.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from hipop_billing.config.settings import Settings
from hipop_billing.entitlements.resolver import EntitlementResolver
from hipop_billing.entitlements.usage import (
    UsageStore,
    get_next_reset_date,
    trailing_month_keys,
    usage_percentage,
    utcnow,
)
from hipop_billing.errors import InvalidInputError
from hipop_billing.validation import validate_amount, validate_user_id

logger = logging.getLogger("hipop_billing.entitlements.analytics")

RECENT_ALERTS = 10
DEFAULT_MONTHS_BACK = 6


class UsageAnalytics:
    def __init__(self, store: UsageStore, resolver: EntitlementResolver, settings: Settings):
        self.store = store
        self.resolver = resolver
        self.settings = settings

    async def get_usage_analytics(
        self,
        user_id: str,
        months_back: int = DEFAULT_MONTHS_BACK,
        *,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        user_id = validate_user_id(user_id)
        months_back = validate_amount(months_back, field_name="months", minimum=1)
        if months_back > self.settings.analytics_max_months:
            raise InvalidInputError(
                "months",
                "AMOUNT_OUT_OF_RANGE",
                f"months must be <= {self.settings.analytics_max_months}",
            )
        now = now or utcnow()

        entitlement = await self.resolver.resolve(user_id)
        record = await self.store.get_record(user_id) or {}

        monthly_usage: Dict[str, Dict[str, int]] = {}
        trends: Dict[str, List[Dict[str, Any]]] = {}
        recommendations: List[Dict[str, Any]] = []

        for month in trailing_month_keys(months_back, now):
            counters = record.get(month)
            if not counters:
                continue
            monthly_usage[month] = dict(counters)

            for feature, usage in counters.items():
                if isinstance(usage, bool) or not isinstance(usage, int):
                    continue
                limit = self.resolver.limit_for(entitlement, feature)
                if limit <= 0:
                    continue
                percentage = usage_percentage(usage, limit)
                trends.setdefault(feature, []).append(
                    {"month": month, "usage": usage, "limit": limit, "percentage": percentage}
                )
                if percentage >= self.settings.usage_alert_threshold:
                    recommendations.append(
                        {
                            "type": "upgrade_suggested",
                            "feature": feature,
                            "month": month,
                            "message": (
                                f"You're using {percentage}% of your {feature} limit. "
                                f"Consider upgrading for unlimited access."
                            ),
                            "priority": "high" if percentage >= 95 else "medium",
                        }
                    )

        alerts = await self.store.recent_alerts(user_id, RECENT_ALERTS)

        logger.info(
            f"Usage analytics generated for {user_id}: {months_back} months, "
            f"{len(recommendations)} recommendations, {len(alerts)} alerts"
        )
        return {
            "user_id": user_id,
            "generated_at": now,
            "months_analyzed": months_back,
            "monthly_usage": monthly_usage,
            "trends": trends,
            "alerts": alerts,
            "recommendations": recommendations,
            "tier_info": {
                "current_tier": entitlement.tier,
                "limits": entitlement.limits,
                "upgrade_recommended": any(r["type"] == "upgrade_suggested" for r in recommendations),
                "next_reset": get_next_reset_date(now),
            },
        }
