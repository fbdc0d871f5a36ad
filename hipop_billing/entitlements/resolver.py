# hipop_billing/entitlements/resolver.py
"""
Entitlement Resolver

Turns "who is this user" into {tier, features, limits}. The subscription
record, when there is an active one, overrides the catalog; any limit the
record does not mention falls back to the free-tier default.
"""
import logging
from typing import Dict, Iterable

from hipop_billing.billing.base import (
    Entitlement,
    FeatureAccess,
    SubscriptionLookup,
    SubscriptionTier,
)
from hipop_billing.entitlements.catalog import TierCatalog

logger = logging.getLogger("hipop_billing.entitlements.resolver")


class EntitlementResolver:
    def __init__(self, subscriptions: SubscriptionLookup, catalog: TierCatalog):
        self.subscriptions = subscriptions
        self.catalog = catalog

    async def resolve(self, user_id: str) -> Entitlement:
        """
        Resolve the user's entitlement.

        Raises:
            StoreUnavailableError: subscription lookup failed or timed out
        """
        record = await self.subscriptions.find_active_subscription(user_id)
        if record is None:
            return Entitlement(
                tier=SubscriptionTier.FREE.value,
                features={},
                limits=self.catalog.default_limits(),
                status=None,
                has_subscription=False,
            )

        limits = self.catalog.default_limits()
        limits.update(record.limits)
        return Entitlement(
            tier=record.tier or SubscriptionTier.FREE.value,
            features=dict(record.features),
            limits=limits,
            status=record.status,
            has_subscription=True,
        )

    def limit_for(self, entitlement: Entitlement, feature_name: str) -> int:
        """Effective quota for a feature; unrecognized features default to 0 (deny)."""
        if feature_name in entitlement.limits:
            return int(entitlement.limits[feature_name])
        return self.catalog.default_limit_for_feature(feature_name)

    async def has_feature(self, user_id: str, feature_name: str) -> FeatureAccess:
        """Boolean feature gate. Fails secure: any error means no access."""
        try:
            entitlement = await self.resolve(user_id)
        except Exception as e:
            logger.error(f"Error validating feature access for {user_id}/{feature_name}: {e}")
            return FeatureAccess(has_access=False, reason="Validation error")

        if not entitlement.has_subscription:
            return FeatureAccess(has_access=False, tier=entitlement.tier, reason="No active subscription")

        has_access = entitlement.features.get(feature_name) is True
        logger.info(
            f"Feature validation: user={user_id} feature={feature_name} tier={entitlement.tier} access={has_access}"
        )
        return FeatureAccess(
            has_access=has_access,
            tier=entitlement.tier,
            status=entitlement.status,
            reason=None if has_access else "Feature not included in subscription",
        )

    async def check_features(self, user_id: str, feature_names: Iterable[str]) -> Dict[str, bool]:
        """Batch feature gate; every feature is False on error or without a subscription."""
        names = list(feature_names)
        try:
            entitlement = await self.resolve(user_id)
        except Exception as e:
            logger.error(f"Error in batch feature validation for {user_id}: {e}")
            return {name: False for name in names}

        if not entitlement.has_subscription:
            return {name: False for name in names}
        return {name: entitlement.features.get(name) is True for name in names}
