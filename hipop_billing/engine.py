# hipop_billing/engine.py
"""
EntitlementEngine: single entry point wiring the usage components over one
injected Motor database.

    engine = EntitlementEngine(db, settings)
    check = await engine.check_limit(user_id, "global_products")
    if check.allowed:
        ...  # perform the action
        await engine.record_usage(user_id, "global_products")

No module-level clients: tests pass a fake database, production passes the
database from config.database.get_database().
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from motor.motor_asyncio import AsyncIOMotorDatabase

from hipop_billing.billing.base import (
    AuditLogSink,
    Entitlement,
    FeatureAccess,
    LimitCheck,
    NotificationSink,
    Reservation,
    ResetResult,
    ResetType,
    SubscriptionLookup,
    UsageResult,
)
from hipop_billing.billing.subscriptions import MongoSubscriptionLookup
from hipop_billing.config import database
from hipop_billing.config.settings import Settings
from hipop_billing.entitlements.accounting import UsageAccountingEngine
from hipop_billing.entitlements.analytics import DEFAULT_MONTHS_BACK, UsageAnalytics
from hipop_billing.entitlements.catalog import TierCatalog, load_catalog
from hipop_billing.entitlements.enforcer import LimitEnforcementGate
from hipop_billing.entitlements.events import UsageEventEmitter
from hipop_billing.entitlements.reset import ResetController, Scope
from hipop_billing.entitlements.resolver import EntitlementResolver
from hipop_billing.entitlements.usage import UsageStore
from hipop_billing.notifications import InAppNotificationSink, SystemLogAuditSink
from hipop_billing.validation import validate_feature_name, validate_user_id

logger = logging.getLogger("hipop_billing.engine")


class EntitlementEngine:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        settings: Settings,
        notifier: Optional[NotificationSink] = None,
        audit_log: Optional[AuditLogSink] = None,
        subscriptions: Optional[SubscriptionLookup] = None,
        catalog: Optional[TierCatalog] = None,
        events: Optional[UsageEventEmitter] = None,
    ):
        self.db = db
        self.settings = settings
        timeout_s = settings.store_timeout_s

        self.catalog = catalog or load_catalog(settings.tier_catalog_path)
        self.subscriptions = subscriptions or MongoSubscriptionLookup(
            db, timeout_s=timeout_s, strict=settings.strict_single_active_subscription
        )
        self.notifier = notifier or InAppNotificationSink(db, timeout_s=timeout_s)
        self.audit_log = audit_log or SystemLogAuditSink(db, timeout_s=timeout_s)
        self.events = events or UsageEventEmitter(settings.usage_webhook_url)

        self.store = UsageStore(db, settings)
        self.resolver = EntitlementResolver(self.subscriptions, self.catalog)
        self.accounting = UsageAccountingEngine(self.store, self.resolver, settings, self.notifier, self.events)
        self.gate = LimitEnforcementGate(self.store, self.resolver, self.events)
        self.resets = ResetController(self.store, settings, self.audit_log, self.events)
        self.analytics = UsageAnalytics(self.store, self.resolver, settings)

    async def ensure_indexes(self) -> None:
        await database.ensure_indexes(self.db, self.settings)

    async def record_usage(
        self,
        user_id: str,
        feature_name: str,
        amount: int = 1,
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> UsageResult:
        return await self.accounting.record_usage(user_id, feature_name, amount, metadata, now=now)

    async def check_limit(
        self,
        user_id: str,
        feature_name: str,
        requested_amount: int = 1,
        *,
        now: Optional[datetime] = None,
    ) -> LimitCheck:
        return await self.gate.check_limit(user_id, feature_name, requested_amount, now=now)

    async def reserve_and_record(
        self,
        user_id: str,
        feature_name: str,
        amount: int = 1,
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Reservation:
        return await self.accounting.reserve_and_record(user_id, feature_name, amount, metadata, now=now)

    async def reset_usage(
        self,
        scope: Scope,
        reset_type: Union[str, ResetType],
        *,
        executed_by: str = "system",
        now: Optional[datetime] = None,
    ) -> ResetResult:
        return await self.resets.reset_usage(scope, reset_type, executed_by=executed_by, now=now)

    async def monthly_usage_reset(
        self,
        *,
        executed_by: str = "scheduler",
        now: Optional[datetime] = None,
    ) -> ResetResult:
        return await self.resets.monthly_usage_reset(executed_by=executed_by, now=now)

    async def get_usage_analytics(
        self,
        user_id: str,
        months_back: int = DEFAULT_MONTHS_BACK,
        *,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        return await self.analytics.get_usage_analytics(user_id, months_back, now=now)

    async def resolve(self, user_id: str) -> Entitlement:
        return await self.resolver.resolve(validate_user_id(user_id))

    async def has_feature(self, user_id: str, feature_name: str) -> FeatureAccess:
        return await self.resolver.has_feature(validate_user_id(user_id), validate_feature_name(feature_name))

    async def check_features(self, user_id: str, feature_names: Iterable[str]) -> Dict[str, bool]:
        names = [validate_feature_name(name) for name in feature_names]
        return await self.resolver.check_features(validate_user_id(user_id), names)

    async def aclose(self) -> None:
        """Wait for in-flight webhook deliveries."""
        await self.events.drain()
