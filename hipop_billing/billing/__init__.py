from .base import (
    UNLIMITED,
    AuditLogSink,
    Entitlement,
    FeatureAccess,
    LimitCheck,
    NotificationSink,
    Reservation,
    ResetResult,
    ResetType,
    SubscriptionLookup,
    SubscriptionRecord,
    SubscriptionState,
    SubscriptionTier,
    UsageAlert,
    UsageResult,
    UserCategory,
)
from .subscriptions import MongoSubscriptionLookup

__all__ = [
    "UNLIMITED",
    "AuditLogSink",
    "Entitlement",
    "FeatureAccess",
    "LimitCheck",
    "MongoSubscriptionLookup",
    "NotificationSink",
    "Reservation",
    "ResetResult",
    "ResetType",
    "SubscriptionLookup",
    "SubscriptionRecord",
    "SubscriptionState",
    "SubscriptionTier",
    "UsageAlert",
    "UsageResult",
    "UserCategory",
]
