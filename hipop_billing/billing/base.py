# hipop_billing/billing/base.py
"""
Base types and interfaces for the billing engine.

The engine reads subscription records and writes usage state; the three
collaborator interfaces at the bottom are what it consumes from the rest of
the backend.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger("hipop_billing.billing.base")

UNLIMITED = -1


class SubscriptionTier(str, Enum):
    """Marketplace subscription tiers."""
    FREE = "free"
    SHOPPER_PRO = "shopperPro"
    VENDOR_PRO = "vendorPro"
    MARKET_ORGANIZER_PRO = "marketOrganizerPro"
    ENTERPRISE = "enterprise"


class UserCategory(str, Enum):
    """Kinds of marketplace accounts."""
    SHOPPER = "shopper"
    VENDOR = "vendor"
    MARKET_ORGANIZER = "market_organizer"


class SubscriptionState(str, Enum):
    """Subscription lifecycle states. Cancellation is a transition, never a delete."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    INCOMPLETE = "incomplete"
    UNPAID = "unpaid"


class ResetType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ALL = "all"


def _parse_limits(doc: Dict[str, Any]) -> Dict[str, int]:
    """Stored limit map as ints. Malformed entries are dropped so the free default applies."""
    raw = doc.get("limits") or {}
    if not isinstance(raw, dict):
        logger.warning(f"Ignoring non-mapping limits on subscription {doc.get('_id')}")
        return {}
    limits: Dict[str, int] = {}
    for name, value in raw.items():
        try:
            limits[name] = int(value)
        except (TypeError, ValueError):
            logger.warning(
                f"Ignoring malformed limit {name}={value!r} on subscription {doc.get('_id')} "
                f"for user {doc.get('user_id')}"
            )
    return limits


@dataclass
class SubscriptionRecord:
    """A user's subscription as mirrored from the payment provider."""
    user_id: str
    tier: str
    status: str
    user_type: Optional[str] = None
    features: Dict[str, bool] = field(default_factory=dict)
    limits: Dict[str, int] = field(default_factory=dict)
    record_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "SubscriptionRecord":
        return cls(
            user_id=doc.get("user_id", ""),
            tier=doc.get("tier") or SubscriptionTier.FREE.value,
            status=doc.get("status", ""),
            user_type=doc.get("user_type"),
            features=dict(doc.get("features") or {}),
            limits=_parse_limits(doc),
            record_id=str(doc["_id"]) if doc.get("_id") is not None else None,
            stripe_customer_id=doc.get("stripe_customer_id"),
            stripe_subscription_id=doc.get("stripe_subscription_id"),
            current_period_start=doc.get("current_period_start"),
            current_period_end=doc.get("current_period_end"),
            created_at=doc.get("created_at"),
        )


@dataclass
class Entitlement:
    """Resolved tier, feature flags and quotas for one user at one point in time."""
    tier: str
    features: Dict[str, bool] = field(default_factory=dict)
    limits: Dict[str, int] = field(default_factory=dict)
    status: Optional[str] = None
    has_subscription: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UsageAlert:
    """Immutable record of a usage threshold crossing."""
    user_id: str
    feature_name: str
    current_usage: int
    limit: int
    percentage: int
    timestamp: datetime

    def to_document(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UsageResult:
    """Outcome of recording usage."""
    new_total: int
    limit: int
    percentage_used: int
    month: str
    alert: Optional[UsageAlert] = None
    notified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "current_usage": self.new_total,
            "limit": self.limit,
            "percentage_used": self.percentage_used,
            "month": self.month,
            "alert_created": self.alert is not None,
        }


@dataclass
class LimitCheck:
    """
    Outcome of a pre-flight limit check.

    A denial because the quota is used up has error=None. An internal failure
    also denies, but carries error so callers can say "try again later".
    """
    allowed: bool
    current_usage: int
    limit: int
    would_exceed_limit: bool
    percentage_used: int
    remaining_usage: int
    tier: str = SubscriptionTier.FREE.value
    error: Optional[str] = None

    @property
    def is_limit_reached(self) -> bool:
        return not self.allowed and self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Reservation:
    """Outcome of an atomic check-and-record. `usage` is set only when the increment was applied."""
    check: LimitCheck
    usage: Optional[UsageResult] = None

    @property
    def applied(self) -> bool:
        return self.usage is not None

    def to_dict(self) -> Dict[str, Any]:
        data = self.check.to_dict()
        data["applied"] = self.applied
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        return data


@dataclass
class FeatureAccess:
    has_access: bool
    tier: Optional[str] = None
    status: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ResetResult:
    reset_type: str
    processed: int = 0
    skipped: int = 0
    failed: Dict[str, str] = field(default_factory=dict)
    archived: int = 0

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["success"] = self.success
        return data


class SubscriptionLookup(ABC):
    """Source of subscription records; owned by the billing integration layer."""

    @abstractmethod
    async def find_active_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        """Return the user's active subscription, or None."""
        pass


class NotificationSink(ABC):
    """Fire-and-forget side channel for user-facing notifications."""

    @abstractmethod
    async def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> bool:
        """Deliver a notification. Must not raise; returns False on failure."""
        pass


class AuditLogSink(ABC):
    """Append-only operational log."""

    @abstractmethod
    async def record(self, action: str, details: Dict[str, Any]) -> None:
        pass
