"""
Entitlements Module
===================
Tier quotas, usage accounting, limit enforcement and periodic resets.

    Tier -> Features + Limits -> Usage counters -> Allow / Deny

Components (leaves first):
    - TierCatalog: static tier -> features/limits table
    - UsageStore: per-user monthly counters in `usage_tracking`
    - EntitlementResolver: active subscription merged over catalog defaults
    - UsageAccountingEngine: atomic increments and threshold alerts
    - LimitEnforcementGate: read-only pre-flight check, fails secure
    - ResetController: daily/weekly/monthly/all resets and monthly archiving
    - UsageAnalytics: trailing-window usage report
"""

from .accounting import UsageAccountingEngine
from .analytics import UsageAnalytics
from .catalog import CatalogError, TierCatalog, get_default_catalog, load_catalog
from .enforcer import ENFORCEMENT_FAILED, LimitEnforcementGate
from .events import UsageEventEmitter, build_limit_notification
from .reset import ALL_USERS, ResetController
from .resolver import EntitlementResolver
from .usage import UsageStore, month_key

__all__ = [
    # Catalog
    "CatalogError",
    "TierCatalog",
    "get_default_catalog",
    "load_catalog",
    # Accounting
    "UsageAccountingEngine",
    "UsageStore",
    "month_key",
    # Enforcement
    "ENFORCEMENT_FAILED",
    "LimitEnforcementGate",
    "EntitlementResolver",
    # Reset
    "ALL_USERS",
    "ResetController",
    # Reporting
    "UsageAnalytics",
    "UsageEventEmitter",
    "build_limit_notification",
]
