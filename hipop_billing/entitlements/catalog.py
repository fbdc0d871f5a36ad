# hipop_billing/entitlements/catalog.py
"""
Tier Catalog

Static mapping from subscription tier to enabled features and per-resource
quotas. A quota of -1 means unlimited.

The built-in table can be replaced at startup with a YAML file
(TIER_CATALOG_PATH):

    schema_version: "1.0"
    default_limits:
      monthly_markets: 5
      global_products: 3
    tiers:
      shopperPro:
        features: [enhanced_search, vendor_following]
        limits: {saved_favorites: -1}

Tiers listed without limits get every recognized limit set to -1. The file is
loaded once; an invalid file fails startup instead of silently granting or
denying access.

Only default_limits takes part in gating. The resolver merges a user's
subscription record over default_limits and never consults the `tiers`
section, which describes the published plans (features_for_tier,
limits_for_tier) for callers that list or provision them.
"""
from __future__ import annotations

import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional

import yaml

from hipop_billing.billing.base import UNLIMITED, SubscriptionTier, UserCategory

logger = logging.getLogger("hipop_billing.entitlements.catalog")

FREE_TIER_LIMITS: Mapping[str, int] = MappingProxyType(
    {
        "monthly_markets": 5,
        "photo_uploads_per_post": 3,
        "global_products": 3,
        "product_lists": 1,
        "saved_favorites": 10,
    }
)

TIER_FEATURES: Mapping[str, FrozenSet[str]] = MappingProxyType(
    {
        SubscriptionTier.FREE.value: frozenset(),
        SubscriptionTier.SHOPPER_PRO.value: frozenset(
            {"enhanced_search", "unlimited_favorites", "vendor_following", "personalized_recommendations"}
        ),
        SubscriptionTier.VENDOR_PRO.value: frozenset(
            {"market_discovery", "full_vendor_analytics", "revenue_tracking", "sales_tracking", "unlimited_markets"}
        ),
        SubscriptionTier.MARKET_ORGANIZER_PRO.value: frozenset(
            {"vendor_discovery", "multi_market_management", "vendor_analytics_dashboard", "financial_reporting"}
        ),
        SubscriptionTier.ENTERPRISE.value: frozenset(),
    }
)

CATEGORY_UPGRADE_TIER: Mapping[str, str] = MappingProxyType(
    {
        UserCategory.SHOPPER.value: SubscriptionTier.SHOPPER_PRO.value,
        UserCategory.VENDOR.value: SubscriptionTier.VENDOR_PRO.value,
        UserCategory.MARKET_ORGANIZER.value: SubscriptionTier.MARKET_ORGANIZER_PRO.value,
    }
)

SUPPORTED_SCHEMA_VERSIONS = ("1.0",)


class CatalogError(RuntimeError):
    """Raised when a tier catalog file is invalid."""


class TierCatalog:
    """
    Read-only tier table. Pure and deterministic: every method returns fresh
    copies, so callers can mutate results freely.
    """

    def __init__(
        self,
        tier_features: Mapping[str, FrozenSet[str]] = TIER_FEATURES,
        default_limits: Mapping[str, int] = FREE_TIER_LIMITS,
        tier_limits: Optional[Mapping[str, Mapping[str, int]]] = None,
    ):
        self._features = {tier: frozenset(features) for tier, features in tier_features.items()}
        self._default_limits = dict(default_limits)
        self._tier_limits: Dict[str, Dict[str, int]] = {
            tier: dict(limits) for tier, limits in (tier_limits or {}).items()
        }

    @property
    def tiers(self) -> FrozenSet[str]:
        return frozenset(self._features)

    def features_for_tier(self, tier: str) -> set[str]:
        if tier not in self._features:
            logger.warning(f"Unknown tier '{tier}'; no features enabled")
            return set()
        return set(self._features[tier])

    def limits_for_tier(self, tier: str) -> Dict[str, int]:
        if tier == SubscriptionTier.FREE.value:
            return dict(self._default_limits)
        if tier not in self._features:
            # deny-leaning: unrecognized tiers get free quotas
            logger.warning(f"Unknown tier '{tier}'; falling back to free-tier limits")
            return dict(self._default_limits)
        limits = {name: UNLIMITED for name in self._default_limits}
        limits.update(self._tier_limits.get(tier, {}))
        return limits

    def default_limit_for_feature(self, feature_name: str) -> int:
        """Free-tier quota for a limit; 0 (deny) when the limit is unrecognized."""
        return self._default_limits.get(feature_name, 0)

    def default_limits(self) -> Dict[str, int]:
        return dict(self._default_limits)

    @staticmethod
    def tier_for_user_category(user_type: Optional[str]) -> str:
        """Paid tier a user category upgrades to; free for anything else."""
        return CATEGORY_UPGRADE_TIER.get((user_type or "").strip().lower(), SubscriptionTier.FREE.value)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "TierCatalog":
        yaml_path = Path(path)
        try:
            with open(yaml_path, "r", encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise CatalogError(f"Cannot load tier catalog {yaml_path}: {e}") from e

        errors = validate_catalog_schema(config)
        if errors:
            for error in errors:
                logger.error(f"  - {error}")
            raise CatalogError(f"Invalid tier catalog {yaml_path}: {'; '.join(errors)}")

        default_limits = {k: int(v) for k, v in config["default_limits"].items()}
        tier_features: Dict[str, FrozenSet[str]] = {SubscriptionTier.FREE.value: frozenset()}
        tier_limits: Dict[str, Dict[str, int]] = {}
        for tier_name, tier_config in (config.get("tiers") or {}).items():
            tier_config = tier_config or {}
            tier_features[tier_name] = frozenset(tier_config.get("features") or [])
            if tier_config.get("limits"):
                tier_limits[tier_name] = {k: int(v) for k, v in tier_config["limits"].items()}

        logger.info(f"Loaded tier catalog from {yaml_path} ({len(tier_features)} tiers)")
        return cls(tier_features=tier_features, default_limits=default_limits, tier_limits=tier_limits)


def validate_catalog_schema(config: Any) -> list[str]:
    """
    Validate a parsed catalog file.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors: list[str] = []
    if not isinstance(config, dict):
        return ["Catalog must be a mapping"]

    if config.get("schema_version") not in SUPPORTED_SCHEMA_VERSIONS:
        errors.append(f"Unsupported schema_version: {config.get('schema_version')}")

    default_limits = config.get("default_limits")
    if not isinstance(default_limits, dict) or not default_limits:
        errors.append("'default_limits' must be a non-empty dict")
    else:
        errors.extend(_validate_limits("default_limits", default_limits))

    tiers = config.get("tiers", {})
    if not isinstance(tiers, dict):
        errors.append("'tiers' must be a dict")
        return errors

    for tier_name, tier_config in tiers.items():
        if tier_name == SubscriptionTier.FREE.value:
            errors.append("'free' tier is defined by default_limits and cannot be listed under tiers")
            continue
        if tier_config is None:
            continue
        if not isinstance(tier_config, dict):
            errors.append(f"Tier '{tier_name}' must be a dict")
            continue
        features = tier_config.get("features", [])
        if not isinstance(features, list) or not all(isinstance(f, str) for f in features):
            errors.append(f"Tier '{tier_name}.features' must be a list of strings")
        limits = tier_config.get("limits", {})
        if not isinstance(limits, dict):
            errors.append(f"Tier '{tier_name}.limits' must be a dict")
        else:
            errors.extend(_validate_limits(f"{tier_name}.limits", limits))
    return errors


def _validate_limits(prefix: str, limits: Dict[str, Any]) -> list[str]:
    errors = []
    for key, value in limits.items():
        if isinstance(value, bool) or not isinstance(value, int) or value < UNLIMITED:
            errors.append(f"Limit '{prefix}.{key}' must be an integer >= -1")
    return errors


_default_catalog: Optional[TierCatalog] = None


def get_default_catalog() -> TierCatalog:
    global _default_catalog
    if _default_catalog is None:
        _default_catalog = TierCatalog()
    return _default_catalog


def load_catalog(path: Optional[str]) -> TierCatalog:
    """Catalog from TIER_CATALOG_PATH when set, else the built-in table."""
    if path:
        return TierCatalog.from_yaml(path)
    return get_default_catalog()
