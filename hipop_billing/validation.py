# hipop_billing/validation.py
"""
Input validation for engine entry points.

Everything here runs before any state is read or written. Failures raise
InvalidInputError carrying a machine-readable code.
"""
from __future__ import annotations

import json
import re
from typing import Any, Dict, Mapping, Optional

from hipop_billing.billing.base import SubscriptionTier, UserCategory
from hipop_billing.errors import InvalidInputError

FEATURE_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*[a-z0-9]$|^[a-z]$")
FEATURE_NAME_MAX_LENGTH = 50
USER_ID_MAX_LENGTH = 128
METADATA_MAX_JSON_LENGTH = 5000
METADATA_KEY_MAX_LENGTH = 100
METADATA_KEY_RE = re.compile(r"^[a-zA-Z0-9_.-]+$")
METADATA_VALUE_MAX_LENGTH = 500
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")

VALID_TIERS_FOR_CATEGORY = {
    UserCategory.SHOPPER.value: {SubscriptionTier.FREE.value, SubscriptionTier.SHOPPER_PRO.value},
    UserCategory.VENDOR.value: {
        SubscriptionTier.FREE.value,
        SubscriptionTier.VENDOR_PRO.value,
        SubscriptionTier.ENTERPRISE.value,
    },
    UserCategory.MARKET_ORGANIZER.value: {
        SubscriptionTier.FREE.value,
        SubscriptionTier.MARKET_ORGANIZER_PRO.value,
        SubscriptionTier.ENTERPRISE.value,
    },
}


def validate_user_id(user_id: Any) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidInputError("userId", "USER_ID_REQUIRED", "User ID is required and must be a string")
    user_id = user_id.strip()
    if len(user_id) > USER_ID_MAX_LENGTH:
        raise InvalidInputError("userId", "USER_ID_TOO_LONG", f"User ID must be at most {USER_ID_MAX_LENGTH} characters")
    if _CONTROL_CHARS_RE.search(user_id):
        raise InvalidInputError("userId", "USER_ID_INVALID", "User ID contains invalid characters")
    return user_id


def validate_feature_name(feature_name: Any) -> str:
    """Return the normalized (trimmed, lower-cased) snake_case feature name."""
    if not isinstance(feature_name, str) or not feature_name.strip():
        raise InvalidInputError(
            "featureName", "FEATURE_NAME_REQUIRED", "Feature name is required and must be a string"
        )
    sanitized = feature_name.strip().lower()
    if len(sanitized) > FEATURE_NAME_MAX_LENGTH:
        raise InvalidInputError(
            "featureName",
            "FEATURE_NAME_TOO_LONG",
            f"Feature name must be at most {FEATURE_NAME_MAX_LENGTH} characters",
        )
    if not FEATURE_NAME_RE.match(sanitized):
        raise InvalidInputError("featureName", "FEATURE_NAME_INVALID_FORMAT", "Feature name must use snake_case format")
    return sanitized


def validate_amount(amount: Any, *, field_name: str = "amount", minimum: int = 0) -> int:
    # bool is an int subclass; True is not a usage amount
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidInputError(field_name, "AMOUNT_INVALID_TYPE", f"{field_name} must be an integer")
    if amount < minimum:
        raise InvalidInputError(field_name, "AMOUNT_OUT_OF_RANGE", f"{field_name} must be >= {minimum}")
    return amount


def _sanitize_metadata_value(value: Any) -> Optional[Any]:
    if isinstance(value, str):
        return value.strip()[:METADATA_VALUE_MAX_LENGTH]
    if isinstance(value, (bool, int, float)):
        return value
    return None


def sanitize_metadata(metadata: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Validate and sanitize a flat metadata mapping.

    Returns None for no metadata. Long strings are truncated rather than
    rejected; nested values and unsupported types are rejected.
    """
    if metadata is None:
        return None
    if not isinstance(metadata, Mapping):
        raise InvalidInputError("metadata", "METADATA_INVALID_TYPE", "Metadata must be an object")

    try:
        encoded = json.dumps(metadata, default=str)
    except (TypeError, ValueError) as e:
        raise InvalidInputError("metadata", "METADATA_INVALID_TYPE", f"Metadata is not serializable: {e}") from e
    if len(encoded) > METADATA_MAX_JSON_LENGTH:
        raise InvalidInputError(
            "metadata", "METADATA_TOO_LARGE", f"Metadata is too large (max {METADATA_MAX_JSON_LENGTH} characters)"
        )

    sanitized: Dict[str, Any] = {}
    for key, value in metadata.items():
        if not isinstance(key, str) or not key or len(key) > METADATA_KEY_MAX_LENGTH:
            raise InvalidInputError("metadata", "METADATA_KEY_INVALID", f"Invalid metadata key: {key}")
        if not METADATA_KEY_RE.match(key):
            raise InvalidInputError(
                "metadata", "METADATA_KEY_INVALID_CHARS", f"Metadata key contains invalid characters: {key}"
            )
        clean = _sanitize_metadata_value(value)
        if clean is None:
            raise InvalidInputError("metadata", "METADATA_VALUE_INVALID", f"Invalid metadata value for key: {key}")
        sanitized[key] = clean
    return sanitized


def validate_user_category(user_type: Any) -> str:
    if not isinstance(user_type, str) or not user_type.strip():
        raise InvalidInputError("userType", "USER_TYPE_REQUIRED", "User type is required and must be a string")
    sanitized = user_type.strip().lower()
    valid = [c.value for c in UserCategory]
    if sanitized not in valid:
        raise InvalidInputError("userType", "USER_TYPE_INVALID", f"Invalid user type. Must be one of: {', '.join(valid)}")
    return sanitized


def validate_tier(tier: Any) -> str:
    if not isinstance(tier, str) or not tier.strip():
        raise InvalidInputError("tier", "TIER_REQUIRED", "Subscription tier is required and must be a string")
    sanitized = tier.strip()
    valid = [t.value for t in SubscriptionTier]
    if sanitized not in valid:
        raise InvalidInputError("tier", "TIER_INVALID", f"Invalid subscription tier. Must be one of: {', '.join(valid)}")
    return sanitized


def is_valid_tier_for_category(tier: str, user_type: str) -> bool:
    return tier in VALID_TIERS_FOR_CATEGORY.get(user_type, set())
