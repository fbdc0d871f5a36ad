# hipop_billing/config/settings.py
from __future__ import annotations

import os
import logging
from dataclasses import dataclass
from typing import Literal

from dotenv import load_dotenv

logger = logging.getLogger("hipop_billing.settings")


def _dotenv_enabled() -> bool:
    value = os.getenv("HIPOP_LOAD_DOTENV")
    if value is None:
        return True
    return value.strip().lower() not in {"0", "false", "no", "off"}


# Load environment variables from a local .env for dev/test (never override process env).
if _dotenv_enabled():
    load_dotenv(override=False)


def _env_str(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _env_bool(name: str, default: bool = False) -> bool:
    value = _env_str(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %s", name, value, default)
        return default


def _env_float(name: str, default: float) -> float:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", name, value, default)
        return default


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


WeekStart = Literal["sunday", "monday"]


def _normalize_choice(name: str, value: str | None, allowed: set[str], default: str) -> str:
    resolved = (value or "").strip().lower()
    if not resolved:
        return default
    if resolved not in allowed:
        raise RuntimeError(f"Invalid {name}: '{resolved}' (expected one of: {', '.join(sorted(allowed))})")
    return resolved


@dataclass(frozen=True)
class Settings:
    env: str = "development"
    database_uri: str = "mongodb://localhost:27017"
    database_name: str = "hipop"
    store_timeout_s: float = 5.0
    use_transactions: bool = True
    usage_metadata_max_entries: int = 100
    usage_alert_threshold: int = 80
    usage_notify_threshold: int = 90
    reset_batch_size: int = 10
    usage_week_start: WeekStart = "sunday"
    strict_single_active_subscription: bool = False
    tier_catalog_path: str | None = None
    usage_webhook_url: str | None = None
    analytics_max_months: int = 24
    internal_service_keys: tuple[str, ...] = ()
    logs_as_json: bool = False
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"

    def validate(self) -> None:
        if self.store_timeout_s <= 0:
            raise RuntimeError("STORE_TIMEOUT_S must be > 0.")
        if self.usage_metadata_max_entries <= 0:
            raise RuntimeError("USAGE_METADATA_MAX_ENTRIES must be > 0.")
        if not 1 <= self.usage_alert_threshold <= 100:
            raise RuntimeError("USAGE_ALERT_THRESHOLD must be between 1 and 100.")
        if not 1 <= self.usage_notify_threshold <= 100:
            raise RuntimeError("USAGE_NOTIFY_THRESHOLD must be between 1 and 100.")
        if self.usage_alert_threshold > self.usage_notify_threshold:
            raise RuntimeError("USAGE_ALERT_THRESHOLD must not exceed USAGE_NOTIFY_THRESHOLD.")
        if self.reset_batch_size <= 0:
            raise RuntimeError("RESET_BATCH_SIZE must be > 0.")
        if self.analytics_max_months <= 0:
            raise RuntimeError("ANALYTICS_MAX_MONTHS must be > 0.")
        if self.usage_week_start not in {"sunday", "monday"}:
            raise RuntimeError("USAGE_WEEK_START must be one of: monday, sunday")

        if self.is_production:
            if self.database_uri.startswith("mongodb://localhost"):
                raise RuntimeError("DATABASE_URI points at localhost. Set DATABASE_URI in production.")
            if not self.internal_service_keys:
                raise RuntimeError("INTERNAL_SERVICE_KEYS is required in production (reset endpoint auth).")


def load_settings() -> Settings:
    env = (_env_str("ENV", "development") or "development").strip().lower()

    week_start = _normalize_choice(
        "USAGE_WEEK_START",
        _env_str("USAGE_WEEK_START"),
        {"sunday", "monday"},
        "sunday",
    )

    settings = Settings(
        env=env,
        database_uri=_env_str("DATABASE_URI", "mongodb://localhost:27017") or "mongodb://localhost:27017",
        database_name=_env_str("DATABASE_NAME", "hipop") or "hipop",
        store_timeout_s=_env_float("STORE_TIMEOUT_S", default=5.0),
        use_transactions=_env_bool("USE_TRANSACTIONS", default=True),
        usage_metadata_max_entries=_env_int("USAGE_METADATA_MAX_ENTRIES", default=100),
        usage_alert_threshold=_env_int("USAGE_ALERT_THRESHOLD", default=80),
        usage_notify_threshold=_env_int("USAGE_NOTIFY_THRESHOLD", default=90),
        reset_batch_size=_env_int("RESET_BATCH_SIZE", default=10),
        usage_week_start=week_start,  # type: ignore[arg-type]
        strict_single_active_subscription=_env_bool("STRICT_SINGLE_ACTIVE_SUBSCRIPTION", default=False),
        tier_catalog_path=_env_str("TIER_CATALOG_PATH"),
        usage_webhook_url=_env_str("USAGE_WEBHOOK_URL"),
        analytics_max_months=_env_int("ANALYTICS_MAX_MONTHS", default=24),
        internal_service_keys=tuple(_split_csv(_env_str("INTERNAL_SERVICE_KEYS"))),
        logs_as_json=_env_bool("LOGS_AS_JSON", default=env == "production"),
        log_level=(_env_str("LOG_LEVEL", "INFO") or "INFO").upper(),
    )
    settings.validate()
    return settings


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return process settings, loading them from the environment on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
