import pytest

from hipop_billing.config.settings import Settings, load_settings

ENV_VARS = (
    "ENV",
    "DATABASE_URI",
    "DATABASE_NAME",
    "STORE_TIMEOUT_S",
    "USE_TRANSACTIONS",
    "USAGE_METADATA_MAX_ENTRIES",
    "USAGE_ALERT_THRESHOLD",
    "USAGE_NOTIFY_THRESHOLD",
    "RESET_BATCH_SIZE",
    "USAGE_WEEK_START",
    "STRICT_SINGLE_ACTIVE_SUBSCRIPTION",
    "TIER_CATALOG_PATH",
    "USAGE_WEBHOOK_URL",
    "ANALYTICS_MAX_MONTHS",
    "INTERNAL_SERVICE_KEYS",
    "LOGS_AS_JSON",
    "LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    settings = load_settings()

    assert settings == Settings()
    assert settings.usage_alert_threshold == 80
    assert settings.usage_notify_threshold == 90
    assert settings.reset_batch_size == 10
    assert settings.usage_metadata_max_entries == 100
    assert settings.use_transactions is True
    assert settings.is_production is False


def test_environment_overrides(clean_env):
    clean_env.setenv("USAGE_ALERT_THRESHOLD", "70")
    clean_env.setenv("USE_TRANSACTIONS", "false")
    clean_env.setenv("USAGE_WEEK_START", " Monday ")
    clean_env.setenv("INTERNAL_SERVICE_KEYS", "key-one, key-two,")
    clean_env.setenv("STORE_TIMEOUT_S", "2.5")
    clean_env.setenv("LOG_LEVEL", "debug")

    settings = load_settings()

    assert settings.usage_alert_threshold == 70
    assert settings.use_transactions is False
    assert settings.usage_week_start == "monday"
    assert settings.internal_service_keys == ("key-one", "key-two")
    assert settings.store_timeout_s == 2.5
    assert settings.log_level == "DEBUG"


def test_non_numeric_values_fall_back_to_defaults(clean_env, caplog):
    clean_env.setenv("RESET_BATCH_SIZE", "lots")

    assert load_settings().reset_batch_size == 10
    assert "RESET_BATCH_SIZE" in caplog.text


@pytest.mark.parametrize(
    "name, value",
    [
        ("USAGE_WEEK_START", "friday"),
        ("USAGE_ALERT_THRESHOLD", "95"),
        ("USAGE_NOTIFY_THRESHOLD", "101"),
        ("RESET_BATCH_SIZE", "0"),
        ("STORE_TIMEOUT_S", "0"),
    ],
)
def test_invalid_values_fail_startup(clean_env, name, value):
    clean_env.setenv(name, value)

    with pytest.raises(RuntimeError):
        load_settings()


def test_production_requires_real_database_and_service_keys(clean_env):
    clean_env.setenv("ENV", "production")
    with pytest.raises(RuntimeError, match="DATABASE_URI"):
        load_settings()

    clean_env.setenv("DATABASE_URI", "mongodb+srv://cluster.example.net")
    with pytest.raises(RuntimeError, match="INTERNAL_SERVICE_KEYS"):
        load_settings()

    clean_env.setenv("INTERNAL_SERVICE_KEYS", "svc-key")
    settings = load_settings()
    assert settings.is_production is True
    assert settings.logs_as_json is True
