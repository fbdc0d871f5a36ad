# tests/conftest.py
import os

import pytest

os.environ.setdefault("HIPOP_LOAD_DOTENV", "0")

from hipop_billing.config.settings import Settings  # noqa: E402
from hipop_billing.engine import EntitlementEngine  # noqa: E402

from .fakes import FakeDatabase, RecordingAuditLog, RecordingNotifier  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def audit_log() -> RecordingAuditLog:
    return RecordingAuditLog()


@pytest.fixture
def engine(db, settings, notifier, audit_log) -> EntitlementEngine:
    return EntitlementEngine(db, settings, notifier=notifier, audit_log=audit_log)
