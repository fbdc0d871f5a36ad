# hipop_billing/config/database.py
"""
MongoDB wiring for the billing engine.

Clients are created explicitly and handed to the engine; nothing here opens a
connection at import time.

Collections:
    user_subscriptions  - subscription records (written by the billing integration layer)
    usage_tracking      - one usage record per user, _id = user id
    usage_alerts        - immutable threshold alerts
    usage_archives      - monthly snapshots, _id = "<user>_<YYYY-MM>"
    notifications       - in-app notifications
    system_logs         - audit trail for reset operations
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from hipop_billing.config.settings import Settings
from hipop_billing.errors import StoreUnavailableError, store_call

logger = logging.getLogger("hipop_billing.database")

T = TypeVar("T")

# Constants for connection management
MAX_POOL_SIZE = 100
MIN_POOL_SIZE = 0
MAX_IDLE_TIME_MS = 60000
HEARTBEAT_FREQUENCY_MS = 10000

SUBSCRIPTIONS = "user_subscriptions"
USAGE_TRACKING = "usage_tracking"
USAGE_ALERTS = "usage_alerts"
USAGE_ARCHIVES = "usage_archives"
NOTIFICATIONS = "notifications"
SYSTEM_LOGS = "system_logs"


def create_client(settings: Settings) -> AsyncIOMotorClient:
    """Build a Motor client whose timeouts all derive from STORE_TIMEOUT_S."""
    timeout_ms = int(settings.store_timeout_s * 1000)
    return AsyncIOMotorClient(
        settings.database_uri,
        maxPoolSize=MAX_POOL_SIZE,
        minPoolSize=MIN_POOL_SIZE,
        maxIdleTimeMS=MAX_IDLE_TIME_MS,
        connectTimeoutMS=timeout_ms,
        serverSelectionTimeoutMS=timeout_ms,
        socketTimeoutMS=timeout_ms,
        heartbeatFrequencyMS=HEARTBEAT_FREQUENCY_MS,
        retryWrites=True,
        w="majority",
        tz_aware=True,
    )


def get_database(client: AsyncIOMotorClient, settings: Settings) -> AsyncIOMotorDatabase:
    return client[settings.database_name]


async def verify_connection(client: AsyncIOMotorClient, settings: Settings) -> bool:
    """Ping the server; raises StoreUnavailableError when unreachable."""
    await store_call(client.admin.command("ping"), settings.store_timeout_s, "ping")
    logger.info("Connected to MongoDB database %s", settings.database_name)
    return True


async def ensure_indexes(db: AsyncIOMotorDatabase, settings: Settings) -> None:
    """Create the indexes the engine's queries rely on. Safe to call repeatedly."""
    timeout = settings.store_timeout_s
    await store_call(
        db[SUBSCRIPTIONS].create_index([("user_id", 1), ("status", 1), ("created_at", 1)]),
        timeout,
        "create_index.subscriptions",
    )
    await store_call(
        db[USAGE_ALERTS].create_index([("user_id", 1), ("timestamp", -1)]),
        timeout,
        "create_index.usage_alerts",
    )
    await store_call(
        db[USAGE_ARCHIVES].create_index([("user_id", 1), ("month", 1)]),
        timeout,
        "create_index.usage_archives",
    )
    await store_call(
        db[NOTIFICATIONS].create_index([("user_id", 1), ("created_at", -1)]),
        timeout,
        "create_index.notifications",
    )
    logger.info("Billing indexes ensured")


@asynccontextmanager
async def transaction(db: AsyncIOMotorDatabase, settings: Settings) -> AsyncIterator[Optional[Any]]:
    """
    Yield a session bound to a multi-document transaction, or None when
    transactions are disabled (standalone servers do not support them).

    Any exception inside the block aborts the transaction.
    """
    if not settings.use_transactions:
        yield None
        return

    session = await store_call(db.client.start_session(), settings.store_timeout_s, "start_session")
    async with session:
        try:
            async with session.start_transaction():
                yield session
        except PyMongoError as e:
            # commit/abort failures surface on exit
            logger.error("Transaction failed: %s", e)
            raise StoreUnavailableError("transaction", e) from e


MAX_TRANSACTION_ATTEMPTS = 3


def is_transient(exc: BaseException) -> bool:
    """True for write conflicts and other errors the server labels as safe to retry."""
    cause = exc.cause if isinstance(exc, StoreUnavailableError) else exc
    return isinstance(cause, PyMongoError) and cause.has_error_label("TransientTransactionError")


async def run_transaction(
    db: AsyncIOMotorDatabase,
    settings: Settings,
    work: Callable[[Optional[Any]], Awaitable[T]],
    *,
    attempts: int = MAX_TRANSACTION_ATTEMPTS,
) -> T:
    """
    Run `work(session)` inside transaction(), retrying the whole unit on
    transient transaction errors. Concurrent writers to the same document
    conflict instead of blocking, so one of them sees such an error.
    """
    attempt = 1
    while True:
        try:
            async with transaction(db, settings) as session:
                return await work(session)
        except StoreUnavailableError as e:
            if attempt >= attempts or not is_transient(e):
                raise
            logger.warning("Transient transaction error (attempt %d/%d): %s", attempt, attempts, e)
            attempt += 1
