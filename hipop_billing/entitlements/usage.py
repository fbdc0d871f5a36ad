# hipop_billing/entitlements/usage.py
"""
Usage Store

Storage and retrieval of per-user usage counters.

MongoDB Collection: usage_tracking
Schema (one document per user):
{
    "_id": str,                          # User identifier
    "<YYYY-MM>": {<feature>: int, ...},  # Monthly counters
    "<feature>_total": int,              # Lifetime counter
    "<feature>_metadata": [              # Most recent events, oldest first
        {"metadata": {...}, "timestamp": datetime, "amount": int}
    ],
    "last_activity": datetime,
    "last_reset": datetime
}

Reset granularities other than monthly address their own key namespaces
("YYYY-MM-DD" for daily, "week_YYYY-MM-DD" for weekly). Accounting only ever
writes monthly keys, so those resets clear nothing unless another writer
populated the matching key.
"""
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from hipop_billing.billing.base import UsageAlert
from hipop_billing.config.database import USAGE_ALERTS, USAGE_ARCHIVES, USAGE_TRACKING, run_transaction
from hipop_billing.config.settings import Settings
from hipop_billing.errors import store_call

logger = logging.getLogger("hipop_billing.entitlements.usage")

T = TypeVar("T")

TOTAL_SUFFIX = "_total"
METADATA_SUFFIX = "_metadata"
LAST_ACTIVITY = "last_activity"
LAST_RESET = "last_reset"
WEEK_PREFIX = "week_"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def month_key(reference_date: Optional[datetime] = None) -> str:
    """Accounting period key, e.g. "2026-01"."""
    if reference_date is None:
        reference_date = utcnow()
    return reference_date.strftime("%Y-%m")


def shift_month(reference_date: datetime, months: int) -> date:
    """First day of the month `months` away from reference_date (negative = past)."""
    index = reference_date.year * 12 + (reference_date.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def previous_month_key(reference_date: Optional[datetime] = None) -> str:
    if reference_date is None:
        reference_date = utcnow()
    return shift_month(reference_date, -1).strftime("%Y-%m")


def trailing_month_keys(count: int, reference_date: Optional[datetime] = None) -> List[str]:
    """Current month first, then each earlier month, `count` keys in total."""
    if reference_date is None:
        reference_date = utcnow()
    return [shift_month(reference_date, -i).strftime("%Y-%m") for i in range(count)]


def day_key(reference_date: Optional[datetime] = None) -> str:
    if reference_date is None:
        reference_date = utcnow()
    return reference_date.strftime("%Y-%m-%d")


def week_key(reference_date: Optional[datetime] = None, week_start: str = "sunday") -> str:
    """Key of the week containing reference_date, e.g. "week_2026-01-04"."""
    if reference_date is None:
        reference_date = utcnow()
    if week_start == "monday":
        offset = reference_date.weekday()
    else:
        offset = (reference_date.weekday() + 1) % 7
    start = (reference_date - timedelta(days=offset)).date()
    return f"{WEEK_PREFIX}{start.isoformat()}"


def get_next_reset_date(reference_date: Optional[datetime] = None) -> datetime:
    """First instant of the next accounting month (UTC)."""
    if reference_date is None:
        reference_date = utcnow()
    first = shift_month(reference_date, 1)
    return datetime(first.year, first.month, first.day, tzinfo=timezone.utc)


def usage_percentage(usage: int, limit: int) -> int:
    """Percent of limit used, rounded half up; 0 for unlimited or non-positive limits."""
    if limit <= 0:
        return 0
    return (200 * usage + limit) // (2 * limit)


def total_key(feature_name: str) -> str:
    return f"{feature_name}{TOTAL_SUFFIX}"


def metadata_key(feature_name: str) -> str:
    return f"{feature_name}{METADATA_SUFFIX}"


def is_preserved_on_full_reset(key: str) -> bool:
    # last_reset is restamped by the same update, so it must not be unset too
    return key in ("_id", LAST_ACTIVITY, LAST_RESET) or key.endswith(METADATA_SUFFIX)


class UsageStore:
    """
    Document operations on usage records.

    Every write is a single-document atomic update, so concurrent increments
    for the same user never lose updates. Writes that must commit together
    (counter + alert, archive + reset) run together through run_transaction().
    """

    def __init__(self, db: AsyncIOMotorDatabase, settings: Settings):
        self.db = db
        self.settings = settings
        self.usage = db[USAGE_TRACKING]
        self.alerts = db[USAGE_ALERTS]
        self.archives = db[USAGE_ARCHIVES]

    @property
    def timeout_s(self) -> float:
        return self.settings.store_timeout_s

    async def run_transaction(self, work: Callable[[Any], Awaitable[T]]) -> T:
        """Run `work(session)` as one transaction, retried on write conflicts."""
        return await run_transaction(self.db, self.settings, work)

    async def get_record(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await store_call(self.usage.find_one({"_id": user_id}), self.timeout_s, "usage.find_one")

    async def get_current_usage(self, user_id: str, feature_name: str, month: str) -> int:
        doc = await store_call(
            self.usage.find_one({"_id": user_id}, projection={month: 1}),
            self.timeout_s,
            "usage.current",
        )
        if not doc:
            return 0
        return int((doc.get(month) or {}).get(feature_name, 0))

    def _build_increment(
        self,
        feature_name: str,
        amount: int,
        month: str,
        now: datetime,
        metadata: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        update: Dict[str, Any] = {
            "$inc": {f"{month}.{feature_name}": amount, total_key(feature_name): amount},
            "$set": {LAST_ACTIVITY: now},
        }
        if metadata is not None:
            update["$push"] = {
                metadata_key(feature_name): {
                    "$each": [{"metadata": metadata, "timestamp": now, "amount": amount}],
                    "$slice": -self.settings.usage_metadata_max_entries,
                }
            }
        return update

    async def increment(
        self,
        user_id: str,
        feature_name: str,
        amount: int,
        month: str,
        now: datetime,
        metadata: Optional[Dict[str, Any]] = None,
        session=None,
    ) -> int:
        """Atomically add `amount` to the month and lifetime counters; returns the new month total."""
        doc = await store_call(
            self.usage.find_one_and_update(
                {"_id": user_id},
                self._build_increment(feature_name, amount, month, now, metadata),
                upsert=True,
                return_document=ReturnDocument.AFTER,
                projection={month: 1},
                session=session,
            ),
            self.timeout_s,
            "usage.increment",
        )
        return int(((doc or {}).get(month) or {}).get(feature_name, amount))

    async def increment_if_within(
        self,
        user_id: str,
        feature_name: str,
        amount: int,
        limit: int,
        month: str,
        now: datetime,
        metadata: Optional[Dict[str, Any]] = None,
        session=None,
    ) -> Optional[int]:
        """
        Conditional increment: applies only if current + amount <= limit.

        Returns the new month total, or None when the increment would exceed
        the limit (nothing is written in that case).
        """
        if amount > limit:
            return None

        # The record must exist first: an upsert with a failing condition would
        # try to insert a duplicate _id instead of reporting "no match".
        await store_call(
            self.usage.update_one(
                {"_id": user_id},
                {"$setOnInsert": {LAST_ACTIVITY: now}},
                upsert=True,
                session=session,
            ),
            self.timeout_s,
            "usage.ensure_record",
        )

        counter = f"{month}.{feature_name}"
        doc = await store_call(
            self.usage.find_one_and_update(
                {
                    "_id": user_id,
                    "$or": [{counter: {"$exists": False}}, {counter: {"$lte": limit - amount}}],
                },
                self._build_increment(feature_name, amount, month, now, metadata),
                return_document=ReturnDocument.AFTER,
                projection={month: 1},
                session=session,
            ),
            self.timeout_s,
            "usage.conditional_increment",
        )
        if doc is None:
            return None
        return int((doc.get(month) or {}).get(feature_name, amount))

    async def insert_alert(self, alert: UsageAlert, session=None) -> None:
        await store_call(
            self.alerts.insert_one(alert.to_document(), session=session),
            self.timeout_s,
            "usage_alerts.insert",
        )

    async def recent_alerts(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        cursor = self.alerts.find({"user_id": user_id}).sort("timestamp", -1).limit(limit)
        docs = await store_call(cursor.to_list(length=limit), self.timeout_s, "usage_alerts.recent")
        for doc in docs:
            doc["id"] = str(doc.pop("_id"))
        return docs

    async def find_records(self, user_ids: Sequence[str]) -> List[Dict[str, Any]]:
        cursor = self.usage.find({"_id": {"$in": list(user_ids)}})
        return await store_call(cursor.to_list(length=len(user_ids)), self.timeout_s, "usage.find_batch")

    async def page_records(self, after_id: Optional[str], page_size: int) -> List[Dict[str, Any]]:
        """One page of usage records ordered by user id, starting after `after_id`."""
        query: Dict[str, Any] = {} if after_id is None else {"_id": {"$gt": after_id}}
        cursor = self.usage.find(query).sort("_id", 1).limit(page_size)
        return await store_call(cursor.to_list(length=page_size), self.timeout_s, "usage.page")

    async def clear_keys(self, user_id: str, keys: Sequence[str], now: datetime, session=None) -> None:
        """Remove the given top-level keys and stamp last_reset, in one update."""
        update: Dict[str, Any] = {"$set": {LAST_RESET: now}}
        if keys:
            update["$unset"] = {key: "" for key in keys}
        await store_call(
            self.usage.update_one({"_id": user_id}, update, session=session),
            self.timeout_s,
            "usage.clear",
        )

    async def write_archive(
        self,
        user_id: str,
        month: str,
        usage: Dict[str, Any],
        now: datetime,
        session=None,
    ) -> None:
        await store_call(
            self.archives.replace_one(
                {"_id": f"{user_id}_{month}"},
                {"user_id": user_id, "month": month, "usage": usage, "archived_at": now},
                upsert=True,
                session=session,
            ),
            self.timeout_s,
            "usage_archives.write",
        )
