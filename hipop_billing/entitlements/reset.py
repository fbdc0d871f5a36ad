# hipop_billing/entitlements/reset.py
"""
Periodic Reset Controller

Clears usage counters for one granularity:

    daily    -> "YYYY-MM-DD" key for today
    weekly   -> "week_YYYY-MM-DD" key for the current week's start
    monthly  -> "YYYY-MM" key for the current month
    all      -> everything except last_activity, last_reset and *_metadata

Each user is an independent unit of work: a failure is recorded against that
user and the batch carries on. Every run writes one audit entry; a monthly
run that fails, wholly or for some users, also writes a critical
"monthly_reset_failed" entry.

monthly_usage_reset is the scheduled first-of-month job: it archives the
month that just closed into usage_archives and applies the monthly reset in
the same per-user transaction.
"""
import logging
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from hipop_billing.billing.base import AuditLogSink, ResetResult, ResetType
from hipop_billing.config.settings import Settings
from hipop_billing.entitlements.events import UsageEventEmitter
from hipop_billing.entitlements.usage import (
    UsageStore,
    day_key,
    is_preserved_on_full_reset,
    month_key,
    previous_month_key,
    utcnow,
    week_key,
)
from hipop_billing.errors import BillingError, InvalidInputError
from hipop_billing.logs.logging_config import log_operation
from hipop_billing.validation import validate_user_id

logger = logging.getLogger("hipop_billing.entitlements.reset")

ALL_USERS = "all"
MAX_REPORTED_FAILURES = 100

Scope = Union[str, Sequence[str]]


def parse_reset_type(reset_type: Union[str, ResetType]) -> ResetType:
    try:
        return ResetType(reset_type)
    except ValueError:
        valid = ", ".join(t.value for t in ResetType)
        raise InvalidInputError(
            "resetType", "RESET_TYPE_INVALID", f"Invalid reset type. Must be one of: {valid}"
        ) from None


class ResetController:
    def __init__(
        self,
        store: UsageStore,
        settings: Settings,
        audit_log: AuditLogSink,
        events: Optional[UsageEventEmitter] = None,
    ):
        self.store = store
        self.settings = settings
        self.audit_log = audit_log
        self.events = events or UsageEventEmitter()

    def keys_to_clear(self, doc: Dict[str, Any], reset_type: ResetType, now: datetime) -> List[str]:
        """Top-level keys of a usage record that a reset of this type removes."""
        if reset_type == ResetType.ALL:
            return [key for key in doc if not is_preserved_on_full_reset(key)]

        if reset_type == ResetType.DAILY:
            key = day_key(now)
        elif reset_type == ResetType.WEEKLY:
            key = week_key(now, self.settings.usage_week_start)
        else:
            key = month_key(now)
        return [key] if key in doc else []

    async def reset_usage(
        self,
        scope: Scope,
        reset_type: Union[str, ResetType],
        *,
        executed_by: str = "system",
        now: Optional[datetime] = None,
    ) -> ResetResult:
        """
        Reset usage for every user (scope="all") or an explicit list of users.

        Users without a usage record are skipped. Per-user failures are
        collected in ResetResult.failed and do not stop the batch.

        Raises:
            InvalidInputError: unknown reset type or malformed user ids
            StoreUnavailableError: the user listing or the audit write failed
        """
        kind = parse_reset_type(reset_type)
        user_ids = self._parse_scope(scope)
        now = now or utcnow()

        with log_operation(logger, "reset_usage", reset_type=kind.value, executed_by=executed_by):
            result = await self._run(user_ids, kind, now)
            await self._audit("usage_reset", result, user_ids, executed_by, now)
        self.events.emit_reset(kind.value, {"processed": result.processed, "failed": len(result.failed)})
        return result

    async def monthly_usage_reset(
        self,
        *,
        executed_by: str = "scheduler",
        now: Optional[datetime] = None,
    ) -> ResetResult:
        """
        Archive last month's counters and reset the current month for every user.

        Safe to re-run: archives are keyed by (user, month) and replaced, and
        clearing an absent key is a no-op.
        """
        now = now or utcnow()
        archive_month = previous_month_key(now)

        try:
            with log_operation(logger, "monthly_usage_reset", archive_month=archive_month, executed_by=executed_by):
                result = await self._run(None, ResetType.MONTHLY, now, archive_month=archive_month)
                await self._audit("monthly_usage_reset", result, None, executed_by, now, archive_month=archive_month)
        except BillingError as e:
            await self._report_monthly_failure(str(e), archive_month, now)
            raise

        if result.failed:
            await self._report_monthly_failure(
                f"{len(result.failed)} users failed",
                archive_month,
                now,
                failed_users=sorted(result.failed)[:MAX_REPORTED_FAILURES],
            )
        self.events.emit_reset(
            ResetType.MONTHLY.value,
            {"processed": result.processed, "archived": result.archived, "failed": len(result.failed)},
        )
        return result

    def _parse_scope(self, scope: Scope) -> Optional[List[str]]:
        if isinstance(scope, str):
            if scope != ALL_USERS:
                raise InvalidInputError(
                    "scope", "SCOPE_INVALID", f"Scope must be '{ALL_USERS}' or a list of user ids"
                )
            return None
        user_ids: List[str] = []
        for user_id in scope:
            user_id = validate_user_id(user_id)
            if user_id not in user_ids:
                user_ids.append(user_id)
        return user_ids

    async def _run(
        self,
        user_ids: Optional[List[str]],
        reset_type: ResetType,
        now: datetime,
        archive_month: Optional[str] = None,
    ) -> ResetResult:
        result = ResetResult(reset_type=reset_type.value)
        async for records in self._batches(user_ids, result):
            for doc in records:
                await self._reset_user(doc, reset_type, now, archive_month, result)

        if result.failed:
            logger.warning(
                f"{reset_type.value} reset finished with {len(result.failed)} failures "
                f"({result.processed} processed)"
            )
        return result

    async def _batches(
        self, user_ids: Optional[List[str]], result: ResetResult
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        size = self.settings.reset_batch_size

        if user_ids is None:
            after_id = None
            while True:
                page = await self.store.page_records(after_id, size)
                if not page:
                    return
                yield page
                if len(page) < size:
                    return
                after_id = page[-1]["_id"]

        for start in range(0, len(user_ids), size):
            chunk = user_ids[start:start + size]
            try:
                records = await self.store.find_records(chunk)
            except BillingError as e:
                logger.error(f"Failed to load usage records for {len(chunk)} users: {e}")
                for user_id in chunk:
                    result.failed[user_id] = str(e)
                continue
            result.skipped += len(chunk) - len(records)
            yield records

    async def _reset_user(
        self,
        doc: Dict[str, Any],
        reset_type: ResetType,
        now: datetime,
        archive_month: Optional[str],
        result: ResetResult,
    ) -> None:
        user_id = str(doc["_id"])
        keys = self.keys_to_clear(doc, reset_type, now)
        archived_usage = doc.get(archive_month) if archive_month else None

        async def apply(session) -> None:
            if archived_usage:
                await self.store.write_archive(user_id, archive_month, archived_usage, now, session=session)
            await self.store.clear_keys(user_id, keys, now, session=session)

        try:
            await self.store.run_transaction(apply)
        except Exception as e:
            logger.error(f"Failed to reset usage for user {user_id}: {e}")
            result.failed[user_id] = str(e)
            return

        result.processed += 1
        if archived_usage:
            result.archived += 1

    async def _report_monthly_failure(self, error: str, archive_month: str, now: datetime, **extra: Any) -> None:
        """Critical audit entry for a failed scheduled reset. Never raises."""
        try:
            await self.audit_log.record(
                "monthly_reset_failed",
                {
                    "severity": "critical",
                    "error": error,
                    "archive_month": archive_month,
                    "timestamp": now,
                    **extra,
                },
            )
        except BillingError as e:
            logger.critical(f"Monthly reset failed ({error}) and the failure could not be recorded: {e}")

    async def _audit(
        self,
        action: str,
        result: ResetResult,
        user_ids: Optional[List[str]],
        executed_by: str,
        now: datetime,
        **extra: Any,
    ) -> None:
        await self.audit_log.record(
            action,
            {
                "reset_type": result.reset_type,
                "affected_users": ALL_USERS if user_ids is None else len(user_ids),
                "processed": result.processed,
                "skipped": result.skipped,
                "failed": len(result.failed),
                "executed_by": executed_by,
                "timestamp": now,
                **extra,
            },
        )
