# hipop_billing/billing/subscriptions.py
"""
READ-ONLY view of subscription records.

Records in `user_subscriptions` are written by the payment webhook layer; the
engine only ever reads the user's active record.
"""
import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from hipop_billing.billing.base import SubscriptionLookup, SubscriptionRecord, SubscriptionState
from hipop_billing.config.database import SUBSCRIPTIONS
from hipop_billing.errors import SubscriptionConflictError, store_call

logger = logging.getLogger("hipop_billing.billing.subscriptions")


class MongoSubscriptionLookup(SubscriptionLookup):
    """
    Finds a user's active subscription.

    At most one active record per user is a business rule enforced upstream,
    not by storage. When it is violated the oldest record (by created_at) wins,
    unless strict mode is on, in which case the lookup refuses to pick.
    """

    def __init__(self, db: AsyncIOMotorDatabase, *, timeout_s: float, strict: bool = False):
        self.collection = db[SUBSCRIPTIONS]
        self.timeout_s = timeout_s
        self.strict = strict

    async def find_active_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        cursor = (
            self.collection.find({"user_id": user_id, "status": SubscriptionState.ACTIVE.value})
            .sort([("created_at", 1), ("_id", 1)])
            .limit(2)
        )
        docs = await store_call(cursor.to_list(length=2), self.timeout_s, "find_active_subscription")
        if not docs:
            return None

        if len(docs) > 1:
            if self.strict:
                count = await store_call(
                    self.collection.count_documents({"user_id": user_id, "status": SubscriptionState.ACTIVE.value}),
                    self.timeout_s,
                    "count_active_subscriptions",
                )
                raise SubscriptionConflictError(user_id, count)
            logger.warning(
                f"User {user_id} has multiple active subscriptions; using oldest record {docs[0].get('_id')}"
            )

        return SubscriptionRecord.from_document(docs[0])
