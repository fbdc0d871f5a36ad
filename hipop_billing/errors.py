# hipop_billing/errors.py
"""
Error taxonomy for the usage/entitlement engine.

Limit denials are NOT errors: the enforcement gate returns them as ordinary
results. Everything here represents a request the engine could not serve.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Optional, TypeVar

from pymongo.errors import PyMongoError

logger = logging.getLogger("hipop_billing.errors")

T = TypeVar("T")


class BillingError(Exception):
    """Base class for engine errors."""

    code = "internal"


class InvalidInputError(BillingError):
    """
    Raised when caller input fails validation, before any state is touched.

    Attributes:
        field: The offending input field
        error_code: Machine-readable reason (e.g. FEATURE_NAME_INVALID_FORMAT)
    """

    code = "invalid-argument"

    def __init__(self, field: str, error_code: str, message: str):
        self.field = field
        self.error_code = error_code
        super().__init__(message)

    def to_dict(self) -> dict[str, str]:
        return {"field": self.field, "code": self.error_code, "message": str(self)}


class StoreUnavailableError(BillingError):
    """The document store failed or timed out. Safe to retry; nothing was committed."""

    code = "unavailable"

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Store operation '{operation}' failed{detail}")


class SubscriptionConflictError(BillingError):
    """More than one active subscription exists for a user (strict mode only)."""

    code = "failed-precondition"

    def __init__(self, user_id: str, count: int):
        self.user_id = user_id
        self.count = count
        super().__init__(f"User {user_id} has {count} active subscriptions")


class AuthorizationError(BillingError):
    """Caller identity is missing or does not match the target user."""

    def __init__(self, message: str, authenticated: bool = True):
        self.authenticated = authenticated
        self.code = "permission-denied" if authenticated else "unauthenticated"
        super().__init__(message)


async def store_call(awaitable: Awaitable[T], timeout_s: float, operation: str) -> T:
    """
    Await a store operation with a finite timeout.

    Driver errors and timeouts are converted to StoreUnavailableError so callers
    deal with one failure type.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError as e:
        logger.error("Store operation %s timed out after %.1fs", operation, timeout_s)
        raise StoreUnavailableError(operation, e) from e
    except PyMongoError as e:
        logger.error("Store operation %s failed: %s", operation, e)
        raise StoreUnavailableError(operation, e) from e


def error_payload(exc: BaseException, public_message: str, *, expose_detail: bool) -> dict[str, Any]:
    """Return a client-facing error body without leaking internals in production."""
    if isinstance(exc, InvalidInputError):
        return {"error": exc.code, **exc.to_dict()}
    code = getattr(exc, "code", "internal")
    message = f"{public_message}: {exc}" if expose_detail else public_message
    return {"error": code, "message": message}
