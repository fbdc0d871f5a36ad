# hipop_billing/routes/usage.py
"""
Usage API Routes - thin HTTP surface over EntitlementEngine.

These endpoints handle:
- POST /api/usage/track - Record usage after an action succeeded
- POST /api/usage/enforce - Pre-flight limit check (read-only)
- POST /api/usage/reserve - Atomic check-and-record
- GET /api/usage/analytics - Trailing-window usage report
- POST /api/usage/features/validate - Batch feature gate
- POST /api/usage/reset - Ad-hoc reset (internal service key only)

Auth: the authenticating gateway sets X-User-Id; a user may only act on their
own usage. Reset calls carry X-Internal-API-Key instead.

Limit denials are ordinary 200 responses with allowed=false; 503 means the
store failed and the call can be retried.
"""

from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field, StrictInt

from hipop_billing.engine import EntitlementEngine
from hipop_billing.errors import (
    AuthorizationError,
    BillingError,
    InvalidInputError,
    StoreUnavailableError,
    SubscriptionConflictError,
    error_payload,
)

logger = logging.getLogger("hipop_billing.routes.usage")

router = APIRouter(prefix="/api/usage", tags=["usage"])


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------


class TrackUsageRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: Optional[str] = None
    feature_name: str
    amount: StrictInt = 1
    metadata: Optional[Dict[str, Any]] = None


class EnforceLimitRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: Optional[str] = None
    feature_name: str
    requested_amount: StrictInt = 1


class ReserveUsageRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: Optional[str] = None
    feature_name: str
    amount: StrictInt = 1
    metadata: Optional[Dict[str, Any]] = None


class FeatureValidationRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: Optional[str] = None
    features: List[str] = Field(min_length=1)


class ResetUsageRequest(BaseModel):
    """scope is "all" or an explicit list of user ids."""
    model_config = ConfigDict(extra="ignore")

    scope: Union[str, List[str]] = "all"
    reset_type: str
    executed_by: str = "internal_service"


class UsageResponse(BaseModel):
    success: bool
    current_usage: int
    limit: int
    percentage_used: int
    month: str
    alert_created: bool


class LimitCheckResponse(BaseModel):
    allowed: bool
    current_usage: int
    limit: int
    would_exceed_limit: bool
    percentage_used: int
    remaining_usage: int
    tier: str
    error: Optional[str] = None


class ReservationResponse(LimitCheckResponse):
    applied: bool
    usage: Optional[UsageResponse] = None


class FeatureValidationResponse(BaseModel):
    user_id: str
    features: Dict[str, bool]
    has_access: bool


class ResetResponse(BaseModel):
    success: bool
    reset_type: str
    processed: int
    skipped: int
    archived: int
    failed: Dict[str, str]


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_engine(request: Request) -> EntitlementEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail={"error": "unavailable", "message": "Engine not initialized"})
    return engine


def get_caller_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise _http_error(AuthorizationError("Must be authenticated", authenticated=False), "Unauthenticated")
    return x_user_id.strip()


def _safe_compare(a: str, b: str) -> bool:
    """Constant-time comparison to prevent timing attacks."""
    return hmac.compare_digest(a.encode(), b.encode())


def require_internal_service(
    engine: EntitlementEngine = Depends(get_engine),
    x_internal_api_key: Optional[str] = Header(default=None, alias="X-Internal-API-Key"),
) -> None:
    if not engine.settings.internal_service_keys:
        raise HTTPException(
            status_code=503,
            detail={"error": "unavailable", "message": "Reset API not configured (no INTERNAL_SERVICE_KEYS set)"},
        )
    if not x_internal_api_key:
        raise _http_error(AuthorizationError("Internal service key required", authenticated=False), "Unauthenticated")
    if not any(_safe_compare(x_internal_api_key, key) for key in engine.settings.internal_service_keys):
        raise _http_error(AuthorizationError("Invalid internal service key"), "Forbidden")


def _target_user(caller_id: str, requested: Optional[str]) -> str:
    """A user may only act on their own usage."""
    if requested is not None and requested.strip() != caller_id:
        raise _http_error(AuthorizationError("Can only access own usage"), "Forbidden")
    return caller_id


def _http_error(exc: BaseException, public_message: str, *, expose_detail: bool = False) -> HTTPException:
    if isinstance(exc, InvalidInputError):
        status = 400
    elif isinstance(exc, AuthorizationError):
        status = 403 if exc.authenticated else 401
        expose_detail = True
    elif isinstance(exc, SubscriptionConflictError):
        status = 409
    elif isinstance(exc, StoreUnavailableError):
        status = 503
    else:
        status = 500
    return HTTPException(status_code=status, detail=error_payload(exc, public_message, expose_detail=expose_detail))


def _fail(engine: EntitlementEngine, exc: BillingError, public_message: str) -> HTTPException:
    logger.error(f"{public_message}: {exc}")
    return _http_error(exc, public_message, expose_detail=not engine.settings.is_production)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("/track", response_model=UsageResponse, summary="Record feature usage")
async def track_usage(
    payload: TrackUsageRequest,
    caller_id: str = Depends(get_caller_id),
    engine: EntitlementEngine = Depends(get_engine),
):
    user_id = _target_user(caller_id, payload.user_id)
    try:
        result = await engine.record_usage(user_id, payload.feature_name, payload.amount, payload.metadata)
    except BillingError as e:
        raise _fail(engine, e, "Failed to track usage") from e
    return UsageResponse(**result.to_dict())


@router.post("/enforce", response_model=LimitCheckResponse, summary="Check a usage limit")
async def enforce_limit(
    payload: EnforceLimitRequest,
    caller_id: str = Depends(get_caller_id),
    engine: EntitlementEngine = Depends(get_engine),
):
    """
    Pre-flight check. Never mutates usage; an internal failure is reported as
    allowed=false with error set, not as a 5xx.
    """
    user_id = _target_user(caller_id, payload.user_id)
    try:
        check = await engine.check_limit(user_id, payload.feature_name, payload.requested_amount)
    except BillingError as e:
        raise _fail(engine, e, "Failed to check usage limit") from e
    return LimitCheckResponse(**check.to_dict())


@router.post("/reserve", response_model=ReservationResponse, summary="Check and record usage atomically")
async def reserve_usage(
    payload: ReserveUsageRequest,
    caller_id: str = Depends(get_caller_id),
    engine: EntitlementEngine = Depends(get_engine),
):
    user_id = _target_user(caller_id, payload.user_id)
    try:
        reservation = await engine.reserve_and_record(user_id, payload.feature_name, payload.amount, payload.metadata)
    except BillingError as e:
        raise _fail(engine, e, "Failed to reserve usage") from e
    return ReservationResponse(**reservation.to_dict())


@router.get("/analytics", summary="Usage analytics for the caller")
async def usage_analytics(
    user_id: Optional[str] = Query(default=None),
    months: int = Query(default=6),
    caller_id: str = Depends(get_caller_id),
    engine: EntitlementEngine = Depends(get_engine),
) -> Dict[str, Any]:
    target = _target_user(caller_id, user_id)
    try:
        return await engine.get_usage_analytics(target, months)
    except BillingError as e:
        raise _fail(engine, e, "Failed to get usage analytics") from e


@router.post("/features/validate", response_model=FeatureValidationResponse, summary="Validate feature access")
async def validate_features(
    payload: FeatureValidationRequest,
    caller_id: str = Depends(get_caller_id),
    engine: EntitlementEngine = Depends(get_engine),
):
    user_id = _target_user(caller_id, payload.user_id)
    try:
        results = await engine.check_features(user_id, payload.features)
    except BillingError as e:
        raise _fail(engine, e, "Failed to validate features") from e
    return FeatureValidationResponse(user_id=user_id, features=results, has_access=all(results.values()))


@router.post(
    "/reset",
    response_model=ResetResponse,
    summary="Reset usage counters",
    dependencies=[Depends(require_internal_service)],
)
async def reset_usage(
    payload: ResetUsageRequest,
    engine: EntitlementEngine = Depends(get_engine),
):
    try:
        result = await engine.reset_usage(payload.scope, payload.reset_type, executed_by=payload.executed_by)
    except BillingError as e:
        raise _fail(engine, e, "Failed to reset usage") from e
    return ResetResponse(**result.to_dict())
