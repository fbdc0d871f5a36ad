import pytest

from hipop_billing.config.database import SUBSCRIPTIONS, USAGE_TRACKING
from hipop_billing.entitlements.enforcer import ENFORCEMENT_FAILED
from hipop_billing.errors import InvalidInputError

from .fakes import NOW, add_subscription


@pytest.mark.asyncio
async def test_free_tier_product_quota(engine):
    await engine.record_usage("u1", "global_products", now=NOW)

    check = await engine.check_limit("u1", "global_products", now=NOW)
    assert check.allowed is True
    assert check.current_usage == 1
    assert check.limit == 3
    assert check.remaining_usage == 2
    assert check.percentage_used == 33
    assert check.tier == "free"

    await engine.record_usage("u1", "global_products", 2, now=NOW)

    check = await engine.check_limit("u1", "global_products", now=NOW)
    assert check.allowed is False
    assert check.would_exceed_limit is True
    assert check.is_limit_reached is True
    assert check.remaining_usage == 0
    assert check.percentage_used == 100
    assert check.error is None


@pytest.mark.asyncio
async def test_requested_amount_counts_toward_the_limit(engine):
    await engine.record_usage("u1", "monthly_markets", 3, now=NOW)

    assert (await engine.check_limit("u1", "monthly_markets", 2, now=NOW)).allowed is True
    denied = await engine.check_limit("u1", "monthly_markets", 3, now=NOW)
    assert denied.allowed is False
    assert denied.remaining_usage == 2


@pytest.mark.asyncio
async def test_unlimited_quota_is_always_allowed(engine, db):
    add_subscription(db, "vendor", "vendorPro", limits={"monthly_markets": -1})
    await engine.record_usage("vendor", "monthly_markets", 500, now=NOW)

    check = await engine.check_limit("vendor", "monthly_markets", 1000, now=NOW)

    assert check.allowed is True
    assert check.limit == -1
    assert check.remaining_usage == -1
    assert check.percentage_used == 0
    assert check.tier == "vendorPro"


@pytest.mark.asyncio
async def test_check_limit_never_writes(engine, db):
    await engine.check_limit("u1", "global_products", now=NOW)

    assert db[USAGE_TRACKING].docs == []


@pytest.mark.asyncio
async def test_usage_read_failure_denies(engine, db):
    db[USAGE_TRACKING].fail("find_one")

    check = await engine.check_limit("u1", "global_products", now=NOW)

    assert check.allowed is False
    assert check.error == ENFORCEMENT_FAILED
    assert check.is_limit_reached is False
    assert check.limit == 0
    assert check.remaining_usage == 0


@pytest.mark.asyncio
async def test_subscription_lookup_failure_denies(engine, db):
    add_subscription(db, "vendor", "vendorPro", limits={"monthly_markets": -1})
    db[SUBSCRIPTIONS].fail("find")

    check = await engine.check_limit("vendor", "monthly_markets", now=NOW)

    assert check.allowed is False
    assert check.error == ENFORCEMENT_FAILED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "user_id, feature, amount",
    [("", "global_products", 1), ("u1", "", 1), ("u1", "global_products", 0), ("u1", "global_products", -2)],
)
async def test_invalid_input_raises_instead_of_denying(engine, user_id, feature, amount):
    with pytest.raises(InvalidInputError):
        await engine.check_limit(user_id, feature, amount, now=NOW)
