"""Tests for subscription creation and coupon application."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from billing.constants import RECURRING_ACTIVE, SUBSCRIPTION_ACTIVE
from billing.errors import CouponError
from billing.models.coupon import CouponApplication
from billing.models.subscription import Subscription
from billing.services.coupon_service import apply_coupon, create_subscription, get_active_coupon_application


async def test_create_subscription_is_due_immediately(db_session, make_user, make_plan, clock):
    user = await make_user()
    plan = await make_plan()

    sub = await create_subscription(db_session, user, plan, clock())

    assert sub.status == SUBSCRIPTION_ACTIVE
    assert sub.recurring_status == RECURRING_ACTIVE
    assert sub.next_billing_date == clock()
    assert sub.failed_attempts == 0
    assert sub.plan.id == plan.id


async def test_create_subscription_with_coupon(db_session, make_coupon, make_subscription):
    await make_coupon(code="WELCOME", percent=20, months=2)
    sub = await make_subscription(coupon_code="WELCOME")

    application = await get_active_coupon_application(db_session, sub.id)
    assert application.coupon.code == "WELCOME"
    assert application.remaining_months == 2
    assert application.applied_count == 0


async def test_second_active_coupon_is_rejected(db_session, make_coupon, make_subscription, clock):
    await make_coupon(code="FIRST", percent=10)
    await make_coupon(code="SECOND", flat=1000)
    sub = await make_subscription(coupon_code="FIRST")

    with pytest.raises(CouponError):
        await apply_coupon(db_session, sub, "SECOND", clock())

    count = await db_session.scalar(
        select(func.count()).select_from(CouponApplication).where(CouponApplication.subscription_id == sub.id)
    )
    assert count == 1


async def test_database_enforces_one_active_application(db_session, make_coupon, make_subscription):
    first = await make_coupon(code="ONE", percent=10)
    second = await make_coupon(code="TWO", percent=20)
    sub = await make_subscription(coupon_code="ONE")
    assert first.id != second.id

    db_session.add(CouponApplication(subscription_id=sub.id, coupon_id=second.id, is_active=True))
    with pytest.raises(IntegrityError):
        await db_session.commit()
    await db_session.rollback()


async def test_exhausted_application_allows_new_coupon(db_session, make_coupon, make_subscription, clock):
    await make_coupon(code="OLD", percent=10, months=1)
    await make_coupon(code="NEW", percent=30, months=1)
    sub = await make_subscription(coupon_code="OLD")

    old = await get_active_coupon_application(db_session, sub.id)
    old.is_active = False
    old.remaining_months = 0
    await db_session.commit()

    application = await apply_coupon(db_session, sub, "NEW", clock())
    await db_session.commit()
    assert application.coupon.code == "NEW"


@pytest.mark.parametrize("is_active, days_left", [(False, 30), (True, -1)])
async def test_unusable_coupon_rolls_back_subscription(
    db_session, make_user, make_plan, make_coupon, clock, is_active, days_left
):
    await make_coupon(code="BAD", percent=10, is_active=is_active, deadline=clock() + timedelta(days=days_left))
    user = await make_user()
    plan = await make_plan()

    with pytest.raises(CouponError):
        await create_subscription(db_session, user, plan, clock(), coupon_code="BAD")

    count = await db_session.scalar(select(func.count()).select_from(Subscription))
    assert count == 0


async def test_unknown_coupon_code(db_session, make_subscription, clock):
    sub = await make_subscription()
    with pytest.raises(CouponError, match="Unknown coupon"):
        await apply_coupon(db_session, sub, "NOPE", clock())
