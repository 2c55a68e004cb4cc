"""Coupon service: subscription creation and coupon application."""

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.constants import RECURRING_ACTIVE, SUBSCRIPTION_ACTIVE
from billing.errors import CouponError
from billing.models.coupon import CouponApplication, DiscountCoupon
from billing.models.plan import Plan
from billing.models.subscription import Subscription
from billing.models.user import User

logger = logging.getLogger(__name__)


async def get_active_coupon_application(
    db: AsyncSession, subscription_id: int
) -> CouponApplication | None:
    """Return the single active coupon application for a subscription, if any."""
    result = await db.execute(
        select(CouponApplication).where(
            CouponApplication.subscription_id == subscription_id,
            CouponApplication.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def find_valid_coupon(db: AsyncSession, code: str, now: datetime) -> DiscountCoupon:
    """Look up a coupon by code and check it can still be redeemed."""
    result = await db.execute(select(DiscountCoupon).where(DiscountCoupon.code == code))
    coupon = result.scalar_one_or_none()
    if coupon is None:
        raise CouponError(f"Unknown coupon code '{code}'")
    if not coupon.is_active:
        raise CouponError(f"Coupon '{code}' is not active")
    if coupon.deadline <= now:
        raise CouponError(f"Coupon '{code}' expired on {coupon.deadline.isoformat()}")
    return coupon


async def apply_coupon(
    db: AsyncSession, subscription: Subscription, code: str, now: datetime
) -> CouponApplication:
    """Bind a coupon to a subscription.

    Refuses when the subscription already has an active application, so a
    single coupon governs every cycle. Flushes but does not commit.
    """
    coupon = await find_valid_coupon(db, code, now)

    existing = await get_active_coupon_application(db, subscription.id)
    if existing is not None:
        raise CouponError(
            f"Subscription {subscription.id} already has active coupon application {existing.id}"
        )

    application = CouponApplication(
        subscription_id=subscription.id,
        coupon_id=coupon.id,
        applied_count=0,
        remaining_months=coupon.recurring_months,
        is_active=True,
        created_at=now,
    )
    db.add(application)
    await db.flush()
    # Populate the relationship without a lazy load
    await db.refresh(application, attribute_names=["coupon"])

    logger.info(
        "Applied coupon %s to subscription %s (remaining_months=%s)",
        coupon.code,
        subscription.id,
        coupon.recurring_months,
    )
    return application


async def create_subscription(
    db: AsyncSession,
    user: User,
    plan: Plan,
    now: datetime,
    coupon_code: str | None = None,
    auto_renew: bool = True,
) -> Subscription:
    """Create an ACTIVE subscription due for its first cycle now, optionally with a coupon.

    Commits on success; an invalid coupon rolls the whole creation back.
    """
    subscription = Subscription(
        user_id=user.id,
        plan_id=plan.id,
        status=SUBSCRIPTION_ACTIVE,
        recurring_status=RECURRING_ACTIVE,
        auto_renew=auto_renew,
        start_date=now,
        end_date=now,
        next_billing_date=now,
        failed_attempts=0,
        created_at=now,
        updated_at=now,
    )
    db.add(subscription)
    try:
        await db.flush()
        if coupon_code:
            await apply_coupon(db, subscription, coupon_code, now)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    await db.refresh(subscription, attribute_names=["user", "plan"])
    logger.info("Created subscription %s for user %s on plan %s", subscription.id, user.id, plan.id)
    return subscription
