"""Billing ledger writer: one atomic unit of work per billing outcome.

Success: Payment row, subscription advance, SUCCESS history row, coupon
decay and an outbox notification, all in one commit. Failure: retry
state transition, FAILED history row and an outbox notification. Nothing
here talks to the gateway or sends notifications directly.
"""

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.config import get_settings
from billing.constants import (
    HISTORY_FAILED,
    HISTORY_SUCCESS,
    NOTIFY_PAYMENT_FAILED,
    NOTIFY_PAYMENT_SUCCEEDED,
    NOTIFY_SUBSCRIPTION_CANCELLED,
    PAYMENT_PAID,
    PAYMENT_TYPE_RECURRING,
    PAYMENT_WAIVED,
    RECURRING_CANCELLED,
)
from billing.errors import ChargeError, GatewayTimeout, LedgerWriteFailed
from billing.models.billing_history import BillingHistory
from billing.models.coupon import CouponApplication
from billing.models.payment import Payment
from billing.models.subscription import Subscription
from billing.services.coupon_calculator import Discount
from billing.services.gateway import ChargeResult
from billing.services.notification_service import queue_notification
from billing.services.retry_policy import apply_failure, apply_success

logger = logging.getLogger(__name__)


async def commit_with_timeout(db: AsyncSession, timeout: float | None = None) -> None:
    """Commit, rolling back and raising LedgerWriteFailed on error or timeout."""
    if timeout is None:
        timeout = get_settings().ledger_commit_timeout_seconds
    try:
        await asyncio.wait_for(db.commit(), timeout=timeout)
    except (SQLAlchemyError, TimeoutError) as e:
        await db.rollback()
        raise LedgerWriteFailed(f"Ledger commit failed: {type(e).__name__}: {e}") from e


def _decay_coupon(application: CouponApplication) -> None:
    application.applied_count += 1
    if application.remaining_months is not None:
        application.remaining_months -= 1
        if application.remaining_months <= 0:
            application.is_active = False


def _stage_success(
    db: AsyncSession,
    subscription: Subscription,
    result: ChargeResult,
    discount: Discount,
    application: CouponApplication | None,
    order_name: str,
    now: datetime,
) -> Payment:
    """Add the Payment, SUCCESS history, coupon decay and outbox rows. Subscription state is the caller's."""
    plan = subscription.plan
    coupon = application.coupon if (application is not None and discount.coupon_applied) else None

    payment = Payment(
        user_id=subscription.user_id,
        plan_id=plan.id,
        subscription_id=subscription.id,
        order_id=result.order_id,
        payment_key=result.payment_key,
        order_name=order_name,
        amount=result.amount,
        original_amount=discount.base_amount,
        discount_amount=discount.discount_amount,
        coupon_id=coupon.id if coupon else None,
        coupon_code=coupon.code if coupon else None,
        status=PAYMENT_WAIVED if result.waived else PAYMENT_PAID,
        payment_type=PAYMENT_TYPE_RECURRING,
        method=result.method,
        approved_at=result.approved_at,
        gateway_response=result.raw,
        created_at=now,
    )
    db.add(payment)

    db.add(
        BillingHistory(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            order_id=result.order_id,
            amount=result.amount,
            status=HISTORY_SUCCESS,
            created_at=now,
        )
    )

    if coupon is not None:
        _decay_coupon(application)

    next_billing_date = subscription.next_billing_date
    queue_notification(
        db,
        NOTIFY_PAYMENT_SUCCEEDED,
        subscription,
        {
            "plan_name": plan.name,
            "amount": result.amount,
            "currency": plan.currency,
            "discount_amount": discount.discount_amount,
            "coupon_code": coupon.code if coupon else None,
            "order_id": result.order_id,
            "next_billing_date": next_billing_date.isoformat() if next_billing_date else None,
        },
        now,
    )
    return payment


async def record_success(
    db: AsyncSession,
    subscription: Subscription,
    result: ChargeResult,
    discount: Discount,
    application: CouponApplication | None,
    order_name: str,
    now: datetime,
    timeout: float | None = None,
) -> Payment:
    """Persist a successful (or waived) cycle atomically."""
    apply_success(subscription, subscription.plan, now)
    subscription.billing_lock_expires_at = None
    subscription.pending_order_id = None
    payment = _stage_success(db, subscription, result, discount, application, order_name, now)

    await commit_with_timeout(db, timeout)
    return payment


async def record_late_payment(
    db: AsyncSession,
    subscription: Subscription,
    result: ChargeResult,
    discount: Discount,
    application: CouponApplication | None,
    order_name: str,
    now: datetime,
    timeout: float | None = None,
) -> Payment:
    """Persist a charge confirmed after its subscription stopped being billable.

    A cancelled subscription stays cancelled: the payment is recorded and
    ``end_date`` is pushed out to cover the paid period, after which the
    expiration sweep closes it. Anything else takes the normal success
    transition.
    """
    if subscription.recurring_status != RECURRING_CANCELLED:
        return await record_success(db, subscription, result, discount, application, order_name, now, timeout)

    subscription.last_billing_date = now
    subscription.end_date = max(subscription.end_date, now + timedelta(days=subscription.plan.duration))
    subscription.next_billing_date = None
    subscription.billing_lock_expires_at = None
    subscription.pending_order_id = None
    payment = _stage_success(db, subscription, result, discount, application, order_name, now)

    await commit_with_timeout(db, timeout)
    logger.warning(
        "Recorded order %s on cancelled subscription %s, paid through %s",
        result.order_id, subscription.id, subscription.end_date.isoformat(),
    )
    return payment


async def record_failure(
    db: AsyncSession,
    subscription: Subscription,
    error: ChargeError,
    now: datetime,
    timeout: float | None = None,
) -> bool:
    """Persist a failed attempt. Returns True when the subscription was cancelled.

    An ambiguous gateway timeout keeps ``pending_order_id`` so the next
    attempt (or the stranded-order sweep) checks the gateway before the
    order is given up on.
    """
    plan = subscription.plan
    order_id = subscription.pending_order_id
    cancelled = apply_failure(subscription, error.message or error.code, now)
    subscription.billing_lock_expires_at = None
    if not isinstance(error, GatewayTimeout):
        subscription.pending_order_id = None

    db.add(
        BillingHistory(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            order_id=order_id,
            amount=plan.price,
            status=HISTORY_FAILED,
            attempt_number=subscription.failed_attempts,
            error_code=error.code,
            error_message=error.message,
            created_at=now,
        )
    )

    queue_notification(
        db,
        NOTIFY_SUBSCRIPTION_CANCELLED if cancelled else NOTIFY_PAYMENT_FAILED,
        subscription,
        {
            "plan_name": plan.name,
            "attempt_number": subscription.failed_attempts,
            "error_code": error.code,
            "error_message": error.message,
            "grace_period_end": subscription.grace_period_end.isoformat() if subscription.grace_period_end else None,
        },
        now,
    )

    await commit_with_timeout(db, timeout)
    return cancelled
