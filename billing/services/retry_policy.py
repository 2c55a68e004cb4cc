"""Failure/retry state machine for recurring subscriptions.

ACTIVE -> PENDING_PAYMENT (grace period) -> ACTIVE on recovery, or
CANCELLED once MAX_FAILED_ATTEMPTS consecutive attempts have failed.
CANCELLED is terminal.
"""

from datetime import datetime, timedelta

from sqlalchemy import and_, not_, or_
from sqlalchemy.sql.elements import ColumnElement

from billing.constants import (
    GRACE_PERIOD_DAYS,
    MAX_FAILED_ATTEMPTS,
    RECURRING_ACTIVE,
    RECURRING_CANCELLED,
    RECURRING_PENDING_PAYMENT,
)
from billing.errors import InvalidTransition
from billing.models.plan import Plan
from billing.models.subscription import Subscription


def apply_success(subscription: Subscription, plan: Plan, now: datetime) -> None:
    """Move a subscription to ACTIVE and schedule the next cycle."""
    if subscription.recurring_status == RECURRING_CANCELLED:
        raise InvalidTransition(f"Subscription {subscription.id} is cancelled")

    next_billing_date = now + timedelta(days=plan.duration)
    subscription.failed_attempts = 0
    subscription.last_failure_reason = None
    subscription.grace_period_end = None
    subscription.recurring_status = RECURRING_ACTIVE
    subscription.last_billing_date = now
    subscription.next_billing_date = next_billing_date
    subscription.end_date = next_billing_date


def apply_failure(subscription: Subscription, reason: str, now: datetime) -> bool:
    """Record a failed attempt. Returns True when the subscription was cancelled."""
    if subscription.recurring_status == RECURRING_CANCELLED:
        raise InvalidTransition(f"Subscription {subscription.id} is cancelled")

    subscription.failed_attempts += 1
    subscription.last_failure_reason = reason
    subscription.last_failure_date = now

    if subscription.failed_attempts >= MAX_FAILED_ATTEMPTS:
        subscription.recurring_status = RECURRING_CANCELLED
        subscription.grace_period_end = None
        subscription.auto_renew = False
        return True

    subscription.recurring_status = RECURRING_PENDING_PAYMENT
    subscription.grace_period_end = now + timedelta(days=GRACE_PERIOD_DAYS)
    return False


def is_renewal_due(subscription: Subscription, now: datetime) -> bool:
    return (
        subscription.recurring_status == RECURRING_ACTIVE
        and subscription.auto_renew
        and subscription.next_billing_date is not None
        and subscription.next_billing_date <= now
    )


def is_retry_eligible(subscription: Subscription, now: datetime) -> bool:
    return (
        subscription.recurring_status == RECURRING_PENDING_PAYMENT
        and subscription.grace_period_end is not None
        and now < subscription.grace_period_end
        and subscription.failed_attempts < MAX_FAILED_ATTEMPTS
    )


def is_billable(subscription: Subscription, now: datetime) -> bool:
    return is_renewal_due(subscription, now) or is_retry_eligible(subscription, now)


def is_final_attempt(subscription: Subscription) -> bool:
    """True when one more failure would cancel the subscription."""
    return subscription.failed_attempts + 1 >= MAX_FAILED_ATTEMPTS


# --- SQL equivalents, used by selection queries and the claim statement ---


def renewal_due_clause(now: datetime) -> ColumnElement[bool]:
    return and_(
        Subscription.recurring_status == RECURRING_ACTIVE,
        Subscription.auto_renew.is_(True),
        Subscription.next_billing_date.is_not(None),
        Subscription.next_billing_date <= now,
    )


def retry_eligible_clause(now: datetime) -> ColumnElement[bool]:
    return and_(
        Subscription.recurring_status == RECURRING_PENDING_PAYMENT,
        Subscription.grace_period_end.is_not(None),
        Subscription.grace_period_end > now,
        Subscription.failed_attempts < MAX_FAILED_ATTEMPTS,
    )


def billable_clause(now: datetime) -> ColumnElement[bool]:
    return or_(renewal_due_clause(now), retry_eligible_clause(now))


def stranded_order_clause(now: datetime) -> ColumnElement[bool]:
    """Unconfirmed orders on subscriptions no billing pass will pick up again."""
    return and_(Subscription.pending_order_id.is_not(None), not_(billable_clause(now)))
