"""Subscription billing orchestrator: claim, discount, charge, then ledger, per subscription.

Each subscription is claimed with a short-lived lease (a conditional
single-row UPDATE) before any money moves, so overlapping renewal and
retry runs can never bill the same cycle twice. The lease is cleared by
the ledger transaction, or expires on its own if the process dies.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.config import get_settings
from billing.errors import ChargeError, GatewayTimeout, LedgerWriteFailed, NoPaymentMethod
from billing.models.coupon import CouponApplication, DiscountCoupon
from billing.models.plan import Plan
from billing.models.subscription import Subscription
from billing.models.user import User
from billing.services.coupon_calculator import Discount, calculate_discount
from billing.services.coupon_service import get_active_coupon_application
from billing.services.gateway import ChargeResult, PaymentGateway, generate_order_id
from billing.services.ledger import commit_with_timeout, record_failure, record_late_payment, record_success
from billing.services.payment_log import (
    log_job_complete,
    log_job_start,
    log_payment_attempt,
    log_payment_failed,
    log_payment_success,
    log_payment_waived,
)
from billing.services.retry_policy import (
    billable_clause,
    is_final_attempt,
    renewal_due_clause,
    retry_eligible_clause,
    stranded_order_clause,
)
from billing.utils import Clock, now_utc

logger = logging.getLogger(__name__)

OUTCOME_PAID = "paid"
OUTCOME_WAIVED = "waived"
OUTCOME_RECONCILED = "reconciled"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_DEFERRED = "deferred"
OUTCOME_CLEARED = "cleared"

_SUCCESS_OUTCOMES = {OUTCOME_PAID, OUTCOME_WAIVED, OUTCOME_RECONCILED}


@dataclass
class BillingOutcome:
    subscription_id: int
    status: str
    amount: int = 0
    order_id: str | None = None
    error_code: str | None = None


@dataclass
class BillingRunReport:
    """Counters for one batch run."""

    job: str
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    outcomes: list[BillingOutcome] = field(default_factory=list)

    def add(self, outcome: BillingOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status in _SUCCESS_OUTCOMES:
            self.succeeded += 1
        elif outcome.status == OUTCOME_FAILED:
            self.failed += 1
        elif outcome.status == OUTCOME_DEFERRED:
            self.deferred += 1
        else:
            self.skipped += 1


def build_order_name(plan: Plan, coupon: DiscountCoupon | None, waived: bool) -> str:
    name = f"{plan.name} - recurring payment"
    if coupon is not None:
        suffix = "100% discount applied" if waived else "discount applied"
        name += f" ({coupon.code} {suffix})"
    return name


@dataclass
class CyclePrice:
    """What this cycle costs after the active coupon, if any."""

    application: CouponApplication | None
    discount: Discount
    coupon: DiscountCoupon | None
    waived: bool
    order_name: str


class BillingService:
    """Runs billing cycles for due subscriptions.

    ``clock`` supplies "now" for every decision so runs are deterministic
    under test; ``max_concurrency`` bounds in-flight gateway calls.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        clock: Clock = now_utc,
        max_concurrency: int | None = None,
        lock_lease_seconds: int | None = None,
        commit_timeout: float | None = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory
        self._gateway = gateway
        self._clock = clock
        self.max_concurrency = max_concurrency or settings.billing_max_concurrency
        self._lease = timedelta(seconds=lock_lease_seconds or settings.billing_lock_lease_seconds)
        self._commit_timeout = commit_timeout or settings.ledger_commit_timeout_seconds
        self._currency = settings.billing_currency

    # --- Selection ---

    async def select_due_subscription_ids(self, now: datetime) -> list[int]:
        """Renewals due now plus PENDING_PAYMENT subscriptions still in grace, with a billing key."""
        return await self._select_ids(or_(renewal_due_clause(now), retry_eligible_clause(now)))

    async def select_retry_subscription_ids(self, now: datetime) -> list[int]:
        """PENDING_PAYMENT subscriptions still in grace, with a billing key."""
        return await self._select_ids(retry_eligible_clause(now))

    async def select_stranded_subscription_ids(self, now: datetime) -> list[int]:
        """Subscriptions holding an unconfirmed order that no billing pass will retry."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Subscription.id).where(stranded_order_clause(now)).order_by(Subscription.id)
            )
            return list(result.scalars().all())

    async def _select_ids(self, clause) -> list[int]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Subscription.id)
                .join(User, User.id == Subscription.user_id)
                .where(clause, User.billing_key.is_not(None))
                .order_by(Subscription.next_billing_date, Subscription.id)
            )
            return list(result.scalars().all())

    # --- Entry points ---

    async def process_due_subscriptions(self, deadline: datetime | None = None) -> BillingRunReport:
        """Main renewal pass."""
        ids = await self.select_due_subscription_ids(self._clock())
        return await self._run_batch("renewal", ids, deadline, self.process_subscription)

    async def retry_failed_payments(self, deadline: datetime | None = None) -> BillingRunReport:
        """Grace-period retry pass."""
        ids = await self.select_retry_subscription_ids(self._clock())
        return await self._run_batch("retry", ids, deadline, partial(self.process_subscription, retry_only=True))

    async def reconcile_stranded_orders(self, deadline: datetime | None = None) -> BillingRunReport:
        """Settle unconfirmed orders on cancelled or lapsed subscriptions.

        A timed-out charge keeps its order id, but once the subscription is
        cancelled or past its grace period nothing bills it again. This pass
        asks the gateway about each such order: a completed one is recorded,
        an unknown one is cleared, and a failed lookup is left for next time.
        """
        ids = await self.select_stranded_subscription_ids(self._clock())
        return await self._run_batch("reconcile", ids, deadline, self.reconcile_subscription)

    async def _run_batch(
        self,
        job: str,
        ids: list[int],
        deadline: datetime | None,
        handler: Callable[[int], Awaitable[BillingOutcome]],
    ) -> BillingRunReport:
        report = BillingRunReport(job=job, selected=len(ids))
        log_job_start(job, len(ids))
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run_one(subscription_id: int) -> BillingOutcome:
            async with semaphore:
                # Unstarted work is left untouched for the next run
                if deadline is not None and self._clock() >= deadline:
                    return BillingOutcome(subscription_id, OUTCOME_DEFERRED)
                try:
                    return await handler(subscription_id)
                except Exception as e:
                    logger.error("Billing failed for subscription %s: %s", subscription_id, e, exc_info=True)
                    return BillingOutcome(subscription_id, OUTCOME_FAILED, error_code=type(e).__name__)

        for outcome in await asyncio.gather(*(run_one(sid) for sid in ids)):
            report.add(outcome)

        log_job_complete(job, report.succeeded, report.failed, report.skipped, report.deferred)
        return report

    # --- One subscription ---

    async def process_subscription(self, subscription_id: int, retry_only: bool = False) -> BillingOutcome:
        """Run one billing cycle for one subscription if it can be claimed."""
        now = self._clock()
        eligibility = retry_eligible_clause(now) if retry_only else billable_clause(now)
        if not await self._claim(subscription_id, now, eligibility):
            logger.info("Subscription %s is locked or no longer due, skipping", subscription_id)
            return BillingOutcome(subscription_id, OUTCOME_SKIPPED)
        return await self._with_claim(subscription_id, partial(self._bill, now=now))

    async def reconcile_subscription(self, subscription_id: int) -> BillingOutcome:
        """Settle one stranded order if the subscription can be claimed."""
        now = self._clock()
        if not await self._claim(subscription_id, now, stranded_order_clause(now)):
            logger.info("Subscription %s is locked or has no stranded order, skipping", subscription_id)
            return BillingOutcome(subscription_id, OUTCOME_SKIPPED)
        return await self._with_claim(subscription_id, partial(self._settle_stranded, now=now))

    async def _with_claim(
        self, subscription_id: int, work: Callable[..., Awaitable[BillingOutcome]]
    ) -> BillingOutcome:
        """Run ``work`` on a fresh session, releasing the claim if it does not finish cleanly."""
        try:
            async with self._session_factory() as db:
                subscription = await db.get(Subscription, subscription_id)
                return await work(db, subscription)
        except LedgerWriteFailed as e:
            logger.error("Ledger write failed for subscription %s: %s", subscription_id, e)
            await self._release(subscription_id)
            return BillingOutcome(subscription_id, OUTCOME_FAILED, error_code="LEDGER_WRITE_FAILED")
        except Exception:
            await self._release(subscription_id)
            raise

    async def _price_cycle(self, db: AsyncSession, subscription: Subscription) -> CyclePrice:
        application = await get_active_coupon_application(db, subscription.id)
        discount = calculate_discount(subscription.plan.price, application)
        coupon = application.coupon if discount.coupon_applied else None
        waived = coupon is not None and discount.final_amount == 0
        return CyclePrice(application, discount, coupon, waived, build_order_name(subscription.plan, coupon, waived))

    async def _lookup(self, subscription_id: int, order_id: str, now: datetime) -> ChargeResult | None:
        """Ask the gateway about an order, raising ChargeError if it cannot say."""
        try:
            return await self._gateway.lookup_order(order_id, now)
        except ChargeError as e:
            logger.warning("Cannot reconcile order %s for subscription %s: %s", order_id, subscription_id, e)
            raise

    def _log_recorded(self, subscription: Subscription, result: ChargeResult, price: CyclePrice) -> None:
        log_payment_success(
            subscription.user_id, subscription.id, result.order_id, result.payment_key,
            result.amount, price.discount.base_amount, price.discount.discount_amount,
            price.coupon.code if price.coupon else None,
        )

    async def _bill(self, db: AsyncSession, subscription: Subscription, now: datetime) -> BillingOutcome:
        user = subscription.user
        plan = subscription.plan
        subscription_id = subscription.id
        price = await self._price_cycle(db, subscription)
        discount = price.discount

        if subscription.pending_order_id:
            pending = subscription.pending_order_id
            try:
                found = await self._lookup(subscription_id, pending, now)
            except ChargeError as e:
                # Never charge again while the previous order's fate is unknown
                await self._release(subscription_id)
                return BillingOutcome(subscription_id, OUTCOME_SKIPPED, order_id=pending, error_code=e.code)

            if found is not None:
                logger.info("Order %s was charged at the gateway, recording it", pending)
                await record_success(
                    db, subscription, found, discount, price.application, price.order_name, now, self._commit_timeout
                )
                self._log_recorded(subscription, found, price)
                return BillingOutcome(subscription_id, OUTCOME_RECONCILED, found.amount, found.order_id)

            logger.info("Order %s never completed at the gateway, billing afresh", pending)
            subscription.pending_order_id = None

        order_id = generate_order_id(now)
        try:
            if not user.billing_key:
                raise NoPaymentMethod()

            if price.waived:
                result = self._gateway.waive(order_id, price.order_name, now)
                log_payment_waived(user.id, subscription_id, order_id, discount.base_amount, price.coupon.code)
            else:
                # Durable marker first: a crash after the charge is reconciled next run
                subscription.pending_order_id = order_id
                await commit_with_timeout(db, self._commit_timeout)
                log_payment_attempt(user.id, subscription_id, order_id, discount.final_amount)
                result = await self._gateway.charge(
                    billing_key_ciphertext=user.billing_key,
                    customer_key=str(user.id),
                    amount=discount.final_amount,
                    currency=plan.currency or self._currency,
                    order_id=order_id,
                    order_name=price.order_name,
                    customer_email=user.email,
                    customer_name=user.display_name,
                    now=now,
                )
        except ChargeError as e:
            if isinstance(e, GatewayTimeout) and is_final_attempt(subscription):
                # This failure would cancel, so settle the order before giving up on it
                try:
                    found = await self._lookup(subscription_id, order_id, now)
                except ChargeError:
                    found = None
                if found is not None:
                    logger.info("Timed-out order %s was charged at the gateway, recording it", order_id)
                    await record_success(
                        db, subscription, found, discount, price.application, price.order_name, now, self._commit_timeout
                    )
                    self._log_recorded(subscription, found, price)
                    return BillingOutcome(subscription_id, OUTCOME_RECONCILED, found.amount, found.order_id)

            cancelled = await record_failure(db, subscription, e, now, self._commit_timeout)
            log_payment_failed(user.id, subscription_id, e.code, subscription.failed_attempts)
            if cancelled:
                logger.warning("Subscription %s cancelled after %d failed attempts", subscription_id, subscription.failed_attempts)
            return BillingOutcome(subscription_id, OUTCOME_FAILED, order_id=order_id, error_code=e.code)

        await record_success(db, subscription, result, discount, price.application, price.order_name, now, self._commit_timeout)
        if not result.waived:
            self._log_recorded(subscription, result, price)
        return BillingOutcome(
            subscription_id,
            OUTCOME_WAIVED if result.waived else OUTCOME_PAID,
            result.amount,
            result.order_id,
        )

    async def _settle_stranded(self, db: AsyncSession, subscription: Subscription, now: datetime) -> BillingOutcome:
        subscription_id = subscription.id
        pending = subscription.pending_order_id
        try:
            found = await self._lookup(subscription_id, pending, now)
        except ChargeError as e:
            await self._release(subscription_id)
            return BillingOutcome(subscription_id, OUTCOME_SKIPPED, order_id=pending, error_code=e.code)

        if found is None:
            logger.info("Stranded order %s never completed at the gateway, clearing it", pending)
            subscription.pending_order_id = None
            subscription.billing_lock_expires_at = None
            await commit_with_timeout(db, self._commit_timeout)
            return BillingOutcome(subscription_id, OUTCOME_CLEARED, order_id=pending)

        logger.warning("Stranded order %s was charged at the gateway, recording it", pending)
        price = await self._price_cycle(db, subscription)
        await record_late_payment(
            db, subscription, found, price.discount, price.application, price.order_name, now, self._commit_timeout
        )
        self._log_recorded(subscription, found, price)
        return BillingOutcome(subscription_id, OUTCOME_RECONCILED, found.amount, found.order_id)

    # --- Claim lease ---

    async def _claim(self, subscription_id: int, now: datetime, eligibility) -> bool:
        """Take the billing lease if it is free and ``eligibility`` still holds for the row."""
        stmt = (
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                or_(
                    Subscription.billing_lock_expires_at.is_(None),
                    Subscription.billing_lock_expires_at <= now,
                ),
                eligibility,
            )
            .values(billing_lock_expires_at=now + self._lease)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            await commit_with_timeout(db, self._commit_timeout)
        return result.rowcount == 1

    async def _release(self, subscription_id: int) -> None:
        try:
            async with self._session_factory() as db:
                await db.execute(
                    update(Subscription)
                    .where(Subscription.id == subscription_id)
                    .values(billing_lock_expires_at=None)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Could not release claim on subscription %s, lease will expire: %s", subscription_id, e)
