"""Gateway webhook handlers: late payment confirmations and billing key lifecycle."""

import hashlib
import hmac
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.constants import (
    DEFAULT_PAYMENT_METHOD,
    HISTORY_FAILED,
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_TYPE_RECURRING,
    WEBHOOK_BILLING_KEY_ISSUED,
    WEBHOOK_BILLING_KEY_REMOVED,
    WEBHOOK_PAYMENT_DONE,
    WEBHOOK_PAYMENT_FAILED,
)
from billing.models.billing_history import BillingHistory
from billing.models.payment import Payment
from billing.schemas.webhook import GatewayEventData, GatewayWebhookEvent
from billing.services.billing_key_service import register_billing_key, remove_billing_key

logger = logging.getLogger(__name__)


def verify_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    """Check an HMAC-SHA256 hex signature over the raw body. An empty secret disables the check."""
    if not secret:
        return True
    if not signature:
        return False
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def _parse_time(value: str | None, fallback: datetime) -> datetime:
    if not value:
        return fallback
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return fallback


async def _get_payment(db: AsyncSession, order_id: str | None) -> Payment | None:
    if not order_id:
        return None
    result = await db.execute(select(Payment).where(Payment.order_id == order_id))
    return result.scalar_one_or_none()


async def handle_payment_done(data: GatewayEventData, db: AsyncSession, now: datetime) -> None:
    """Mark a recorded payment PAID (idempotent)."""
    payment = await _get_payment(db, data.order_id)
    if payment is None or payment.status == PAYMENT_PAID:
        return

    payment.status = PAYMENT_PAID
    if data.payment_key:
        payment.payment_key = data.payment_key
    payment.method = data.method or DEFAULT_PAYMENT_METHOD
    payment.approved_at = _parse_time(data.approved_at, now)
    payment.gateway_response = data.model_dump(by_alias=True)
    await db.commit()


async def handle_payment_failed(data: GatewayEventData, db: AsyncSession, now: datetime) -> None:
    """Mark a recorded payment FAILED and log it against the subscription."""
    payment = await _get_payment(db, data.order_id)
    if payment is None or payment.status == PAYMENT_FAILED:
        return

    failure = data.failure
    payment.status = PAYMENT_FAILED
    payment.failure_code = failure.code if failure else None
    payment.failure_reason = failure.message if failure else None
    payment.gateway_response = data.model_dump(by_alias=True)

    if payment.payment_type == PAYMENT_TYPE_RECURRING:
        db.add(
            BillingHistory(
                user_id=payment.user_id,
                subscription_id=payment.subscription_id,
                order_id=payment.order_id,
                amount=payment.amount,
                status=HISTORY_FAILED,
                error_code=failure.code if failure else None,
                error_message=failure.message if failure else None,
                created_at=now,
            )
        )
    await db.commit()


async def handle_gateway_event(event: GatewayWebhookEvent, db: AsyncSession, now: datetime) -> None:
    data = event.data
    if event.event_type == WEBHOOK_PAYMENT_DONE:
        await handle_payment_done(data, db, now)
    elif event.event_type == WEBHOOK_PAYMENT_FAILED:
        await handle_payment_failed(data, db, now)
    elif event.event_type == WEBHOOK_BILLING_KEY_ISSUED:
        if not data.customer_key or not data.billing_key:
            logger.error("Billing key event missing customer key or billing key")
            return
        await register_billing_key(db, int(data.customer_key), data.billing_key, now)
    elif event.event_type == WEBHOOK_BILLING_KEY_REMOVED:
        if not data.customer_key:
            logger.error("Billing key removal event missing customer key")
            return
        await remove_billing_key(db, int(data.customer_key))
    else:
        logger.info("Unhandled gateway webhook event: %s", event.event_type)
