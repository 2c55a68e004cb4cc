"""Notification outbox: queued inside ledger transactions, delivered after commit.

Delivery never touches subscription, payment or coupon state; a failed
delivery only marks the outbox row.
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql.elements import ColumnElement

from billing.constants import (
    NOTIFICATION_BATCH_SIZE,
    NOTIFICATION_FAILED,
    NOTIFICATION_LEASE_SECONDS,
    NOTIFICATION_MAX_ATTEMPTS,
    NOTIFICATION_PENDING,
    NOTIFICATION_SENDING,
    NOTIFICATION_SENT,
    NOTIFY_PAYMENT_FAILED,
    NOTIFY_PAYMENT_SUCCEEDED,
    NOTIFY_SUBSCRIPTION_CANCELLED,
)
from billing.models.notification_event import NotificationEvent
from billing.models.subscription import Subscription
from billing.models.user import User
from billing.services.email_service import send_billing_email

logger = logging.getLogger(__name__)

_template_dir = Path(__file__).parent.parent / "templates" / "email"
_jinja_env = Environment(loader=FileSystemLoader(str(_template_dir)), autoescape=True)

_EMAILS = {
    NOTIFY_PAYMENT_SUCCEEDED: ("payment_succeeded.html", "Your {plan_name} subscription was renewed"),
    NOTIFY_PAYMENT_FAILED: ("payment_failed.html", "Payment failed for your {plan_name} subscription"),
    NOTIFY_SUBSCRIPTION_CANCELLED: ("subscription_cancelled.html", "Your {plan_name} auto-renewal was cancelled"),
}


def queue_notification(
    db: AsyncSession,
    kind: str,
    subscription: Subscription,
    payload: dict[str, Any],
    now: datetime,
) -> NotificationEvent:
    """Add an outbox row to the caller's transaction. Does not flush or commit."""
    event = NotificationEvent(
        user_id=subscription.user_id,
        subscription_id=subscription.id,
        kind=kind,
        payload=payload,
        status=NOTIFICATION_PENDING,
        created_at=now,
    )
    db.add(event)
    return event


def render_email(kind: str, context: dict[str, Any]) -> tuple[str, str]:
    """Return (subject, html) for a notification kind."""
    template_name, subject = _EMAILS[kind]
    html = _jinja_env.get_template(template_name).render(**context)
    return subject.format(**context), html


async def send_push(user_id: int, kind: str, payload: dict[str, Any]) -> bool:
    """Push delivery is not wired to a provider yet; record intent only."""
    logger.info("Push notification %s for user %s (stub)", kind, user_id)
    return True


async def _deliver(event: NotificationEvent, user: User | None) -> str | None:
    """Deliver one event. Returns an error string, or None on success."""
    if user is None:
        return "user not found"

    context = {"name": user.display_name, **event.payload}
    subject, html = render_email(event.kind, context)
    emailed = await send_billing_email(to_email=user.email, subject=subject, html_body=html)
    await send_push(user.id, event.kind, event.payload)
    return None if emailed else "email delivery failed"


def _claimable(now: datetime) -> ColumnElement[bool]:
    """Rows a dispatcher may take: queued, retryable, or abandoned mid-send."""
    return and_(
        NotificationEvent.attempts < NOTIFICATION_MAX_ATTEMPTS,
        or_(
            NotificationEvent.status.in_([NOTIFICATION_PENDING, NOTIFICATION_FAILED]),
            and_(
                NotificationEvent.status == NOTIFICATION_SENDING,
                NotificationEvent.locked_until <= now,
            ),
        ),
    )


async def _claim_event(session_factory: async_sessionmaker[AsyncSession], event_id: int, now: datetime) -> bool:
    """Mark one row SENDING if no other dispatcher got there first."""
    async with session_factory() as db:
        result = await db.execute(
            update(NotificationEvent)
            .where(NotificationEvent.id == event_id, _claimable(now))
            .values(
                status=NOTIFICATION_SENDING,
                locked_until=now + timedelta(seconds=NOTIFICATION_LEASE_SECONDS),
                attempts=NotificationEvent.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    return result.rowcount == 1


async def dispatch_pending_notifications(
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime,
    limit: int = NOTIFICATION_BATCH_SIZE,
) -> int:
    """Deliver pending (and retryable failed) outbox rows. Returns the number sent.

    Each row is claimed before delivery, so overlapping dispatchers (the
    cron pass and the post-billing job) never send the same event twice.
    """
    async with session_factory() as db:
        result = await db.execute(
            select(NotificationEvent.id)
            .where(_claimable(now))
            .order_by(NotificationEvent.created_at, NotificationEvent.id)
            .limit(limit)
        )
        event_ids = list(result.scalars().all())

    sent = 0
    attempted = 0
    for event_id in event_ids:
        if not await _claim_event(session_factory, event_id, now):
            continue
        attempted += 1

        async with session_factory() as db:
            event = await db.get(NotificationEvent, event_id)
            user = await db.get(User, event.user_id)
            try:
                error = await _deliver(event, user)
            except Exception as e:
                logger.error("Notification %s delivery error: %s", event.id, e, exc_info=True)
                error = str(e)

            event.locked_until = None
            if error is None:
                event.status = NOTIFICATION_SENT
                event.sent_at = now
                event.last_error = None
                sent += 1
            else:
                event.status = NOTIFICATION_FAILED
                event.last_error = error
            await db.commit()

    if attempted:
        logger.info("Notification dispatch: %d of %d delivered", sent, attempted)
    return sent
