"""Tests for the notification outbox and its dispatcher."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

from sqlalchemy import select

from billing.constants import (
    NOTIFICATION_FAILED,
    NOTIFICATION_MAX_ATTEMPTS,
    NOTIFICATION_PENDING,
    NOTIFICATION_SENDING,
    NOTIFICATION_SENT,
    NOTIFY_PAYMENT_SUCCEEDED,
    PAYMENT_PAID,
    RECURRING_ACTIVE,
)
from billing.models.notification_event import NotificationEvent
from billing.models.payment import Payment
from billing.models.subscription import Subscription
from billing.services import notification_service
from billing.services.notification_service import dispatch_pending_notifications, render_email


async def _events(session_factory) -> list[NotificationEvent]:
    async with session_factory() as db:
        return (await db.execute(select(NotificationEvent).order_by(NotificationEvent.id))).scalars().all()


def test_render_payment_succeeded_email():
    subject, html = render_email(
        NOTIFY_PAYMENT_SUCCEEDED,
        {
            "name": "Reader",
            "plan_name": "Premium Monthly",
            "amount": 5000,
            "currency": "KRW",
            "discount_amount": 5000,
            "coupon_code": "HALF50",
            "order_id": "AUTO_1_abcdef",
            "next_billing_date": "2026-01-31T00:05:00+00:00",
        },
    )
    assert subject == "Your Premium Monthly subscription was renewed"
    assert "HALF50" in html
    assert "AUTO_1_abcdef" in html


async def test_successful_cycle_queues_one_event(service, session_factory, make_subscription):
    await make_subscription()
    await service.process_due_subscriptions()

    events = await _events(session_factory)
    assert len(events) == 1
    assert events[0].kind == NOTIFY_PAYMENT_SUCCEEDED
    assert events[0].status == NOTIFICATION_PENDING
    assert events[0].payload["amount"] == 10000


async def test_delivery_failure_leaves_billing_state_untouched(service, clock, session_factory, make_subscription, monkeypatch):
    sub = await make_subscription()
    await service.process_due_subscriptions()

    monkeypatch.setattr(notification_service, "send_billing_email", AsyncMock(side_effect=RuntimeError("smtp down")))
    sent = await dispatch_pending_notifications(session_factory, clock())

    assert sent == 0
    event = (await _events(session_factory))[0]
    assert event.status == NOTIFICATION_FAILED
    assert event.attempts == 1
    assert "smtp down" in event.last_error

    async with session_factory() as db:
        saved = await db.get(Subscription, sub.id)
        payment = (await db.execute(select(Payment))).scalar_one()
    assert saved.recurring_status == RECURRING_ACTIVE
    assert payment.status == PAYMENT_PAID

    # Retried on the next dispatch
    monkeypatch.setattr(notification_service, "send_billing_email", AsyncMock(return_value=True))
    sent = await dispatch_pending_notifications(session_factory, clock())

    assert sent == 1
    event = (await _events(session_factory))[0]
    assert event.status == NOTIFICATION_SENT
    assert event.sent_at == clock()
    assert event.attempts == 2


async def test_exhausted_events_are_not_retried(service, clock, session_factory, make_subscription, monkeypatch):
    await make_subscription()
    await service.process_due_subscriptions()
    async with session_factory() as db:
        event = (await db.execute(select(NotificationEvent))).scalar_one()
        event.status = NOTIFICATION_FAILED
        event.attempts = NOTIFICATION_MAX_ATTEMPTS
        await db.commit()

    send = AsyncMock(return_value=True)
    monkeypatch.setattr(notification_service, "send_billing_email", send)

    assert await dispatch_pending_notifications(session_factory, clock()) == 0
    send.assert_not_awaited()


async def test_unconfigured_email_marks_event_failed(service, clock, session_factory, make_subscription):
    # RESEND_API_KEY is empty in tests, so the real sender declines to send
    await make_subscription()
    await service.process_due_subscriptions()

    assert await dispatch_pending_notifications(session_factory, clock()) == 0
    event = (await _events(session_factory))[0]
    assert event.status == NOTIFICATION_FAILED
    assert event.last_error == "email delivery failed"


async def test_overlapping_dispatchers_send_each_event_once(service, clock, session_factory, make_subscription, monkeypatch):
    await make_subscription()
    await service.process_due_subscriptions()
    emails: list[str] = []

    async def slow_send(to_email, subject, html_body):
        emails.append(to_email)
        await asyncio.sleep(0.05)
        return True

    monkeypatch.setattr(notification_service, "send_billing_email", slow_send)

    results = await asyncio.gather(
        dispatch_pending_notifications(session_factory, clock()),
        dispatch_pending_notifications(session_factory, clock()),
    )

    assert len(emails) == 1
    assert sorted(results) == [0, 1]
    event = (await _events(session_factory))[0]
    assert event.status == NOTIFICATION_SENT
    assert event.attempts == 1
    assert event.locked_until is None


async def test_abandoned_send_is_claimed_again_after_lease(service, clock, session_factory, make_subscription, monkeypatch):
    await make_subscription()
    await service.process_due_subscriptions()
    async with session_factory() as db:
        event = (await db.execute(select(NotificationEvent))).scalar_one()
        event.status = NOTIFICATION_SENDING
        event.attempts = 1
        event.locked_until = clock() + timedelta(minutes=5)
        await db.commit()

    send = AsyncMock(return_value=True)
    monkeypatch.setattr(notification_service, "send_billing_email", send)

    # Another dispatcher still holds it
    assert await dispatch_pending_notifications(session_factory, clock()) == 0
    send.assert_not_awaited()

    clock.advance(minutes=6)
    assert await dispatch_pending_notifications(session_factory, clock()) == 1
    event = (await _events(session_factory))[0]
    assert event.status == NOTIFICATION_SENT
    assert event.attempts == 2
