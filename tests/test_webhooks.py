"""Tests for the payment gateway webhook endpoint."""

import hashlib
import hmac
import json
from collections.abc import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.app import app
from billing.config import get_settings
from billing.constants import HISTORY_FAILED, PAYMENT_FAILED, PAYMENT_PAID, WEBHOOK_SIGNATURE_HEADER
from billing.db.encryption import decrypt_billing_key
from billing.db.session import get_db
from billing.models.billing_history import BillingHistory
from billing.models.payment import Payment
from billing.models.subscription import Subscription
from billing.models.user import User


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """httpx AsyncClient wired to the per-test database."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    app.dependency_overrides.clear()


def _event(event_type: str, **data) -> dict:
    return {"eventType": event_type, "timestamp": "2026-01-01T00:05:00+00:00", "data": data}


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


async def test_billing_key_issued_is_stored_encrypted(client, session_factory, make_user):
    user = await make_user(billing_key=None)

    response = await client.post(
        "/webhooks/gateway",
        json=_event("BILLING_KEY_ISSUED", customerKey=str(user.id), billingKey="bk_new_card"),
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}
    async with session_factory() as db:
        saved = await db.get(User, user.id)
    assert saved.billing_key != "bk_new_card"
    assert decrypt_billing_key(saved.billing_key) == "bk_new_card"
    assert saved.billing_key_issued_at is not None


async def test_billing_key_removed_stops_renewal(client, session_factory, make_subscription):
    sub = await make_subscription()

    response = await client.post(
        "/webhooks/gateway", json=_event("BILLING_KEY_REMOVED", customerKey=str(sub.user_id))
    )

    assert response.status_code == 200
    async with session_factory() as db:
        user = await db.get(User, sub.user_id)
        saved = await db.get(Subscription, sub.id)
    assert user.billing_key is None
    assert saved.auto_renew is False
    assert saved.next_billing_date is None


async def test_payment_failed_marks_payment_and_logs_history(client, service, session_factory, make_subscription):
    await make_subscription()
    await service.process_due_subscriptions()
    async with session_factory() as db:
        payment = (await db.execute(select(Payment))).scalar_one()

    response = await client.post(
        "/webhooks/gateway",
        json=_event(
            "PAYMENT_FAILED",
            orderId=payment.order_id,
            failure={"code": "REFUSED", "message": "Issuer reversed the charge"},
        ),
    )

    assert response.status_code == 200
    async with session_factory() as db:
        saved = await db.get(Payment, payment.id)
        history = (await db.execute(select(BillingHistory).order_by(BillingHistory.id))).scalars().all()
    assert saved.status == PAYMENT_FAILED
    assert saved.failure_code == "REFUSED"
    assert history[-1].status == HISTORY_FAILED
    assert history[-1].error_code == "REFUSED"

    # A late DONE for the same order restores it
    response = await client.post(
        "/webhooks/gateway",
        json=_event("PAYMENT_DONE", orderId=payment.order_id, paymentKey=payment.payment_key, method="CARD"),
    )
    assert response.status_code == 200
    async with session_factory() as db:
        saved = await db.get(Payment, payment.id)
    assert saved.status == PAYMENT_PAID


async def test_unknown_order_is_acknowledged(client):
    response = await client.post("/webhooks/gateway", json=_event("PAYMENT_DONE", orderId="AUTO_0_zzzzzz"))
    assert response.status_code == 200


async def test_malformed_payload_rejected(client):
    response = await client.post("/webhooks/gateway", content=b"not json")
    assert response.status_code == 400

    response = await client.post(
        "/webhooks/gateway", json=_event("BILLING_KEY_REMOVED", customerKey="not-a-number")
    )
    assert response.status_code == 400


async def test_signature_required_when_secret_configured(client, make_user, monkeypatch):
    monkeypatch.setattr(get_settings(), "gateway_webhook_secret", "whsec_test")
    user = await make_user(billing_key=None)
    body = json.dumps(_event("BILLING_KEY_ISSUED", customerKey=str(user.id), billingKey="bk_signed")).encode()

    response = await client.post("/webhooks/gateway", content=body, headers={"Content-Type": "application/json"})
    assert response.status_code == 401

    signature = hmac.new(b"whsec_test", body, hashlib.sha256).hexdigest()
    response = await client.post(
        "/webhooks/gateway",
        content=body,
        headers={"Content-Type": "application/json", WEBHOOK_SIGNATURE_HEADER: signature},
    )
    assert response.status_code == 200
