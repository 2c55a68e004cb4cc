"""Tests for the scheduled passes run by the worker and the CLI."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from billing import scheduler_tasks
from billing.constants import SUBSCRIPTION_EXPIRED
from billing.errors import GatewayDeclined, GatewayTimeout
from billing.models.payment import Payment
from billing.models.subscription import Subscription


@pytest.fixture(autouse=True)
def wired(monkeypatch, session_factory, gateway):
    monkeypatch.setattr(scheduler_tasks, "get_session_factory", lambda: session_factory)
    monkeypatch.setattr(scheduler_tasks, "PaymentGateway", lambda: gateway)


async def test_renewal_pass_returns_summary_and_kicks_dispatch(clock, make_subscription):
    await make_subscription()
    await make_subscription()
    redis = AsyncMock()

    summary = await scheduler_tasks.run_renewal_pass({"redis": redis}, clock=clock)

    assert summary == {"job": "renewal", "selected": 2, "succeeded": 2, "failed": 0, "skipped": 0, "deferred": 0}
    redis.enqueue_job.assert_awaited_once_with("dispatch_notifications_job")


async def test_retry_pass_only_touches_grace_period(clock, gateway, make_subscription):
    gateway.failures = [GatewayDeclined("Card rejected")]
    await make_subscription()
    await scheduler_tasks.run_renewal_pass({}, clock=clock)

    clock.advance(hours=6)
    summary = await scheduler_tasks.run_retry_pass({}, clock=clock)

    assert summary["job"] == "retry"
    assert summary["selected"] == 1
    assert summary["succeeded"] == 1


async def test_expiration_pass(clock, session_factory, make_subscription):
    sub = await make_subscription()
    async with session_factory() as db:
        saved = await db.get(Subscription, sub.id)
        saved.auto_renew = False
        saved.end_date = clock() - timedelta(days=1)
        await db.commit()

    assert await scheduler_tasks.run_expiration_pass({}, clock=clock) == 1
    async with session_factory() as db:
        assert (await db.get(Subscription, sub.id)).status == SUBSCRIPTION_EXPIRED


async def test_notification_pass_with_nothing_queued(clock):
    assert await scheduler_tasks.run_notification_pass({}, clock=clock) == 0


async def test_reconcile_pass_records_stranded_charge(clock, gateway, session_factory, make_subscription):
    gateway.charge_then_raise = GatewayTimeout()
    await make_subscription()
    await scheduler_tasks.run_renewal_pass({}, clock=clock)
    clock.advance(days=3)
    redis = AsyncMock()

    summary = await scheduler_tasks.run_reconcile_pass({"redis": redis}, clock=clock)

    assert summary == {"job": "reconcile", "selected": 1, "succeeded": 1, "failed": 0, "skipped": 0, "deferred": 0}
    redis.enqueue_job.assert_awaited_once_with("dispatch_notifications_job")
    async with session_factory() as db:
        payments = (await db.execute(select(Payment))).scalars().all()
    assert [p.order_id for p in payments] == [gateway.charges[0]["order_id"]]
