"""Tests for the lapsed-subscription expiration sweep."""

from datetime import timedelta

from billing.constants import RECURRING_CANCELLED, SUBSCRIPTION_ACTIVE, SUBSCRIPTION_EXPIRED
from billing.models.subscription import Subscription
from billing.services.expiration_service import expire_lapsed_subscriptions


async def _set(session_factory, subscription_id: int, **values) -> None:
    async with session_factory() as db:
        sub = await db.get(Subscription, subscription_id)
        for key, value in values.items():
            setattr(sub, key, value)
        await db.commit()


async def _status(session_factory, subscription_id: int) -> str:
    async with session_factory() as db:
        return (await db.get(Subscription, subscription_id)).status


async def test_expires_only_lapsed_non_renewing_subscriptions(session_factory, clock, make_subscription):
    past = clock() - timedelta(days=1)
    cancelled = await make_subscription()
    opted_out = await make_subscription()
    renewing = await make_subscription()
    still_paid = await make_subscription()

    await _set(session_factory, cancelled.id, end_date=past, recurring_status=RECURRING_CANCELLED, auto_renew=False)
    await _set(session_factory, opted_out.id, end_date=past, auto_renew=False)
    await _set(session_factory, renewing.id, end_date=past)
    await _set(session_factory, still_paid.id, end_date=clock() + timedelta(days=5), auto_renew=False)

    expired = await expire_lapsed_subscriptions(session_factory, clock())

    assert expired == 2
    assert await _status(session_factory, cancelled.id) == SUBSCRIPTION_EXPIRED
    assert await _status(session_factory, opted_out.id) == SUBSCRIPTION_EXPIRED
    assert await _status(session_factory, renewing.id) == SUBSCRIPTION_ACTIVE
    assert await _status(session_factory, still_paid.id) == SUBSCRIPTION_ACTIVE

    # Idempotent
    assert await expire_lapsed_subscriptions(session_factory, clock()) == 0
