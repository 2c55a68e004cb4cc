"""Expiration sweep: closes out subscriptions whose paid period has lapsed."""

import logging
from datetime import datetime

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.constants import RECURRING_CANCELLED, SUBSCRIPTION_ACTIVE, SUBSCRIPTION_EXPIRED
from billing.models.subscription import Subscription

logger = logging.getLogger(__name__)


async def expire_lapsed_subscriptions(
    session_factory: async_sessionmaker[AsyncSession], now: datetime
) -> int:
    """Mark ACTIVE subscriptions EXPIRED once their end date has passed and they will not renew.

    Subscriptions still renewing (or retrying within grace) are left to the
    billing passes. Returns the number of rows expired.
    """
    async with session_factory() as db:
        result = await db.execute(
            update(Subscription)
            .where(
                Subscription.status == SUBSCRIPTION_ACTIVE,
                Subscription.end_date < now,
                or_(
                    Subscription.recurring_status == RECURRING_CANCELLED,
                    Subscription.auto_renew.is_(False),
                ),
            )
            .values(status=SUBSCRIPTION_EXPIRED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    expired = result.rowcount or 0
    if expired:
        logger.info("Expired %d lapsed subscriptions", expired)
    else:
        logger.info("No subscriptions to expire")
    return expired
