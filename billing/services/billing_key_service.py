"""Billing key registry: stores gateway-issued billing keys encrypted at rest."""

import logging
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.encryption import encrypt_billing_key
from billing.models.subscription import Subscription
from billing.models.user import User

logger = logging.getLogger(__name__)


async def register_billing_key(
    db: AsyncSession, user_id: int, billing_key: str, now: datetime
) -> User | None:
    """Encrypt and store a newly issued billing key. Returns None for unknown users."""
    user = await db.get(User, user_id)
    if user is None:
        logger.warning("Billing key issued for unknown user %s", user_id)
        return None

    user.billing_key = encrypt_billing_key(billing_key)
    user.billing_key_issued_at = now
    await db.commit()
    logger.info("Stored billing key for user %s", user_id)
    return user


async def remove_billing_key(db: AsyncSession, user_id: int) -> bool:
    """Forget a user's billing key and stop renewing their subscriptions.

    Returns False if the user does not exist.
    """
    user = await db.get(User, user_id)
    if user is None:
        return False

    user.billing_key = None
    user.billing_key_issued_at = None
    await db.execute(
        update(Subscription)
        .where(Subscription.user_id == user_id, Subscription.auto_renew.is_(True))
        .values(auto_renew=False, next_billing_date=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Removed billing key and disabled auto-renew for user %s", user_id)
    return True
