"""SQLAlchemy models for the billing engine."""

from .base import Base
from .user import User
from .plan import Plan
from .subscription import Subscription
from .coupon import CouponApplication, DiscountCoupon
from .payment import Payment
from .billing_history import BillingHistory
from .notification_event import NotificationEvent

__all__ = [
    "Base",
    "User",
    "Plan",
    "Subscription",
    "DiscountCoupon",
    "CouponApplication",
    "Payment",
    "BillingHistory",
    "NotificationEvent",
]
