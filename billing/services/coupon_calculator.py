"""Coupon discount calculation for one billing cycle."""

from dataclasses import dataclass

from billing.models.coupon import CouponApplication


@dataclass(frozen=True)
class Discount:
    """Amounts for one cycle. ``coupon_applied`` is True when the coupon governed the cycle."""

    base_amount: int
    discount_amount: int
    final_amount: int
    coupon_applied: bool = False


def calculate_discount(base_price: int, application: CouponApplication | None) -> Discount:
    """Apply the subscription's current coupon application to ``base_price``.

    Must be called with the pre-decrement ``remaining_months`` of the cycle
    being billed. Percent coupons round the discount down; flat coupons are
    capped at the base price. The final amount is never negative.
    """
    if base_price < 0:
        raise ValueError(f"base price must be non-negative, got {base_price}")

    if application is None or not application.is_active:
        return Discount(base_price, 0, base_price)
    if application.remaining_months is not None and application.remaining_months <= 0:
        return Discount(base_price, 0, base_price)

    coupon = application.coupon
    if coupon.discount_percent > 0:
        discount_amount = base_price * coupon.discount_percent // 100
    elif coupon.flat_discount > 0:
        discount_amount = min(coupon.flat_discount, base_price)
    else:
        discount_amount = 0

    return Discount(
        base_amount=base_price,
        discount_amount=discount_amount,
        final_amount=max(0, base_price - discount_amount),
        coupon_applied=True,
    )
