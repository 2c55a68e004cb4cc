"""Discount coupons and their per-subscription applications."""

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing.utils import now_utc
from .base import Base, UTCDateTime


class DiscountCoupon(Base):
    __tablename__ = "discount_coupons"
    __table_args__ = (
        CheckConstraint(
            "discount_percent >= 0 AND discount_percent <= 100",
            name="ck_discount_coupons_percent_range",
        ),
        CheckConstraint(
            "(discount_percent > 0 AND flat_discount = 0) OR (discount_percent = 0 AND flat_discount > 0)",
            name="ck_discount_coupons_one_discount",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    discount_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    flat_discount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # minor units
    deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    recurring_months: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = unlimited
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=now_utc)

    def __repr__(self) -> str:
        return (
            f"<DiscountCoupon code={self.code!r} percent={self.discount_percent} "
            f"flat={self.flat_discount} months={self.recurring_months}>"
        )


class CouponApplication(Base):
    __tablename__ = "coupon_applications"
    __table_args__ = (
        # At most one active application per subscription
        Index(
            "uq_coupon_applications_one_active",
            "subscription_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int] = mapped_column(ForeignKey("subscriptions.id"), nullable=False, index=True)
    coupon_id: Mapped[int] = mapped_column(ForeignKey("discount_coupons.id"), nullable=False)
    applied_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remaining_months: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=now_utc, onupdate=now_utc)

    coupon: Mapped[DiscountCoupon] = relationship(lazy="selectin")

    def __repr__(self) -> str:
        return (
            f"<CouponApplication id={self.id} subscription_id={self.subscription_id} "
            f"remaining={self.remaining_months} active={self.is_active}>"
        )
