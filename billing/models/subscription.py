"""Subscription model: recurring billing state per user and plan."""

from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing.constants import RECURRING_ACTIVE, SUBSCRIPTION_ACTIVE
from billing.utils import now_utc
from .base import Base, UTCDateTime


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_billing_due", "recurring_status", "next_billing_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("plans.id"), nullable=False)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default=SUBSCRIPTION_ACTIVE)
    recurring_status: Mapped[str] = mapped_column(String(32), nullable=False, default=RECURRING_ACTIVE)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    start_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    next_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_failure_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    grace_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Claim lease held from claim until the ledger transaction commits
    billing_lock_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Order id of an in-flight or unconfirmed charge, reconciled before the next charge
    pending_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=now_utc, onupdate=now_utc)

    user: Mapped["User"] = relationship(lazy="selectin")
    plan: Mapped["Plan"] = relationship(lazy="selectin")

    def __repr__(self) -> str:
        return (
            f"<Subscription id={self.id} user_id={self.user_id} "
            f"recurring_status={self.recurring_status} failed_attempts={self.failed_attempts}>"
        )
