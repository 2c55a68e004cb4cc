"""Plan model: price and renewal period of a subscription product."""

from datetime import datetime

from sqlalchemy import CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from billing.utils import now_utc
from .base import Base, UTCDateTime


class Plan(Base):
    __tablename__ = "plans"
    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_plans_price_non_negative"),
        CheckConstraint("duration > 0", name="ck_plans_duration_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)  # minor currency units
    duration: Mapped[int] = mapped_column(Integer, nullable=False)  # days
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KRW")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=now_utc)

    def __repr__(self) -> str:
        return f"<Plan id={self.id} name={self.name!r} price={self.price} duration={self.duration}>"
