"""User model: account owner and holder of the encrypted billing key."""

from datetime import datetime

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from billing.utils import now_utc
from .base import Base, UTCDateTime


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    nickname: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # Fernet ciphertext; plaintext only ever lives in the gateway adapter
    billing_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    billing_key_issued_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=now_utc, onupdate=now_utc)

    @property
    def display_name(self) -> str:
        return self.nickname or self.email.split("@")[0]

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r}>"
