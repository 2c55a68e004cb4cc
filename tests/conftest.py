"""Shared test configuration and fixtures.

Each test gets its own file-backed SQLite database under tmp_path, so the
billing service can open as many sessions as it likes (claims, ledger
writes, concurrent passes) against a real database.
"""

import asyncio
import os
import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta

from cryptography.fernet import Fernet

# Settings are cached on first use, so the environment must be ready before any billing import
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("FERNET_KEY", Fernet.generate_key().decode())
os.environ.setdefault("GATEWAY_SECRET_KEY", "test_sk_billing")
os.environ.setdefault("DATABASE_URL", "sqlite:///./data/test-billing.db")
os.environ.setdefault("RESEND_API_KEY", "")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.db.encryption import decrypt_billing_key, encrypt_billing_key
from billing.db.session import build_engine, build_session_factory
from billing.errors import ChargeError
from billing.models import Base
from billing.models.coupon import DiscountCoupon
from billing.models.plan import Plan
from billing.models.user import User
from billing.services.billing_service import BillingService
from billing.services.coupon_service import create_subscription
from billing.services.gateway import ChargeResult, PaymentGateway

START = datetime(2026, 1, 1, 0, 5, tzinfo=UTC)


class FrozenClock:
    """Injectable clock that only moves when a test says so."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeGateway(PaymentGateway):
    """In-memory gateway: records charges and fails on demand.

    ``failures`` is consumed one entry per charge; ``None`` means succeed.
    An exception with ``completed=True`` semantics can be simulated with
    ``charge_then_raise``, which books the order before raising.
    """

    def __init__(self):
        super().__init__(base_url="http://gateway.test/v1", secret_key="test_sk_billing")
        self.charges: list[dict] = []
        self.failures: list[Exception | None] = []
        self.always_fail: Exception | None = None
        self.charge_then_raise: Exception | None = None
        self.delay: float = 0.0
        self.on_charge: Callable[[dict], None] | None = None
        self.completed: dict[str, ChargeResult] = {}
        self.lookup_error: ChargeError | None = None
        self.lookups: list[str] = []

    async def charge(self, *, billing_key_ciphertext, customer_key, amount, currency, order_id,
                     order_name, customer_email, customer_name, now) -> ChargeResult:
        call = {
            "billing_key": decrypt_billing_key(billing_key_ciphertext),
            "customer_key": customer_key,
            "amount": amount,
            "currency": currency,
            "order_id": order_id,
            "order_name": order_name,
            "customer_email": customer_email,
        }
        self.charges.append(call)
        if self.on_charge is not None:
            self.on_charge(call)
        if self.delay:
            await asyncio.sleep(self.delay)

        error = self.failures.pop(0) if self.failures else self.always_fail
        if error is not None:
            raise error

        result = ChargeResult(
            payment_key=f"pay_{uuid.uuid4().hex[:12]}",
            order_id=order_id,
            amount=amount,
            method="CARD",
            approved_at=now,
            raw={"orderId": order_id, "status": "DONE", "totalAmount": amount},
        )
        self.completed[order_id] = result
        if self.charge_then_raise is not None:
            error, self.charge_then_raise = self.charge_then_raise, None
            raise error
        return result

    async def lookup_order(self, order_id: str, now: datetime) -> ChargeResult | None:
        self.lookups.append(order_id)
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.completed.get(order_id)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path}/billing.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Billing collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def service(session_factory, gateway, clock) -> BillingService:
    return BillingService(
        session_factory,
        gateway,
        clock=clock,
        max_concurrency=5,
        lock_lease_seconds=600,
        commit_timeout=5.0,
    )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(db_session):
    async def _make(billing_key: str | None = "bk_test_card", nickname: str | None = "Reader") -> User:
        user = User(
            email=f"user-{uuid.uuid4().hex[:8]}@test.com",
            nickname=nickname,
            billing_key=encrypt_billing_key(billing_key) if billing_key else None,
            billing_key_issued_at=START if billing_key else None,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest.fixture
def make_plan(db_session):
    async def _make(price: int = 10000, duration: int = 30, name: str = "Premium Monthly") -> Plan:
        plan = Plan(name=name, price=price, duration=duration, currency="KRW")
        db_session.add(plan)
        await db_session.commit()
        return plan

    return _make


@pytest.fixture
def make_coupon(db_session):
    async def _make(
        code: str | None = None,
        percent: int = 0,
        flat: int = 0,
        months: int | None = None,
        deadline: datetime | None = None,
        is_active: bool = True,
    ) -> DiscountCoupon:
        coupon = DiscountCoupon(
            code=code or f"C{uuid.uuid4().hex[:6].upper()}",
            discount_percent=percent,
            flat_discount=flat,
            recurring_months=months,
            deadline=deadline or START + timedelta(days=365),
            is_active=is_active,
        )
        db_session.add(coupon)
        await db_session.commit()
        return coupon

    return _make


@pytest.fixture
def make_subscription(db_session, make_user, make_plan, clock):
    """Create user + plan + subscription due now, optionally with a coupon."""

    async def _make(
        price: int = 10000,
        duration: int = 30,
        coupon_code: str | None = None,
        billing_key: str | None = "bk_test_card",
        user: User | None = None,
        plan: Plan | None = None,
    ):
        user = user or await make_user(billing_key=billing_key)
        plan = plan or await make_plan(price=price, duration=duration)
        return await create_subscription(db_session, user, plan, clock(), coupon_code=coupon_code)

    return _make
