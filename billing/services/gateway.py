"""Payment gateway adapter: charge-by-billing-key against the Toss Payments API."""

import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from billing.config import get_settings
from billing.constants import (
    DEFAULT_PAYMENT_METHOD,
    GATEWAY_STATUS_DONE,
    ORDER_ID_PREFIX,
    PAYMENT_WAIVED,
    WAIVED_KEY_PREFIX,
)
from billing.db.encryption import decrypt_billing_key
from billing.errors import GatewayDeclined, GatewayTimeout, GatewayUnavailable
from billing.http_client import get_http_client
from billing.utils import random_base36

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    """Normalized successful charge, real or waived."""

    payment_key: str
    order_id: str
    amount: int
    method: str
    approved_at: datetime
    waived: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


def generate_order_id(now: datetime) -> str:
    """Unique order id for one attempt, e.g. ``AUTO_1760870400000_k3x9qa``."""
    return f"{ORDER_ID_PREFIX}_{int(now.timestamp() * 1000)}_{random_base36()}"


def _parse_approved_at(value: str | None, fallback: datetime) -> datetime:
    if not value:
        return fallback
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable approvedAt '%s', using attempt time", value)
        return fallback


def _error_body(resp: httpx.Response) -> tuple[str | None, str]:
    """Extract (code, message) from a gateway error response."""
    try:
        data = resp.json()
    except ValueError:
        return None, f"HTTP {resp.status_code}"
    if not isinstance(data, dict):
        return None, f"HTTP {resp.status_code}"
    return data.get("code"), data.get("message") or f"HTTP {resp.status_code}"


class PaymentGateway:
    """Wraps the external charge API. No retries happen here; the retry
    policy runs one billing cycle at a time in the orchestrator.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        secret_key: str | None = None,
    ):
        settings = get_settings() if base_url is None or secret_key is None else None
        self._client = client
        self.base_url = (base_url or settings.gateway_base_url).rstrip("/")
        self._secret_key = secret_key or settings.gateway_secret_key

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or get_http_client()

    def _headers(self) -> dict[str, str]:
        token = base64.b64encode(f"{self._secret_key}:".encode()).decode()
        return {"Authorization": f"Basic {token}", "Content-Type": "application/json"}

    def waive(self, order_id: str, order_name: str, now: datetime) -> ChargeResult:
        """Synthesize a successful zero-amount result without contacting the gateway."""
        return ChargeResult(
            payment_key=f"{WAIVED_KEY_PREFIX}{order_id}",
            order_id=order_id,
            amount=0,
            method=PAYMENT_WAIVED,
            approved_at=now,
            waived=True,
            raw={"orderId": order_id, "orderName": order_name, "status": PAYMENT_WAIVED, "amount": 0},
        )

    async def charge(
        self,
        *,
        billing_key_ciphertext: str,
        customer_key: str,
        amount: int,
        currency: str,
        order_id: str,
        order_name: str,
        customer_email: str,
        customer_name: str,
        now: datetime,
    ) -> ChargeResult:
        """Charge the stored billing key.

        Raises GatewayDeclined, GatewayTimeout, GatewayUnavailable or
        UnreadableBillingKey.
        """
        payload = {
            "customerKey": customer_key,
            "amount": amount,
            "currency": currency,
            "orderId": order_id,
            "orderName": order_name,
            "customerEmail": customer_email,
            "customerName": customer_name,
        }

        # Plaintext key lives only for the duration of this call
        url = f"{self.base_url}/billing/{decrypt_billing_key(billing_key_ciphertext)}"
        try:
            resp = await self.client.post(url, json=payload, headers=self._headers())
        except httpx.TimeoutException:
            logger.warning("Gateway timeout for order %s", order_id)
            raise GatewayTimeout() from None
        except httpx.HTTPError as e:
            # The request URL carries the billing key; report the error type only
            logger.warning("Gateway transport error for order %s: %s", order_id, type(e).__name__)
            raise GatewayUnavailable(f"{type(e).__name__} contacting payment gateway") from None

        if resp.status_code >= 500 or resp.status_code == 429:
            code, message = _error_body(resp)
            logger.warning("Gateway unavailable for order %s: HTTP %s %s", order_id, resp.status_code, code)
            raise GatewayUnavailable(message, code=code)
        if resp.status_code >= 400:
            code, message = _error_body(resp)
            logger.info("Gateway declined order %s: %s", order_id, code)
            raise GatewayDeclined(message, code=code)

        data = resp.json()
        return ChargeResult(
            payment_key=data["paymentKey"],
            order_id=data.get("orderId", order_id),
            amount=int(data.get("totalAmount", data.get("amount", amount))),
            method=data.get("method") or DEFAULT_PAYMENT_METHOD,
            approved_at=_parse_approved_at(data.get("approvedAt"), now),
            raw=data,
        )

    async def lookup_order(self, order_id: str, now: datetime) -> ChargeResult | None:
        """Return the completed payment for ``order_id``, or None if the gateway has none.

        Used to reconcile an attempt whose outcome was never recorded.
        """
        url = f"{self.base_url}/payments/orders/{order_id}"
        try:
            resp = await self.client.get(url, headers=self._headers())
        except httpx.TimeoutException:
            raise GatewayTimeout(f"Timed out looking up order {order_id}") from None
        except httpx.HTTPError as e:
            raise GatewayUnavailable(f"{type(e).__name__} looking up order {order_id}") from None

        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            code, message = _error_body(resp)
            raise GatewayUnavailable(message, code=code)

        data = resp.json()
        if data.get("status") != GATEWAY_STATUS_DONE:
            logger.info("Order %s found with status %s, treating as not charged", order_id, data.get("status"))
            return None
        return ChargeResult(
            payment_key=data["paymentKey"],
            order_id=order_id,
            amount=int(data.get("totalAmount", data.get("amount", 0))),
            method=data.get("method") or DEFAULT_PAYMENT_METHOD,
            approved_at=_parse_approved_at(data.get("approvedAt"), now),
            raw=data,
        )
