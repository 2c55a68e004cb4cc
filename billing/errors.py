"""Billing error taxonomy."""


class BillingError(Exception):
    """Base class for billing engine errors."""


class ChargeError(BillingError):
    """A billing attempt that did not produce a charge.

    ``code`` is machine-readable; ``retryable`` tells whether the failure
    counts toward the grace-period retry budget rather than being a
    permanent refusal.
    """

    code = "CHARGE_ERROR"
    retryable = True

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NoPaymentMethod(ChargeError):
    """The subscriber has no stored billing key."""

    code = "NO_PAYMENT_METHOD"
    retryable = False

    def __init__(self, message: str = "No billing key registered for user"):
        super().__init__(message)


class GatewayDeclined(ChargeError):
    """The gateway answered and refused the charge."""

    code = "GATEWAY_DECLINED"


class GatewayTimeout(ChargeError):
    """The gateway did not answer in time. The charge may or may not have happened."""

    code = "GATEWAY_TIMEOUT"

    def __init__(self, message: str = "Payment gateway timed out"):
        super().__init__(message)


class GatewayUnavailable(ChargeError):
    """Transport error or 5xx from the gateway."""

    code = "GATEWAY_UNAVAILABLE"


class UnreadableBillingKey(ChargeError):
    """The stored billing key cannot be decrypted with the current FERNET_KEY."""

    code = "BILLING_KEY_UNREADABLE"
    retryable = False

    def __init__(self, message: str = "Stored billing key cannot be decrypted"):
        super().__init__(message)


class LedgerWriteFailed(BillingError):
    """The success unit of work could not be committed."""


class InvalidTransition(BillingError):
    """A state transition was requested from a state that does not allow it."""


class CouponError(BillingError):
    """A coupon could not be applied to a subscription."""
