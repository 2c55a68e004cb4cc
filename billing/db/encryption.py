"""Billing keys at rest: Fernet ciphertext in the database, plaintext only inside a gateway call.

Rotating FERNET_KEY without re-encrypting leaves old ciphertexts unreadable;
that surfaces as UnreadableBillingKey, a charge error the orchestrator
records like any other failed attempt.
"""

from cryptography.fernet import Fernet, InvalidToken

from billing.config import get_settings
from billing.errors import UnreadableBillingKey


def _get_fernet() -> Fernet:
    return Fernet(get_settings().fernet_key.encode())


def encrypt_billing_key(billing_key: str) -> str:
    return _get_fernet().encrypt(billing_key.encode()).decode()


def decrypt_billing_key(ciphertext: str) -> str:
    """Return the plaintext billing key. The result must never be logged or stored."""
    try:
        return _get_fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        # Message must not echo the ciphertext
        raise UnreadableBillingKey() from None
