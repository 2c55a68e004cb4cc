"""Email delivery via Resend API."""

import asyncio
import logging

import resend

from billing.config import get_settings

logger = logging.getLogger(__name__)


async def send_billing_email(
    to_email: str,
    subject: str,
    html_body: str,
) -> bool:
    """Send a billing notification email via Resend.

    Returns True on success, False on failure.
    """
    settings = get_settings()
    if not settings.resend_api_key:
        logger.warning("Resend API key not configured, skipping email")
        return False

    resend.api_key = settings.resend_api_key
    try:
        await asyncio.to_thread(
            resend.Emails.send,
            {
                "from": settings.email_from,
                "to": [to_email],
                "subject": subject,
                "html": html_body,
            },
        )
        logger.info("Billing email sent to user address (subject=%r)", subject)
        return True
    except Exception as e:
        logger.error("Failed to send billing email: %s", e)
        return False
