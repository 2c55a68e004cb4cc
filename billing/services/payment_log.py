"""Payment lifecycle log: one key=value line per billing event.

Lines go to the ``billing.payments`` logger so operators can route them to
a dedicated handler for reconciliation. Billing keys are never passed here.
"""

import logging
from typing import Any

payment_logger = logging.getLogger("billing.payments")


def _format(event: str, fields: dict[str, Any]) -> str:
    data = ", ".join(f"{k}={v}" for k, v in fields.items() if v is not None)
    return f"{event} - {data}" if data else event


def log_payment_attempt(user_id: int, subscription_id: int, order_id: str, amount: int) -> None:
    payment_logger.info(
        _format(
            "PAYMENT_ATTEMPT",
            {"user_id": user_id, "subscription_id": subscription_id, "order_id": order_id, "amount": amount},
        )
    )


def log_payment_success(
    user_id: int,
    subscription_id: int,
    order_id: str,
    payment_key: str,
    amount: int,
    original_amount: int,
    discount_amount: int,
    coupon_code: str | None = None,
) -> None:
    payment_logger.info(
        _format(
            "PAYMENT_SUCCESS",
            {
                "user_id": user_id,
                "subscription_id": subscription_id,
                "order_id": order_id,
                "payment_key": payment_key,
                "amount": amount,
                "original_amount": original_amount,
                "discount_amount": discount_amount or None,
                "coupon_code": coupon_code,
            },
        )
    )


def log_payment_waived(user_id: int, subscription_id: int, order_id: str, original_amount: int, coupon_code: str) -> None:
    payment_logger.info(
        _format(
            "PAYMENT_WAIVED",
            {
                "user_id": user_id,
                "subscription_id": subscription_id,
                "order_id": order_id,
                "original_amount": original_amount,
                "coupon_code": coupon_code,
            },
        )
    )


def log_payment_failed(user_id: int, subscription_id: int, error_code: str, attempt_number: int) -> None:
    payment_logger.warning(
        _format(
            "PAYMENT_FAILED",
            {
                "user_id": user_id,
                "subscription_id": subscription_id,
                "error": error_code,
                "attempt_number": attempt_number,
            },
        )
    )


def log_job_start(job: str, selected: int) -> None:
    payment_logger.info(_format("BILLING_JOB_START", {"job": job, "selected": selected}))


def log_job_complete(job: str, succeeded: int, failed: int, skipped: int, deferred: int) -> None:
    payment_logger.info(
        _format(
            "BILLING_JOB_COMPLETE",
            {"job": job, "succeeded": succeeded, "failed": failed, "skipped": skipped, "deferred": deferred},
        )
    )


def log_job_error(job: str, message: str) -> None:
    payment_logger.error(_format("BILLING_JOB_ERROR", {"job": job, "message": message}))
