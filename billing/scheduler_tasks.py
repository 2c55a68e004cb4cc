"""Scheduler tasks: the batch passes run by the worker cron and the CLI."""

import logging
from datetime import timedelta
from typing import Any

from arq import ArqRedis

from billing.config import get_settings
from billing.db.session import get_session_factory
from billing.services.billing_service import BillingRunReport, BillingService
from billing.services.expiration_service import expire_lapsed_subscriptions
from billing.services.gateway import PaymentGateway
from billing.services.notification_service import dispatch_pending_notifications
from billing.services.payment_log import log_job_error
from billing.utils import Clock, now_utc

logger = logging.getLogger(__name__)


def build_billing_service(clock: Clock = now_utc) -> BillingService:
    return BillingService(get_session_factory(), PaymentGateway(), clock=clock)


def report_summary(report: BillingRunReport) -> dict[str, Any]:
    return {
        "job": report.job,
        "selected": report.selected,
        "succeeded": report.succeeded,
        "failed": report.failed,
        "skipped": report.skipped,
        "deferred": report.deferred,
    }


async def _enqueue_dispatch(ctx: dict) -> None:
    """Kick notification delivery right after a billing pass committed its outbox rows."""
    redis: ArqRedis | None = ctx.get("redis")
    if redis:
        await redis.enqueue_job("dispatch_notifications_job")


async def run_renewal_pass(ctx: dict, clock: Clock = now_utc) -> dict[str, Any]:
    """Bill every subscription due now, within the job's time budget."""
    deadline = clock() + timedelta(seconds=get_settings().billing_job_budget_seconds)
    service = build_billing_service(clock)
    try:
        report = await service.process_due_subscriptions(deadline=deadline)
    except Exception as e:
        log_job_error("renewal", str(e))
        raise
    await _enqueue_dispatch(ctx)
    logger.info(
        "Renewal pass: %d selected, %d succeeded, %d failed, %d deferred",
        report.selected, report.succeeded, report.failed, report.deferred,
    )
    return report_summary(report)


async def run_retry_pass(ctx: dict, clock: Clock = now_utc) -> dict[str, Any]:
    """Re-attempt subscriptions in their grace period."""
    deadline = clock() + timedelta(seconds=get_settings().billing_job_budget_seconds)
    service = build_billing_service(clock)
    try:
        report = await service.retry_failed_payments(deadline=deadline)
    except Exception as e:
        log_job_error("retry", str(e))
        raise
    await _enqueue_dispatch(ctx)
    logger.info(
        "Retry pass: %d selected, %d recovered, %d failed, %d deferred",
        report.selected, report.succeeded, report.failed, report.deferred,
    )
    return report_summary(report)


async def run_reconcile_pass(ctx: dict, clock: Clock = now_utc) -> dict[str, Any]:
    """Settle unconfirmed orders left on cancelled or lapsed subscriptions."""
    deadline = clock() + timedelta(seconds=get_settings().billing_job_budget_seconds)
    service = build_billing_service(clock)
    try:
        report = await service.reconcile_stranded_orders(deadline=deadline)
    except Exception as e:
        log_job_error("reconcile", str(e))
        raise
    await _enqueue_dispatch(ctx)
    if report.selected:
        logger.info("Reconcile pass: %d selected, %d recorded, %d failed", report.selected, report.succeeded, report.failed)
    return report_summary(report)


async def run_notification_pass(ctx: dict, clock: Clock = now_utc) -> int:
    return await dispatch_pending_notifications(get_session_factory(), clock())


async def run_expiration_pass(ctx: dict, clock: Clock = now_utc) -> int:
    return await expire_lapsed_subscriptions(get_session_factory(), clock())
