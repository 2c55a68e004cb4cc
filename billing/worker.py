"""ARQ worker: scheduled billing passes and notification delivery."""

import logging

from arq import cron
from arq.connections import RedisSettings

from billing.config import get_settings
from billing.constants import ARQ_JOB_TIMEOUT, ARQ_MAX_JOBS

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:
    from billing.http_client import init_http_client
    from billing.utils import setup_logging

    setup_logging(get_settings().debug)
    await init_http_client()


async def shutdown(ctx: dict) -> None:
    from billing.db.session import dispose_engine
    from billing.http_client import close_http_client

    await close_http_client()
    await dispose_engine()


async def renewal_pass(ctx: dict) -> dict:
    """Cron job: daily, bill subscriptions due for renewal."""
    from billing.scheduler_tasks import run_renewal_pass

    return await run_renewal_pass(ctx)


async def retry_pass(ctx: dict) -> dict:
    """Cron job: every 6 hours, retry subscriptions in their grace period."""
    from billing.scheduler_tasks import run_retry_pass

    return await run_retry_pass(ctx)


async def reconcile_pass(ctx: dict) -> dict:
    """Cron job: hourly, settle timed-out orders no billing pass will retry."""
    from billing.scheduler_tasks import run_reconcile_pass

    return await run_reconcile_pass(ctx)


async def notification_pass(ctx: dict) -> int:
    """Cron job: every 5 minutes, deliver queued billing notifications."""
    from billing.scheduler_tasks import run_notification_pass

    return await run_notification_pass(ctx)


async def expiration_pass(ctx: dict) -> int:
    """Cron job: daily at 00:00 KST, expire lapsed subscriptions."""
    from billing.scheduler_tasks import run_expiration_pass

    return await run_expiration_pass(ctx)


async def dispatch_notifications_job(ctx: dict) -> int:
    """ARQ job: deliver notifications queued by a billing pass that just finished."""
    from billing.scheduler_tasks import run_notification_pass

    sent = await run_notification_pass(ctx)
    logger.info(f"Post-billing notification dispatch sent {sent}")
    return sent


class WorkerSettings:
    """ARQ worker configuration."""

    functions = [dispatch_notifications_job]
    cron_jobs = [
        cron(renewal_pass, hour={0}, minute=5),  # 09:05 KST
        cron(retry_pass, hour={3, 9, 15, 21}, minute=30),
        cron(reconcile_pass, minute=45),
        cron(notification_pass, minute=set(range(0, 60, 5))),
        cron(expiration_pass, hour={15}, minute=0),  # 00:00 KST
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)

    max_jobs = ARQ_MAX_JOBS
    job_timeout = ARQ_JOB_TIMEOUT
