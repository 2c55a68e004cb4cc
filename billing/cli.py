"""Typer CLI for the billing engine, the entry point for an external cron."""

import asyncio
import logging
from pathlib import Path
from typing import Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from .utils import setup_logging

# Load .env from project directory only
_env_path = Path(__file__).parent.parent / ".env"
load_dotenv(_env_path, override=False)

# CLI styles
STYLE_HEADER = "bold blue"
STYLE_SUCCESS = "bold green"
STYLE_WARNING = "bold yellow"
STYLE_ERROR = "bold red"

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="billing",
    help="Recurring Billing Engine - run renewal, retry, notification and expiration passes.",
    add_completion=False,
)
console = Console()

VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")]


async def _with_resources(coro_factory):
    """Run a pass with the shared HTTP client and DB engine, closing both afterwards."""
    from .db.session import dispose_engine
    from .http_client import close_http_client, init_http_client

    await init_http_client()
    try:
        return await coro_factory()
    finally:
        await close_http_client()
        await dispose_engine()


def _print_report(summary: dict) -> None:
    table = Table(title=f"{summary['job'].title()} pass", header_style=STYLE_HEADER)
    table.add_column("Selected", justify="right")
    table.add_column("Succeeded", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Skipped", justify="right")
    table.add_column("Deferred", justify="right", style="yellow")
    table.add_row(
        str(summary["selected"]),
        str(summary["succeeded"]),
        str(summary["failed"]),
        str(summary["skipped"]),
        str(summary["deferred"]),
    )
    console.print(table)


@app.command()
def renew(verbose: VerboseOption = False) -> None:
    """Charge every subscription due for renewal (plus grace-period retries)."""
    from .scheduler_tasks import run_renewal_pass

    setup_logging(verbose)
    summary = asyncio.run(_with_resources(lambda: run_renewal_pass({})))
    _print_report(summary)
    if summary["failed"]:
        console.print(f"[{STYLE_WARNING}]{summary['failed']} subscription(s) failed this pass[/{STYLE_WARNING}]")


@app.command()
def retry(verbose: VerboseOption = False) -> None:
    """Re-attempt only subscriptions in their grace period."""
    from .scheduler_tasks import run_retry_pass

    setup_logging(verbose)
    summary = asyncio.run(_with_resources(lambda: run_retry_pass({})))
    _print_report(summary)


@app.command()
def reconcile(verbose: VerboseOption = False) -> None:
    """Settle timed-out orders on cancelled or lapsed subscriptions."""
    from .scheduler_tasks import run_reconcile_pass

    setup_logging(verbose)
    summary = asyncio.run(_with_resources(lambda: run_reconcile_pass({})))
    _print_report(summary)


@app.command()
def notify(verbose: VerboseOption = False) -> None:
    """Deliver queued billing notifications."""
    from .scheduler_tasks import run_notification_pass

    setup_logging(verbose)
    sent = asyncio.run(_with_resources(lambda: run_notification_pass({})))
    console.print(f"[{STYLE_SUCCESS}]Delivered {sent} notification(s)[/{STYLE_SUCCESS}]")


@app.command()
def expire(verbose: VerboseOption = False) -> None:
    """Mark lapsed, non-renewing subscriptions as expired."""
    from .scheduler_tasks import run_expiration_pass

    setup_logging(verbose)
    expired = asyncio.run(_with_resources(lambda: run_expiration_pass({})))
    console.print(f"[{STYLE_SUCCESS}]Expired {expired} subscription(s)[/{STYLE_SUCCESS}]")


@app.command("init-db")
def init_db() -> None:
    """Create tables directly (SQLite dev databases; PostgreSQL uses Alembic)."""
    from .config import get_settings
    from .db.session import dispose_engine, get_engine
    from .models import Base

    if not get_settings().database_url.startswith("sqlite"):
        console.print(f"[{STYLE_ERROR}]init-db is for SQLite only; run `alembic upgrade head`[/{STYLE_ERROR}]")
        raise typer.Exit(1)

    async def _create() -> None:
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await dispose_engine()

    asyncio.run(_create())
    console.print(f"[{STYLE_SUCCESS}]Database tables created[/{STYLE_SUCCESS}]")


if __name__ == "__main__":
    app()
