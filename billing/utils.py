"""Shared utility functions for the billing engine."""

import logging
import random
import string
from collections.abc import Callable
from datetime import datetime, UTC

Clock = Callable[[], datetime]

_BASE36 = string.digits + string.ascii_lowercase


def now_utc() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def random_base36(length: int = 6) -> str:
    """Random lowercase base36 suffix used in order identifiers."""
    return "".join(random.choices(_BASE36, k=length))


def setup_logging(verbose: bool = False) -> None:
    """
    Configure logging for the worker and CLI.

    Args:
        verbose: If True, set DEBUG level; otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # httpx logs full request URLs at INFO, and charge URLs contain the billing key
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
