"""Shared httpx.AsyncClient for connection pooling to the payment gateway."""

import httpx

from billing.config import get_settings

_client: httpx.AsyncClient | None = None


def _build_client() -> httpx.AsyncClient:
    settings = get_settings()
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            settings.gateway_timeout_seconds,
            connect=settings.gateway_connect_timeout_seconds,
        )
    )


def get_http_client() -> httpx.AsyncClient:
    """Return the shared httpx.AsyncClient. Falls back to creating one if not initialized."""
    global _client
    if _client is None:
        _client = _build_client()
    return _client


async def init_http_client() -> None:
    """Initialize the shared client. Call during worker/app startup."""
    global _client
    _client = _build_client()


async def close_http_client() -> None:
    """Close the shared client. Call during shutdown."""
    global _client
    if _client:
        await _client.aclose()
        _client = None
