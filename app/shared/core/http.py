"""
Shared async HTTP client for outbound webhooks.

One httpx.AsyncClient per worker process keeps connection pools bounded.
"""

from typing import Optional
import httpx
import structlog

logger = structlog.get_logger()

_client: Optional[httpx.AsyncClient] = None

USER_AGENT = "Costwatch-Notifier/0.1"


def _build_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout, connect=5.0),
        limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
        headers={"User-Agent": USER_AGENT},
    )


def get_http_client(timeout: float = 10.0) -> httpx.AsyncClient:
    """Return the process-wide client, creating it lazily."""
    global _client
    if _client is None or _client.is_closed:
        logger.debug("http_client_lazy_initialized", timeout=timeout)
        _client = _build_client(timeout)
    return _client


async def close_http_client() -> None:
    """Close the process-wide client, flushing its connection pool."""
    global _client
    if _client is not None:
        await _client.aclose()
        logger.info("http_client_closed")
    _client = None
