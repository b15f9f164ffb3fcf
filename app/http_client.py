"""Shared HTTP client construction — connection pooling for all outbound requests.

Clients are built once in the app lifespan (app/main.py), stored on
app.state and closed on shutdown. Gateway, LLM and search wrappers receive
the client they should use instead of importing a module-level singleton.

Per-request timeout overrides via client.get(url, timeout=8).

Usage:
    client = build_client()
    scraper = build_client(follow_redirects=True)
    ...
    await close_clients(client, scraper)
"""

import httpx
from loguru import logger

_LIMITS = httpx.Limits(
    max_connections=50,
    max_keepalive_connections=20,
    keepalive_expiry=30,
)

DEFAULT_HEADERS = {"User-Agent": "Mozilla/5.0 (compatible; ProcureDesk/1.0)"}


def build_client(*, follow_redirects: bool = False, timeout: float = 30) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=timeout,
        limits=_LIMITS,
        follow_redirects=follow_redirects,
        headers=DEFAULT_HEADERS,
    )


async def close_clients(*clients: httpx.AsyncClient) -> None:
    """Shut down clients. Call from app lifespan shutdown."""
    for client in clients:
        try:
            await client.aclose()
        except RuntimeError:
            logger.debug("HTTP client already closed")
