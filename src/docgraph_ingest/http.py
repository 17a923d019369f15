from __future__ import annotations

import httpx
from tenacity import wait_exponential, wait_random
from tenacity.wait import wait_base

CHAIN_HEADERS = {"Accept": "application/json", "Content-Type": "application/json"}


def chain_timeout(seconds: float) -> httpx.Timeout:
    # Table lookups are point queries; a stalled node should fail into a retry.
    return httpx.Timeout(seconds, connect=min(seconds, 5.0))


def chain_client(
    endpoint: str,
    *,
    timeout: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """One client per resolver; lookups for concurrent events share its pool."""
    return httpx.AsyncClient(
        base_url=endpoint,
        headers=CHAIN_HEADERS,
        timeout=chain_timeout(timeout),
        limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        transport=transport,
    )


def backoff(initial: float, maximum: float) -> wait_base:
    """Exponential wait from `initial` up to `maximum`, plus up to `initial` of jitter."""
    return wait_exponential(multiplier=initial, max=maximum) + wait_random(0, initial)
