import logging

import httpx

from backend.idx.config import HTTP_DEBUG, HTTP_PROXY_URL


def new_client(timeout: float = 15.0, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """
    Create a configured AsyncClient for place lookups with optional proxy and debug logging.
    Uses a small connection pool and retries for transient network errors.
    """
    if HTTP_DEBUG:
        logging.getLogger("httpx").setLevel(logging.DEBUG)

    limits = httpx.Limits(max_keepalive_connections=5, max_connections=10)
    if transport is None:
        transport = httpx.AsyncHTTPTransport(retries=2, limits=limits, proxy=HTTP_PROXY_URL or None)
    return httpx.AsyncClient(
        timeout=timeout,
        headers={
            "User-Agent": "idx-pipeline/0.1 (+property enrichment)",
            "Accept": "application/json",
            "Accept-Language": "en-US,en;q=0.9",
        },
        follow_redirects=True,
        transport=transport,
    )
