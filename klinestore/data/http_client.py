from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx

_HEADERS = {
    "User-Agent": "klinestore/0.1",
    "Accept":     "application/json, application/gzip, */*",
}


@asynccontextmanager
async def open_client(
    client: httpx.AsyncClient | None,
    timeout: float,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield *client* unchanged, or a short-lived AsyncClient when it is None.

    An injected client is owned by the caller and is not closed here.
    """
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(
        headers=_HEADERS,
        follow_redirects=True,
        timeout=timeout,
    ) as owned:
        yield owned
