"""Bybit REST tail fetcher.

Fills the part of a window the monthly archives do not cover, using
``GET /v5/market/kline`` (category=linear, interval=5).

Pagination
──────────
Bybit answers newest-first, at most ``limit`` rows per call.  Each request
asks for the page starting at ``cursor``; the next cursor is derived from the
OLDEST row of the page:

    next_cursor = oldest_open_time + rows_in_page × period

The arithmetic lives in next_cursor().

Each page is filtered to [start, end] and upserted before the next call, so
a failure part-way keeps everything already fetched (upserts dedupe on
re-run).

Termination
───────────
• empty page
• no row of the page falls inside [start, end]
• rows processed ≥ expected_candle_count()   (heuristic; exchange downtime
  means fewer rows may exist)
• cursor passed end

Rate limiting
─────────────
RateLimiter spaces calls by period / max_calls measured on a monotonic clock
and sleeps cooperatively; there is no timer thread.  An HTTP 429 (or Bybit
retCode 10006) is a scheduling delay, not an error: the call is retried after
an exponential pause, up to _MAX_RATE_LIMIT_RETRIES times.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Callable

import httpx

from klinestore.config import settings
from klinestore.data.http_client import open_client
from klinestore.data.store import TimeSeriesStore
from klinestore.data.timeframes import BASE_TIMEFRAME, BYBIT_INTERVAL, TF_SECONDS, Kline, _from_epoch
from klinestore.errors import TransportError, ValidationError

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

_KLINE_PATH              = "/v5/market/kline"
_RATE_LIMIT_RET_CODE     = 10006
_MAX_RATE_LIMIT_RETRIES  = 3
_RATE_LIMIT_BASE_SLEEP   = 2.0    # seconds; doubles per retry

SleepFn = Callable[[float], Awaitable[None]]


# ── Rate limiter ──────────────────────────────────────────────────────────────


class RateLimiter:
    """At most *max_calls* per *period_secs*, evenly spaced.

    ``await acquire()`` before each request.  The first call never waits.
    """

    def __init__(
        self,
        max_calls: int,
        period_secs: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if max_calls <= 0 or period_secs <= 0:
            raise ValidationError(f"Invalid rate limit: {max_calls} calls per {period_secs}s")
        self.min_interval = period_secs / max_calls
        self._clock       = clock
        self._sleep       = sleep
        self._last_call: float | None = None

    async def acquire(self) -> None:
        if self._last_call is not None:
            wait = self.min_interval - (self._clock() - self._last_call)
            if wait > 0:
                logger.debug("[Live] Rate limit: sleeping %.2fs", wait)
                await self._sleep(wait)
        self._last_call = self._clock()


# ── Cursor arithmetic ─────────────────────────────────────────────────────────

def next_cursor(oldest_open_time: int, page_count: int, period_secs: int) -> int:
    """Start of the page after one that held *page_count* rows ending (oldest) at *oldest_open_time*."""
    return oldest_open_time + page_count * period_secs


def expected_candle_count(start: int, end: int, period_secs: int) -> int:
    """Approximate number of candles in [start, end]; completion heuristic only."""
    if end <= start:
        return 1
    return math.ceil((end - start) / period_secs)


# ── Payload parsing ───────────────────────────────────────────────────────────

def _parse_row(row: Any) -> Kline:
    """Bybit row: [startMs, open, high, low, close, volume, turnover] as strings."""
    try:
        kline = Kline(
            open_time=int(row[0]) // 1000,
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        )
    except (TypeError, ValueError, IndexError) as exc:
        raise TransportError(f"Malformed kline row from Bybit: {row!r}") from exc

    try:
        kline.validate(BASE_TIMEFRAME)
    except ValidationError as exc:
        raise TransportError(f"Invalid kline row from Bybit: {exc}") from exc
    return kline


# ── LiveFetcher ───────────────────────────────────────────────────────────────


class LiveFetcher:
    """Rate-limited paginated REST fetch of 5m candles into the store."""

    def __init__(
        self,
        store: TimeSeriesStore,
        client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        rate_limiter: RateLimiter | None = None,
        page_limit: int | None = None,
        timeout: float | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._store      = store
        self._client     = client
        self._base_url   = (base_url or settings.bybit_rest_url).rstrip("/")
        self._limiter    = rate_limiter or RateLimiter(settings.live_max_calls_per_minute, 60.0)
        self._page_limit = page_limit or settings.live_page_limit
        self._timeout    = timeout or settings.http_timeout
        self._sleep      = sleep

    async def fetch(self, symbol: str, start: int, end: int) -> int:
        """Fetch [start, end] page by page; return the number of rows stored."""
        if start > end:
            raise ValidationError(
                f"Invalid window: start {_from_epoch(start)} is after end {_from_epoch(end)}"
            )
        period   = TF_SECONDS[BASE_TIMEFRAME]
        expected = expected_candle_count(start, end, period)
        cursor   = start
        processed = 0

        logger.info(
            "[Live] %s %s → %s (~%d candles)",
            symbol, _from_epoch(start), _from_epoch(end), expected,
        )

        async with open_client(self._client, self._timeout) as client:
            while cursor <= end and processed < expected:
                page_end = min(cursor + (self._page_limit - 1) * period, end)
                rows     = await self._get_page(client, symbol, cursor, page_end)
                if not rows:
                    logger.info("[Live] %s: empty page at %s", symbol, _from_epoch(cursor))
                    break

                valid = [k for k in (_parse_row(r) for r in rows) if start <= k.open_time <= end]
                if not valid:
                    logger.info("[Live] %s: no rows in range at %s", symbol, _from_epoch(cursor))
                    break

                self._store.upsert_many(symbol, BASE_TIMEFRAME, valid)
                processed += len(valid)

                oldest = min(k.open_time for k in valid)
                cursor = next_cursor(oldest, len(valid), period)
                logger.debug(
                    "[Live] %s: +%d (total %d/%d), next cursor %s",
                    symbol, len(valid), processed, expected, _from_epoch(cursor),
                )

        logger.info("[Live] %s: stored %d candles", symbol, processed)
        return processed

    async def _get_page(
        self,
        client: httpx.AsyncClient,
        symbol: str,
        cursor: int,
        page_end: int,
    ) -> list[Any]:
        url    = f"{self._base_url}{_KLINE_PATH}"
        params = {
            "category": "linear",
            "symbol":   symbol.upper(),
            "interval": BYBIT_INTERVAL[BASE_TIMEFRAME],
            "start":    str(cursor * 1000),
            "end":      str(page_end * 1000),
            "limit":    str(self._page_limit),
        }

        for attempt in range(_MAX_RATE_LIMIT_RETRIES + 1):
            await self._limiter.acquire()
            try:
                response = await client.get(url, params=params)
            except httpx.RequestError as exc:
                raise TransportError(f"Bybit request failed: {exc}") from exc

            if response.status_code == 429:
                if attempt < _MAX_RATE_LIMIT_RETRIES:
                    await self._backoff(symbol, attempt)
                    continue
                raise TransportError("Bybit rate limit persisted after retries", status_code=429)
            if response.is_error:
                raise TransportError(
                    f"Bybit HTTP {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )

            try:
                data = response.json()
            except ValueError as exc:
                raise TransportError(f"Bybit returned non-JSON body: {response.text[:200]}") from exc
            if not isinstance(data, dict):
                raise TransportError(f"Bybit payload is not an object: {str(data)[:200]}")

            ret_code = data.get("retCode")
            if ret_code == _RATE_LIMIT_RET_CODE and attempt < _MAX_RATE_LIMIT_RETRIES:
                await self._backoff(symbol, attempt)
                continue
            if ret_code != 0:
                raise TransportError(f"Bybit API error: code={ret_code}, msg={data.get('retMsg')}")

            rows = (data.get("result") or {}).get("list")
            if not isinstance(rows, list):
                raise TransportError(f"Bybit payload missing result.list: {str(data)[:200]}")
            return rows

        raise TransportError("Bybit rate limit persisted after retries", status_code=429)

    async def _backoff(self, symbol: str, attempt: int) -> None:
        wait = _RATE_LIMIT_BASE_SLEEP * (2 ** attempt)
        logger.warning("[Live] %s: rate limited, waiting %.1fs", symbol, wait)
        await self._sleep(wait)
