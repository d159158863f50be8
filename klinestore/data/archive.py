"""Bybit monthly archive fetcher.

Bybit publishes one gzip-compressed CSV per (symbol, month) of 5-minute
candles under ``kline_for_metatrader4``:

    {base}/{SYM}/{YYYY}/{SYM}_5_{YYYY}-{MM}-01_{YYYY}-{MM}-{last}.csv.gz

Each row is ``YYYY.MM.DD HH:MM,open,high,low,close,volume`` in UTC, no header.

Pipeline per month
──────────────────

  download (httpx stream) ──▶ tmp/<file>.csv.gz
        │
        ▼
  gzip.open + csv.reader ──▶ parse_archive_row() ──▶ keep [start, end)
        │
        ▼
  TimeSeriesStore.upsert_many() every ARCHIVE_BATCH_SIZE rows

The month is never held in memory; at most one batch of parsed rows is.
The temporary directory is removed on every exit path.

Failure policy
──────────────
HTTP 404         : the archive is not published yet (current month, or a
                   symbol that did not trade then).  Logged, returns None so
                   the orchestrator falls back to the live fetcher.
other HTTP/network: TransportError.
bad row          : ParseError with the archive URL and line number.  The
                   month is aborted; rows already flushed stay stored.
"""
from __future__ import annotations

import calendar
import csv
import gzip
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

import httpx

from klinestore.config import settings
from klinestore.data.http_client import open_client
from klinestore.data.store import TimeSeriesStore
from klinestore.data.timeframes import BASE_TIMEFRAME, Kline, _from_epoch, _to_epoch, validate_window
from klinestore.errors import ParseError, TransportError, ValidationError

logger = logging.getLogger(__name__)

_ROW_TIME_FORMAT = "%Y.%m.%d %H:%M"
_DOWNLOAD_CHUNK  = 1024 * 1024


# ── URL / calendar helpers ────────────────────────────────────────────────────

def month_ranges(start: int, end: int) -> list[tuple[int, int]]:
    """Return every (year, month) touched by the half-open window [start, end)."""
    validate_window(start, end)
    first = datetime.fromtimestamp(start, tz=timezone.utc)
    last  = datetime.fromtimestamp(end - 1, tz=timezone.utc)

    months: list[tuple[int, int]] = []
    year, month = first.year, first.month
    while (year, month) <= (last.year, last.month):
        months.append((year, month))
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return months


def archive_url(symbol: str, year: int, month: int, base_url: str | None = None) -> str:
    sym      = symbol.upper()
    last_day = calendar.monthrange(year, month)[1]
    base     = (base_url or settings.bybit_archive_url).rstrip("/")
    return (
        f"{base}/{sym}/{year:04d}/"
        f"{sym}_5_{year:04d}-{month:02d}-01_{year:04d}-{month:02d}-{last_day:02d}.csv.gz"
    )


def parse_archive_row(row: Sequence[str], source: str, line: int) -> Kline:
    """Convert one archive CSV row to a validated 5m Kline.

    Raises ParseError for short rows, unparseable fields, off-boundary
    timestamps and inconsistent OHLCV values.
    """
    if len(row) < 6:
        raise ParseError(source, line, f"expected 6 fields, got {len(row)}")
    try:
        dt = datetime.strptime(row[0].strip(), _ROW_TIME_FORMAT).replace(tzinfo=timezone.utc)
        kline = Kline(
            open_time=_to_epoch(dt),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        )
    except ValueError as exc:
        raise ParseError(source, line, str(exc)) from exc

    try:
        kline.validate(BASE_TIMEFRAME)
    except ValidationError as exc:
        raise ParseError(source, line, str(exc)) from exc
    return kline


# ── ArchiveFetcher ────────────────────────────────────────────────────────────


class ArchiveFetcher:
    """Streams monthly archive files into the store.

    Parameters
    ----------
    store      : destination store.
    client     : optional shared httpx.AsyncClient (tests pass one built on
                 httpx.MockTransport).  When omitted a client is opened per
                 month.
    base_url   : archive root, defaults to ``settings.bybit_archive_url``.
    batch_size : rows per upsert_many() call.
    """

    def __init__(
        self,
        store: TimeSeriesStore,
        client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        batch_size: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self._store      = store
        self._client     = client
        self._base_url   = base_url or settings.bybit_archive_url
        self._batch_size = batch_size or settings.archive_batch_size
        self._timeout    = timeout or settings.http_timeout

    async def fetch(self, symbol: str, start: int, end: int) -> int | None:
        """Load every month spanned by [start, end); return the latest open_time stored."""
        latest: int | None = None
        for year, month in month_ranges(start, end):
            last = await self.fetch_month(symbol, (year, month), start, end)
            if last is not None and (latest is None or last > latest):
                latest = last
        return latest

    async def fetch_month(
        self,
        symbol: str,
        month: tuple[int, int],
        start: int,
        end: int,
    ) -> int | None:
        """Download, parse and store one month, keeping rows in [start, end).

        Returns the last open_time stored, or None when the archive does not
        exist or holds no rows inside the window.
        """
        year, mon = month
        url = archive_url(symbol, year, mon, self._base_url)

        with tempfile.TemporaryDirectory(prefix="klinestore-archive-") as tmp:
            path = Path(tmp) / url.rsplit("/", 1)[-1]
            if not await self._download(url, path):
                return None
            return self._load(symbol, path, url, start, end)

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _download(self, url: str, dest: Path) -> bool:
        """Stream *url* to *dest*.  Returns False when the archive is missing."""
        logger.info("[Archive] GET %s", url)
        try:
            async with open_client(self._client, self._timeout) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code == 404:
                        logger.warning("[Archive] Not published: %s", url)
                        return False
                    if response.is_error:
                        raise TransportError(
                            f"Archive download failed: HTTP {response.status_code} for {url}",
                            status_code=response.status_code,
                        )
                    with dest.open("wb") as fh:
                        async for chunk in response.aiter_bytes(_DOWNLOAD_CHUNK):
                            fh.write(chunk)
        except httpx.RequestError as exc:
            raise TransportError(f"Archive download failed for {url}: {exc}") from exc
        return True

    def _load(self, symbol: str, path: Path, source: str, start: int, end: int) -> int | None:
        batch:   list[Kline] = []
        last:    int | None  = None
        written: int         = 0
        line_no: int         = 0

        try:
            with gzip.open(path, "rt", encoding="utf-8", newline="") as fh:
                for line_no, row in enumerate(csv.reader(fh), start=1):
                    if not row or not "".join(row).strip():
                        continue
                    kline = parse_archive_row(row, source, line_no)
                    if kline.open_time < start or kline.open_time >= end:
                        continue
                    batch.append(kline)
                    if last is None or kline.open_time > last:
                        last = kline.open_time
                    if len(batch) >= self._batch_size:
                        written += self._store.upsert_many(symbol, BASE_TIMEFRAME, batch)
                        batch = []
        except (OSError, EOFError) as exc:
            # gzip.BadGzipFile is an OSError; a truncated stream ends in EOFError.
            raise ParseError(source, line_no, f"corrupt archive: {exc}") from exc
        except (UnicodeDecodeError, csv.Error) as exc:
            raise ParseError(source, line_no + 1, f"unreadable row: {exc}") from exc

        if batch:
            written += self._store.upsert_many(symbol, BASE_TIMEFRAME, batch)

        logger.info(
            "[Archive] %s: stored %d candles, last %s",
            Path(source).name, written, _from_epoch(last) if last is not None else "none",
        )
        return last
