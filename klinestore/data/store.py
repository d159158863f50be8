"""Time-series store: the only module that reads or writes the candle table.

Architecture position
─────────────────────

  ┌─────────────────────────────────────────────────────────┐
  │  BackfillService │ ArchiveFetcher │ LiveFetcher │ API   │
  └──────────────────┴───────┬────────┴─────────────┴───────┘
                             │  uses
  ┌──────────────────────────▼──────────────────────────────┐
  │              TimeSeriesStore  (this module)             │
  │  • upsert_many()        – validated, sharded upsert     │
  │  • get_range()          – inclusive range read          │
  │  • get_klines()         – validated read for callers    │
  │  • delete_range()       – clear a window before reload  │
  │  • find_gaps()          – calendar anti-join            │
  │  • refresh_aggregates() – rebuild derived timeframes    │
  │  • get_stats()          – partition metadata            │
  └──────────────────────────┬──────────────────────────────┘
                             │  queries
  ┌──────────────────────────▼──────────────────────────────┐
  │          SQLite candle table (WITHOUT ROWID)            │
  │  Clustered B-tree on (symbol, timeframe, open_time)     │
  └─────────────────────────────────────────────────────────┘

Write semantics
───────────────
upsert_many() is INSERT … ON CONFLICT DO UPDATE: exactly one row per
(symbol, timeframe, open_time), the last write wins.  Large inputs are split
into statements of _INSERT_BATCH_SIZE rows to stay under SQLite's bound
variable limit, but every statement runs in one session, so a call either
lands completely or not at all.

Derived timeframes
──────────────────
15m … 1d rows are materialised from 5m rows by refresh_aggregates().  Each
bucket is recomputed in full (first open, max high, min low, last close,
summed volume) using ROW_NUMBER() over the bucket partition.  The window is
widened to whole buckets; the 1d window is padded by one extra day on each
side so a day that straddles the requested boundaries is rebuilt from all of
its base candles.

Error model
───────────
ValidationError : bad timeframe, window, or candle values, raised before any
                  SQL is issued.
StorageError    : any SQLAlchemyError, chained with ``raise … from``.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator, Iterable, Sequence

from sqlalchemy import delete, func, select, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from klinestore.data.database import get_db_session
from klinestore.data.models import Candle
from klinestore.data.timeframes import (
    BASE_TIMEFRAME,
    Kline,
    _from_epoch,
    _now_epoch,
    ceil_to,
    floor_to,
    tf_seconds,
    validate_window,
)
from klinestore.errors import StorageError, ValidationError

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

_INSERT_BATCH_SIZE = 100    # SQLite variable limit safety (9 columns per row)

_CALENDAR_SQL = text(
    """
    WITH RECURSIVE calendar(t) AS (
        SELECT :first
        UNION ALL
        SELECT t + :step FROM calendar WHERE t + :step < :end
    )
    SELECT calendar.t
    FROM calendar
    LEFT JOIN candle c
           ON c.symbol    = :sym
          AND c.timeframe = :tf
          AND c.open_time = calendar.t
    WHERE c.open_time IS NULL
    ORDER BY calendar.t
    """
)

_AGGREGATE_SQL = text(
    """
    INSERT INTO candle (symbol, timeframe, open_time, open, high, low, close, volume, fetched_at)
    SELECT :sym, :tf, bucket,
           MAX(CASE WHEN rn_open  = 1 THEN open  END),
           MAX(high),
           MIN(low),
           MAX(CASE WHEN rn_close = 1 THEN close END),
           SUM(volume),
           :now
    FROM (
        SELECT (open_time / :period) * :period AS bucket,
               open, high, low, close, volume,
               ROW_NUMBER() OVER (PARTITION BY open_time / :period ORDER BY open_time ASC)  AS rn_open,
               ROW_NUMBER() OVER (PARTITION BY open_time / :period ORDER BY open_time DESC) AS rn_close
        FROM candle
        WHERE symbol    = :sym
          AND timeframe = :base
          AND open_time >= :lo
          AND open_time <  :hi
    )
    GROUP BY bucket
    ORDER BY bucket
    """
)


# ── Gap value type ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Gap:
    """Half-open [start, end) run of missing calendar slots."""

    start:  int
    end:    int
    period: int

    @property
    def missing_candles(self) -> int:
        return (self.end - self.start) // self.period

    def to_dict(self) -> dict[str, object]:
        return {
            "start":           self.start,
            "end":             self.end,
            "start_iso":       _from_epoch(self.start),
            "end_iso":         _from_epoch(self.end),
            "missing_candles": self.missing_candles,
        }


# ── Helpers ───────────────────────────────────────────────────────────────────

@contextmanager
def _storage_session(operation: str) -> Generator[Session, None, None]:
    """get_db_session() with driver errors re-raised as StorageError."""
    try:
        with get_db_session() as session:
            yield session
    except SQLAlchemyError as exc:
        raise StorageError(f"{operation} failed: {exc}") from exc


def _row_to_kline(row: Candle) -> Kline:
    return Kline(
        open_time=row.open_time,
        open=row.open,
        high=row.high,
        low=row.low,
        close=row.close,
        volume=row.volume,
    )


def _coalesce(missing: Iterable[int], period: int) -> list[Gap]:
    """Merge ascending missing slots into contiguous Gap runs."""
    gaps: list[Gap] = []
    run_start: int | None = None
    prev: int | None = None
    for t in missing:
        if prev is not None and t == prev + period:
            prev = t
            continue
        if run_start is not None:
            gaps.append(Gap(run_start, prev + period, period))
        run_start = prev = t
    if run_start is not None:
        gaps.append(Gap(run_start, prev + period, period))
    return gaps


# ── TimeSeriesStore ───────────────────────────────────────────────────────────


class TimeSeriesStore:
    """Candle storage for every (symbol, timeframe) partition.

    Stateless: holds no cache and no connection beyond what get_db_session()
    provides per call, so one instance can be shared by the backfill worker,
    the HTTP layer and the streaming history loader.
    """

    # ── Writes ────────────────────────────────────────────────────────────────

    def upsert_many(
        self,
        symbol: str,
        timeframe: str,
        candles: Sequence[Kline],
    ) -> int:
        """Insert or replace *candles*; return the number of rows written.

        Raises
        ------
        ValidationError
            Empty input, unknown timeframe, misaligned open_time, or
            inconsistent OHLCV values.  Nothing is written.
        StorageError
            The transaction failed.  Nothing is written.
        """
        if not candles:
            raise ValidationError(f"upsert_many({symbol}/{timeframe}) called with no candles")
        tf_seconds(timeframe)
        for candle in candles:
            candle.validate(timeframe)

        now  = _now_epoch()
        rows = [
            {
                "symbol":     symbol,
                "timeframe":  timeframe,
                "open_time":  c.open_time,
                "open":       c.open,
                "high":       c.high,
                "low":        c.low,
                "close":      c.close,
                "volume":     c.volume,
                "fetched_at": now,
            }
            for c in candles
        ]

        with _storage_session(f"upsert {symbol}/{timeframe}") as session:
            for i in range(0, len(rows), _INSERT_BATCH_SIZE):
                batch = rows[i : i + _INSERT_BATCH_SIZE]
                stmt  = sqlite_insert(Candle).values(batch)
                stmt  = stmt.on_conflict_do_update(
                    index_elements=["symbol", "timeframe", "open_time"],
                    set_={
                        "open":       stmt.excluded.open,
                        "high":       stmt.excluded.high,
                        "low":        stmt.excluded.low,
                        "close":      stmt.excluded.close,
                        "volume":     stmt.excluded.volume,
                        "fetched_at": stmt.excluded.fetched_at,
                    },
                )
                session.execute(stmt)

        logger.debug("Upserted %d %s/%s candles", len(rows), symbol, timeframe)
        return len(rows)

    def delete_range(
        self,
        symbol: str,
        timeframe: str,
        start: int,
        end: int,
    ) -> int:
        """Delete rows with start <= open_time <= end; return the count removed."""
        tf_seconds(timeframe)
        with _storage_session(f"delete {symbol}/{timeframe}") as session:
            result = session.execute(
                delete(Candle)
                .where(Candle.symbol    == symbol)
                .where(Candle.timeframe == timeframe)
                .where(Candle.open_time >= start)
                .where(Candle.open_time <= end)
            )
            deleted = result.rowcount or 0

        logger.info(
            "Deleted %d %s/%s candles in [%s, %s]",
            deleted, symbol, timeframe, _from_epoch(start), _from_epoch(end),
        )
        return deleted

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get_range(
        self,
        symbol: str,
        timeframe: str,
        start: int,
        end: int,
    ) -> list[Kline]:
        """Return candles with start <= open_time <= end, ascending.

        Single BETWEEN on the clustered PK: one B-tree seek plus a forward
        leaf scan.
        """
        with _storage_session(f"read {symbol}/{timeframe}") as session:
            rows = session.execute(
                select(Candle)
                .where(Candle.symbol    == symbol)
                .where(Candle.timeframe == timeframe)
                .where(Candle.open_time >= start)
                .where(Candle.open_time <= end)
                .order_by(Candle.open_time.asc())
            ).scalars().all()

            # Materialise while session is open; ORM objects expire on close.
            return [_row_to_kline(r) for r in rows]

    def get_klines(
        self,
        symbol: str,
        timeframe: str,
        start: int,
        end: int,
    ) -> list[Kline]:
        """Validated range read for external callers (HTTP, history loader)."""
        if not symbol:
            raise ValidationError("symbol is required")
        tf_seconds(timeframe)
        if start > end:
            raise ValidationError(
                f"Invalid window: start {_from_epoch(start)} is after end {_from_epoch(end)}"
            )
        return self.get_range(symbol, timeframe, start, end)

    def find_gaps(
        self,
        symbol: str,
        timeframe: str,
        start: int,
        end: int,
    ) -> list[Gap]:
        """Return missing runs in the aligned calendar of [start, end).

        Query strategy
        ──────────────
        A recursive CTE emits every aligned open_time in the window; a LEFT
        JOIN on the clustered PK keeps the slots with no stored row.  The
        ascending result is then coalesced into contiguous Gap runs.
        """
        period = tf_seconds(timeframe)
        validate_window(start, end)

        first = ceil_to(start, period)
        if first >= end:
            return []

        with _storage_session(f"gap scan {symbol}/{timeframe}") as session:
            missing = session.execute(
                _CALENDAR_SQL,
                {"first": first, "step": period, "end": end, "sym": symbol, "tf": timeframe},
            ).scalars().all()

        gaps = _coalesce(missing, period)
        if gaps:
            logger.info(
                "Gap scan %s/%s: %d gaps, %d missing candles",
                symbol, timeframe, len(gaps), sum(g.missing_candles for g in gaps),
            )
        return gaps

    def get_stats(self, symbol: str, timeframe: str) -> dict[str, object]:
        """Return count / oldest / newest for one partition."""
        with _storage_session(f"stats {symbol}/{timeframe}") as session:
            row = session.execute(
                select(
                    func.count().label("cnt"),
                    func.min(Candle.open_time).label("min_t"),
                    func.max(Candle.open_time).label("max_t"),
                )
                .where(Candle.symbol    == symbol)
                .where(Candle.timeframe == timeframe)
            ).one()

            cnt, min_t, max_t = row.cnt, row.min_t, row.max_t

        return {
            "symbol":        symbol,
            "timeframe":     timeframe,
            "candle_count":  cnt,
            "oldest_candle": _from_epoch(min_t) if min_t is not None else None,
            "newest_candle": _from_epoch(max_t) if max_t is not None else None,
        }

    # ── Aggregates ────────────────────────────────────────────────────────────

    def refresh_aggregates(
        self,
        symbol: str,
        timeframes: Sequence[str],
        start: int,
        end: int,
    ) -> dict[str, int]:
        """Rebuild derived-timeframe rows overlapping [start, end) from 5m rows.

        Returns {timeframe: buckets written}.  All timeframes are refreshed in
        one transaction.
        """
        validate_window(start, end)
        for tf in timeframes:
            tf_seconds(tf)
            if tf == BASE_TIMEFRAME:
                raise ValidationError(f"{BASE_TIMEFRAME} is the base timeframe and cannot be refreshed")

        now = _now_epoch()
        written: dict[str, int] = {}

        with _storage_session(f"refresh aggregates {symbol}") as session:
            for tf in timeframes:
                period = tf_seconds(tf)
                lo = floor_to(start, period)
                hi = ceil_to(end, period)
                if tf == "1d":
                    lo -= period
                    hi += period

                session.execute(
                    delete(Candle)
                    .where(Candle.symbol    == symbol)
                    .where(Candle.timeframe == tf)
                    .where(Candle.open_time >= lo)
                    .where(Candle.open_time <  hi)
                )
                result = session.execute(
                    _AGGREGATE_SQL,
                    {
                        "sym": symbol, "tf": tf, "base": BASE_TIMEFRAME,
                        "period": period, "lo": lo, "hi": hi, "now": now,
                    },
                )
                written[tf] = result.rowcount or 0

        logger.info(
            "Refreshed aggregates %s [%s, %s): %s",
            symbol, _from_epoch(start), _from_epoch(end),
            ", ".join(f"{tf}={n}" for tf, n in written.items()),
        )
        return written
