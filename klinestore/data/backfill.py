"""Backfill orchestrator.

Run overview
────────────
                     ┌─────────────────────────────────────┐
                     │  start_backfill(symbol, start, end) │
                     └──────────────┬──────────────────────┘
                                    │  validate (no I/O on failure)
                   ┌────────────────▼─────────────────────┐
                   │  0. backfill_run row: pending→running│
                   └────────────────┬─────────────────────┘
                   ┌────────────────▼─────────────────────┐
                   │  1. delete 5m rows in [start, end)   │
                   └────────────────┬─────────────────────┘
              ┌─────────────────────▼──────────────────────────┐
              │  2. for each batch_days window, in order:      │
              │       ArchiveFetcher.fetch(window)             │
              │       progress.current = i + 1, persist        │
              └─────────────────────┬──────────────────────────┘
              ┌─────────────────────▼──────────────────────────┐
              │  3. latest archive ts short of end?            │
              │       LiveFetcher.fetch(latest or start, end)  │
              └─────────────────────┬──────────────────────────┘
              ┌─────────────────────▼──────────────────────────┐
              │  4. find_gaps → LiveFetcher per gap            │
              │     (≤ _MAX_REPAIR_GAPS), record gaps_remaining│
              └─────────────────────┬──────────────────────────┘
                   ┌────────────────▼─────────────────────┐
                   │  5. refresh 15m … 1d over [start,end)│
                   └────────────────┬─────────────────────┘
                   ┌────────────────▼─────────────────────┐
                   │  6. completed                         │
                   └──────────────────────────────────────┘

Any exception after validation marks the run failed, stores the error and
the window being processed, and is re-raised.  Failed runs are never retried
automatically; the caller resubmits, ideally from the recorded window.

Delete-then-load
────────────────
Step 1 clears the base rows of the window, so after a run the window holds
only what this run loaded, whatever an earlier run from another source stored.

Coverage check
──────────────
Archive coverage is evaluated once for the whole run, not per batch.  The
current month's archive is normally unpublished (404), so the live fetcher
picks up from the newest archived candle.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import select

from klinestore.config import settings
from klinestore.data.archive import ArchiveFetcher
from klinestore.data.live import LiveFetcher
from klinestore.data.models import BackfillRun, BackfillStatus
from klinestore.data.store import Gap, TimeSeriesStore, _storage_session
from klinestore.data.timeframes import (
    BASE_TIMEFRAME,
    DERIVED_TIMEFRAMES,
    TF_SECONDS,
    _from_epoch,
    _now_epoch,
    floor_to,
    require_utc,
    validate_window,
)
from klinestore.errors import BackfillConflictError, ValidationError

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

_SECONDS_PER_DAY  = 86_400
_MAX_REPAIR_GAPS  = 50     # gaps beyond this are reported, not re-fetched


# ── Progress value ────────────────────────────────────────────────────────────

@dataclass
class BackfillProgress:
    """Observable state of one run.

    ``current`` is the 1-based batch being fetched. It may run slightly ahead
    of the matching storage commit; it is a progress indicator, not a
    checkpoint.
    """

    symbol:         str
    total:          int
    start_time:     int
    end_time:       int
    current:        int                 = 0
    status:         BackfillStatus      = BackfillStatus.PENDING
    error:          str | None          = None
    gaps_remaining: int | None          = None
    run_id:         int | None          = None

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id":         self.run_id,
            "symbol":         self.symbol,
            "total":          self.total,
            "current":        self.current,
            "start_time":     _from_epoch(self.start_time),
            "end_time":       _from_epoch(self.end_time),
            "status":         self.status.value,
            "error":          self.error,
            "gaps_remaining": self.gaps_remaining,
        }


ProgressCallback = Callable[[BackfillProgress], None]


# ── Helpers ───────────────────────────────────────────────────────────────────

def _epoch_arg(value: datetime | int, name: str) -> int:
    """Accept an aware datetime or a UTC epoch int."""
    if isinstance(value, datetime):
        return require_utc(value, name)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    raise ValidationError(f"{name} must be a timezone-aware datetime or epoch seconds")


def batch_windows(start: int, end: int, batch_days: int) -> list[tuple[int, int]]:
    """Split [start, end) into consecutive windows of at most *batch_days*.

    The count is ceil(ceil(days) / batch_days): a partial trailing day
    counts as a whole one.
    """
    days  = math.ceil((end - start) / _SECONDS_PER_DAY)
    total = math.ceil(days / batch_days)
    step  = batch_days * _SECONDS_PER_DAY
    return [
        (start + i * step, min(start + (i + 1) * step, end))
        for i in range(total)
    ]


def _create_run(progress: BackfillProgress, range_start: int, range_end: int) -> int:
    with _storage_session(f"create backfill run {progress.symbol}") as session:
        row = BackfillRun(
            symbol=progress.symbol,
            timeframe=BASE_TIMEFRAME,
            status=progress.status.value,
            range_start=range_start,
            range_end=range_end,
            batch_total=progress.total,
            batch_current=progress.current,
            window_start=progress.start_time,
            window_end=progress.end_time,
            started_at=_now_epoch(),
        )
        session.add(row)
        session.flush()
        return row.id


def _save_run(progress: BackfillProgress) -> None:
    with _storage_session(f"update backfill run {progress.symbol}") as session:
        row = session.get(BackfillRun, progress.run_id)
        row.status         = progress.status.value
        row.batch_current  = progress.current
        row.window_start   = progress.start_time
        row.window_end     = progress.end_time
        row.gaps_remaining = progress.gaps_remaining
        row.last_error     = progress.error
        if progress.status in (BackfillStatus.COMPLETED, BackfillStatus.FAILED):
            row.completed_at = _now_epoch()


# ── BackfillService ───────────────────────────────────────────────────────────


class BackfillService:
    """Composes ArchiveFetcher, LiveFetcher and TimeSeriesStore into runs.

    One run per symbol at a time: a second start_backfill() for a symbol that
    is still running raises BackfillConflictError.  Runs for different
    symbols may proceed concurrently on the same event loop.
    """

    def __init__(
        self,
        store: TimeSeriesStore | None = None,
        archive: ArchiveFetcher | None = None,
        live: LiveFetcher | None = None,
        batch_days: int | None = None,
    ) -> None:
        self.store       = store or TimeSeriesStore()
        self.archive     = archive or ArchiveFetcher(self.store)
        self.live        = live or LiveFetcher(self.store)
        self._batch_days = batch_days or settings.backfill_batch_days
        self._active: dict[str, BackfillProgress] = {}

    # ── Queries ───────────────────────────────────────────────────────────────

    def is_running(self, symbol: str) -> bool:
        return symbol.strip().upper() in self._active

    def current_progress(self, symbol: str) -> BackfillProgress | None:
        return self._active.get(symbol.strip().upper())

    def find_data_gaps(
        self,
        symbol: str,
        start: datetime | int,
        end: datetime | int,
    ) -> list[Gap]:
        """Read-only gap scan of the base timeframe over [start, end)."""
        sym = symbol.strip().upper()
        if not sym:
            raise ValidationError("symbol is required")
        return self.store.find_gaps(
            sym, BASE_TIMEFRAME, _epoch_arg(start, "start"), _epoch_arg(end, "end")
        )

    def get_backfill_status(self, limit: int = 20) -> list[dict[str, object]]:
        """Return the most recent backfill_run rows, newest first."""
        with _storage_session("read backfill runs") as session:
            rows = session.execute(
                select(BackfillRun)
                .order_by(BackfillRun.started_at.desc(), BackfillRun.id.desc())
                .limit(limit)
            ).scalars().all()

            return [
                {
                    "id":             r.id,
                    "symbol":         r.symbol,
                    "timeframe":      r.timeframe,
                    "status":         r.status,
                    "range_start":    _from_epoch(r.range_start),
                    "range_end":      _from_epoch(r.range_end),
                    "batch_total":    r.batch_total,
                    "batch_current":  r.batch_current,
                    "window_start":   _from_epoch(r.window_start) if r.window_start is not None else None,
                    "window_end":     _from_epoch(r.window_end)   if r.window_end   is not None else None,
                    "gaps_remaining": r.gaps_remaining,
                    "started_at":     _from_epoch(r.started_at),
                    "completed_at":   _from_epoch(r.completed_at) if r.completed_at else None,
                    "last_error":     r.last_error,
                }
                for r in rows
            ]

    # ── Run ───────────────────────────────────────────────────────────────────

    async def start_backfill(
        self,
        symbol: str,
        start: datetime | int,
        end: datetime | int,
        batch_days: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> BackfillProgress:
        """Run one backfill to completion and return its final progress.

        Raises
        ------
        ValidationError
            Empty symbol, naive datetimes, start ≥ end, or batch_days ≤ 0.
            Raised before any I/O; no run row is written.
        BackfillConflictError
            A run for *symbol* is already in progress.
        TransportError / ParseError / StorageError
            Propagated after the run has been marked failed.
        """
        sym = (symbol or "").strip().upper()
        if not sym:
            raise ValidationError("symbol is required")
        start_ep = _epoch_arg(start, "start")
        end_ep   = _epoch_arg(end, "end")
        validate_window(start_ep, end_ep)
        days = self._batch_days if batch_days is None else batch_days
        if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
            raise ValidationError(f"batch_days must be a positive integer, got {days!r}")
        if sym in self._active:
            raise BackfillConflictError(sym)

        windows  = batch_windows(start_ep, end_ep, days)
        progress = BackfillProgress(
            symbol=sym,
            total=len(windows),
            start_time=windows[0][0],
            end_time=windows[0][1],
        )
        self._active[sym] = progress
        try:
            progress.run_id = _create_run(progress, start_ep, end_ep)
            await self._run(progress, start_ep, end_ep, windows, on_progress)
        except Exception as exc:
            progress.status = BackfillStatus.FAILED
            progress.error  = str(exc) or type(exc).__name__
            logger.error(
                "[Backfill] %s failed in window [%s, %s): %s",
                sym, _from_epoch(progress.start_time), _from_epoch(progress.end_time), progress.error,
            )
            if progress.run_id is not None:
                _save_run(progress)
            self._notify(progress, on_progress)
            raise
        finally:
            self._active.pop(sym, None)
        return progress

    async def _run(
        self,
        progress: BackfillProgress,
        start: int,
        end: int,
        windows: list[tuple[int, int]],
        on_progress: ProgressCallback | None,
    ) -> None:
        sym    = progress.symbol
        period = TF_SECONDS[BASE_TIMEFRAME]

        progress.status = BackfillStatus.RUNNING
        self._update(progress, on_progress)
        logger.info(
            "[Backfill] %s [%s, %s) in %d batch(es)",
            sym, _from_epoch(start), _from_epoch(end), progress.total,
        )

        # 1. Clean slate for the base timeframe.
        self.store.delete_range(sym, BASE_TIMEFRAME, start, end - 1)

        # 2. Archive pass, one batch at a time.
        latest: int | None = None
        for index, (w_start, w_end) in enumerate(windows):
            progress.current    = index + 1
            progress.start_time = w_start
            progress.end_time   = w_end
            self._update(progress, on_progress)

            last = await self.archive.fetch(sym, w_start, w_end)
            if last is not None and (latest is None or last > latest):
                latest = last
            logger.info(
                "[Backfill] %s batch %d/%d done (archive up to %s)",
                sym, index + 1, progress.total, _from_epoch(latest) if latest else "none",
            )

        # 3. Live tail.
        if latest is None or latest + period < end:
            live_start = start if latest is None else latest
            progress.start_time = live_start
            progress.end_time   = end
            self._update(progress, on_progress)
            await self.live.fetch(sym, live_start, end)

        # 4. Gap repair.  The bar still forming is not expected to be stored.
        check_end = min(end, floor_to(_now_epoch(), period))
        gaps: list[Gap] = []
        if check_end > start:
            gaps = self.store.find_gaps(sym, BASE_TIMEFRAME, start, check_end)
            for gap in gaps[:_MAX_REPAIR_GAPS]:
                progress.start_time = gap.start
                progress.end_time   = gap.end
                self._update(progress, on_progress)
                await self.live.fetch(sym, gap.start, gap.end - period)
            if gaps:
                gaps = self.store.find_gaps(sym, BASE_TIMEFRAME, start, check_end)
        progress.gaps_remaining = len(gaps)
        if gaps:
            logger.warning(
                "[Backfill] %s: %d gap(s) remain after repair (%d missing candles)",
                sym, len(gaps), sum(g.missing_candles for g in gaps),
            )

        # 5. Derived timeframes.
        progress.start_time = start
        progress.end_time   = end
        self.store.refresh_aggregates(sym, DERIVED_TIMEFRAMES, start, end)

        # 6. Done.
        progress.current = progress.total
        progress.status  = BackfillStatus.COMPLETED
        self._update(progress, on_progress)
        logger.info("[Backfill] %s completed", sym)

    # ── Progress plumbing ─────────────────────────────────────────────────────

    def _update(self, progress: BackfillProgress, on_progress: ProgressCallback | None) -> None:
        _save_run(progress)
        self._notify(progress, on_progress)

    @staticmethod
    def _notify(progress: BackfillProgress, on_progress: ProgressCallback | None) -> None:
        if on_progress is not None:
            on_progress(progress)
