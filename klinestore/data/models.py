"""ORM tables for candles and backfill runs.

Tables
──────
candle        : OHLCV storage for the base timeframe and every derived one
                (WITHOUT ROWID, clustered B-tree)
backfill_run  : one row per backfill request, mirrors BackfillProgress
"""
from __future__ import annotations

import enum

from sqlalchemy import BigInteger, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from klinestore.data.database import Base


# ─────────────────────────────────────────────────────────────────────────────
# Candle table
# ─────────────────────────────────────────────────────────────────────────────

class Candle(Base):
    """One stored candle row, base or derived timeframe.

    WITHOUT ROWID clusters the B-tree on (symbol, timeframe, open_time) so
    range reads, range deletes and the gap-scan anti-join are PK seeks
    followed by sequential leaf walks.
    open_time is Unix epoch seconds UTC, aligned to the timeframe period.
    Writes go through INSERT … ON CONFLICT DO UPDATE on the composite PK:
    one row per key, last write wins.
    """

    __tablename__ = "candle"
    __table_args__ = (
        {"sqlite_with_rowid": False},   # clustered B-tree on PK
    )

    symbol:    Mapped[str] = mapped_column(String(32), primary_key=True, nullable=False)
    timeframe: Mapped[str] = mapped_column(String(8),  primary_key=True, nullable=False)
    open_time: Mapped[int] = mapped_column(BigInteger, primary_key=True, nullable=False)

    open:   Mapped[float] = mapped_column(Float, nullable=False)
    high:   Mapped[float] = mapped_column(Float, nullable=False)
    low:    Mapped[float] = mapped_column(Float, nullable=False)
    close:  Mapped[float] = mapped_column(Float, nullable=False)
    volume: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    fetched_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Candle {self.symbol}/{self.timeframe} @ {self.open_time} C={self.close}>"


# ─────────────────────────────────────────────────────────────────────────────
# Backfill run tracking
# ─────────────────────────────────────────────────────────────────────────────

class BackfillStatus(str, enum.Enum):
    PENDING   = "pending"
    RUNNING   = "running"
    COMPLETED = "completed"
    FAILED    = "failed"


class BackfillRun(Base):
    """Persisted snapshot of one backfill request.

    Field notes
    ───────────
    range_start / range_end    : the requested [start, end) window.
    batch_total / batch_current: batch counter, 1-based index of the batch in flight.
    window_start / window_end  : the batch window being processed.  On a
                                 failed run this is the window at the point of
                                 failure, so a retry can start there.
    gaps_remaining             : base-timeframe gaps left after the repair pass.
    status                     : pending → running → completed | failed.
                                 Terminal states are final; a failed run is
                                 resubmitted as a new row.
    """

    __tablename__ = "backfill_run"
    __table_args__ = (
        Index("idx_backfill_run_sym_started", "symbol", "started_at"),
    )

    id:        Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol:    Mapped[str] = mapped_column(String(32), nullable=False)
    timeframe: Mapped[str] = mapped_column(String(8),  nullable=False)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=BackfillStatus.PENDING.value
    )

    range_start: Mapped[int] = mapped_column(BigInteger, nullable=False)
    range_end:   Mapped[int] = mapped_column(BigInteger, nullable=False)

    batch_total:   Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    batch_current: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    window_start: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    window_end:   Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    gaps_remaining: Mapped[int | None] = mapped_column(Integer, nullable=True)

    started_at:   Mapped[int]        = mapped_column(BigInteger, nullable=False)
    completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<BackfillRun #{self.id} {self.symbol}/{self.timeframe} "
            f"status={self.status} batch={self.batch_current}/{self.batch_total}>"
        )
