"""Session VWAP.

A session is one UTC calendar day.  Within a session, for candles in
open_time order:

    typical = (high + low + close) / 3
    cum_tpv += typical × volume
    cum_vol += volume
    vwap     = cum_tpv / cum_vol        (typical when cum_vol == 0)

Accumulators never cross a session boundary.

Update rules
────────────
• A candle for the newest session (or a later one) is inserted, or replaces
  the stored candle with the same open_time, and that session is
  recomputed.  The live in-progress bar arrives many times; each update
  revises the session's trailing points.
• A candle for a session older than the newest known one is ignored:
  closed sessions are never revised.

State is held in an explicit ``dict[date, SessionState]`` owned by the
calculator (optionally injected); ``reset()`` is the only way to clear it.
"""
from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable

from klinestore.data.timeframes import Kline, _utc_date

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VWAPPoint:
    time:  int
    value: float


def typical_price(candle: Kline) -> float:
    return (candle.high + candle.low + candle.close) / 3.0


@dataclass
class SessionState:
    """Accumulator for one UTC day."""

    day:     date
    candles: list[Kline]     = field(default_factory=list)
    points:  list[VWAPPoint] = field(default_factory=list)
    tpv:     float           = 0.0
    volume:  float           = 0.0

    def upsert(self, candle: Kline) -> None:
        times = [c.open_time for c in self.candles]
        idx   = bisect.bisect_left(times, candle.open_time)
        if idx < len(times) and times[idx] == candle.open_time:
            self.candles[idx] = candle
        else:
            self.candles.insert(idx, candle)
        self.recompute()

    def recompute(self) -> None:
        self.tpv    = 0.0
        self.volume = 0.0
        self.points = []
        for candle in self.candles:
            tp = typical_price(candle)
            self.tpv    += tp * candle.volume
            self.volume += candle.volume
            value = self.tpv / self.volume if self.volume != 0 else tp
            self.points.append(VWAPPoint(candle.open_time, value))


class VWAPCalculator:
    def __init__(self, sessions: dict[date, SessionState] | None = None) -> None:
        self.sessions: dict[date, SessionState] = sessions if sessions is not None else {}

    @property
    def newest_session(self) -> date | None:
        return max(self.sessions) if self.sessions else None

    def add_candle(self, candle: Kline) -> list[VWAPPoint]:
        """Fold *candle* in; return its session's points from candle.open_time on.

        Returns an empty list when the candle belongs to a closed session.
        """
        day    = _utc_date(candle.open_time)
        newest = self.newest_session
        if newest is not None and day < newest:
            logger.debug("[VWAP] Ignoring update for closed session %s", day)
            return []

        session = self.sessions.get(day)
        if session is None:
            session = self.sessions[day] = SessionState(day)
        session.upsert(candle)
        return [p for p in session.points if p.time >= candle.open_time]

    def add_candles(self, candles: Iterable[Kline]) -> list[VWAPPoint]:
        """Fold a batch in open_time order; return every point."""
        for candle in sorted(candles, key=lambda c: c.open_time):
            self.add_candle(candle)
        return self.points()

    def session_points(self, day: date) -> list[VWAPPoint]:
        session = self.sessions.get(day)
        return list(session.points) if session else []

    def points(self) -> list[VWAPPoint]:
        """Every point of every session, ascending by time."""
        out: list[VWAPPoint] = []
        for day in sorted(self.sessions):
            out.extend(self.sessions[day].points)
        return out

    def reset(self) -> None:
        self.sessions.clear()
