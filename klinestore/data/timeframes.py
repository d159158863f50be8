"""Timeframe table, epoch helpers and the in-memory candle type.

Every module that touches open_time goes through the helpers here so that
epoch arithmetic is done one way: INTEGER seconds UTC, computed with
calendar.timegm() to avoid system-timezone pollution.
"""
from __future__ import annotations

import calendar
import math
from dataclasses import dataclass
from datetime import date, datetime, timezone

from klinestore.errors import ValidationError

# ── Timeframe configuration ───────────────────────────────────────────────────

TF_SECONDS: dict[str, int] = {
    "5m":  300,
    "15m": 900,
    "30m": 1800,
    "1h":  3600,
    "4h":  14400,
    "12h": 43200,
    "1d":  86400,
}

# Fetched from the exchange; every other timeframe is derived from it.
BASE_TIMEFRAME = "5m"

DERIVED_TIMEFRAMES: tuple[str, ...] = ("15m", "30m", "1h", "4h", "12h", "1d")

# Bybit v5 interval strings (REST `interval` param and websocket topic)
BYBIT_INTERVAL: dict[str, str] = {
    "5m":  "5",
    "15m": "15",
    "30m": "30",
    "1h":  "60",
    "4h":  "240",
    "12h": "720",
    "1d":  "D",
}


# ── Epoch helpers ─────────────────────────────────────────────────────────────

def _now_epoch() -> int:
    return calendar.timegm(datetime.now(timezone.utc).timetuple())


def _to_epoch(dt: datetime) -> int:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    else:
        dt = dt.replace(tzinfo=timezone.utc)
    return calendar.timegm(dt.timetuple())


def _from_epoch(ep: int) -> str:
    return datetime.fromtimestamp(ep, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S+00:00")


def _utc_date(ep: int) -> date:
    """UTC calendar date an epoch falls on (the VWAP session key)."""
    return datetime.fromtimestamp(ep, tz=timezone.utc).date()


def floor_to(ep: int, period: int) -> int:
    return ep - (ep % period)


def ceil_to(ep: int, period: int) -> int:
    rem = ep % period
    return ep if rem == 0 else ep + (period - rem)


# ── Validation ────────────────────────────────────────────────────────────────

def tf_seconds(timeframe: str) -> int:
    """Return the period of *timeframe* or raise ValidationError."""
    try:
        return TF_SECONDS[timeframe]
    except KeyError:
        raise ValidationError(
            f"Unknown timeframe {timeframe!r}; expected one of {sorted(TF_SECONDS, key=TF_SECONDS.get)}"
        ) from None


def require_utc(dt: datetime, name: str) -> int:
    """Reject naive datetimes; return the UTC epoch of an aware one."""
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        raise ValidationError(f"{name} must be timezone-aware, got naive {dt.isoformat()}")
    return _to_epoch(dt)


def validate_window(start: int, end: int) -> None:
    if start >= end:
        raise ValidationError(
            f"Invalid window: start {_from_epoch(start)} is not before end {_from_epoch(end)}"
        )


# ── Candle value type ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Kline:
    """One OHLCV candle.  open_time is UTC epoch seconds."""

    open_time: int
    open:   float
    high:   float
    low:    float
    close:  float
    volume: float

    def validate(self, timeframe: str) -> None:
        """Raise ValidationError unless the candle is aligned and sane.

        Misaligned timestamps are rejected, never truncated.
        """
        period = tf_seconds(timeframe)
        if self.open_time % period != 0:
            raise ValidationError(
                f"open_time {self.open_time} ({_from_epoch(self.open_time)}) "
                f"is not aligned to {timeframe}"
            )
        values = (self.open, self.high, self.low, self.close, self.volume)
        if not all(math.isfinite(x) for x in values):
            raise ValidationError(f"Non-finite OHLCV at {_from_epoch(self.open_time)}")
        if self.volume < 0:
            raise ValidationError(f"Negative volume at {_from_epoch(self.open_time)}")
        if self.high < max(self.open, self.close) or self.low > min(self.open, self.close):
            raise ValidationError(
                f"Inconsistent OHLC at {_from_epoch(self.open_time)}: "
                f"O={self.open} H={self.high} L={self.low} C={self.close}"
            )

    def to_dict(self) -> dict[str, object]:
        return {
            "time":      self.open_time,
            "timestamp": _from_epoch(self.open_time),
            "open":      self.open,
            "high":      self.high,
            "low":       self.low,
            "close":     self.close,
            "volume":    self.volume,
        }
