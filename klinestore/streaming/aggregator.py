"""Live candle stream → candle passthrough + session VWAP.

  KlineFeed ──push──▶ StreamingAggregator.handle_message()
                           │
                           ├─▶ on_candle_update(candle)       every push
                           ├─▶ on_new_candle(candle)          open_time changed
                           └─▶ on_vwap_point(time, value)     touched session points

History is seeded once on start() (and again on change_timeframe()) from a
loader, by default TimeSeriesStore.get_klines over the last
_HISTORY_DAYS days.  A timeframe change discards every session: VWAP is
recomputed from the new timeframe's candles rather than resampled.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from klinestore.data.timeframes import BYBIT_INTERVAL, Kline, _now_epoch, tf_seconds
from klinestore.errors import TransportError
from klinestore.streaming.feed import KlineFeed, parse_kline_item
from klinestore.streaming.vwap import VWAPCalculator

logger = logging.getLogger(__name__)

_HISTORY_DAYS = 14

# (symbol, timeframe, start, end) -> candles ascending
HistoryLoader = Callable[[str, str, int, int], list[Kline]]


@dataclass
class StreamHandlers:
    """Callbacks fired by StreamingAggregator.

    ``on_vwap_point`` receives deltas. Seeding and a timeframe switch emit every
    point once; after that each push emits only its session's points from the
    pushed candle's open_time onward. Consumers upsert points by time rather
    than replacing the series.
    """

    on_candle_update: Optional[Callable[[Kline], None]]        = None
    on_new_candle:    Optional[Callable[[Kline], None]]        = None
    on_vwap_point:    Optional[Callable[[int, float], None]]   = None


class StreamingAggregator:
    def __init__(
        self,
        symbol: str,
        timeframe: str,
        feed: KlineFeed,
        history_loader: HistoryLoader,
        handlers: StreamHandlers | None = None,
        calculator: VWAPCalculator | None = None,
        clock: Callable[[], int] = _now_epoch,
    ) -> None:
        tf_seconds(timeframe)
        self.symbol     = symbol.upper()
        self.timeframe  = timeframe
        self.feed       = feed
        self.calculator = calculator or VWAPCalculator()
        self._loader    = history_loader
        self._handlers  = handlers or StreamHandlers()
        self._clock     = clock
        self._last_candle_time: int | None = None
        self._current: Kline | None = None

        self.feed.on_message(self.handle_message)

    @property
    def topic(self) -> str:
        return KlineFeed.topic(BYBIT_INTERVAL[self.timeframe], self.symbol)

    @property
    def current_candle(self) -> Kline | None:
        return self._current

    async def start(self) -> None:
        """Seed VWAP from history, then subscribe."""
        self._seed()
        await self.feed.subscribe(self.topic)

    async def handle_message(self, message: dict[str, Any]) -> None:
        if message.get("topic") != self.topic:
            return
        items = message.get("data")
        if not isinstance(items, list):
            raise TransportError(f"Kline push without data array: {str(message)[:200]}")
        for item in items:
            self._apply(parse_kline_item(item))

    async def change_timeframe(self, timeframe: str) -> None:
        """Unsubscribe, drop all session state, reseed, resubscribe."""
        tf_seconds(timeframe)
        await self.feed.unsubscribe(self.topic)
        self.timeframe = timeframe
        self.calculator.reset()
        self._last_candle_time = None
        self._current          = None
        self._seed()
        await self.feed.subscribe(self.topic)
        logger.info("[Stream] %s switched to %s", self.symbol, timeframe)

    async def close(self) -> None:
        await self.feed.unsubscribe(self.topic)
        await self.feed.close()

    def seconds_remaining(self, now: int | None = None) -> int:
        """Seconds until the forming bar closes; 0 when no bar has been seen."""
        if self._current is None:
            return 0
        now = self._clock() if now is None else now
        close_time = self._current.open_time + tf_seconds(self.timeframe)
        return max(0, close_time - now)

    # ── Internals ─────────────────────────────────────────────────────────────

    def _seed(self) -> None:
        end   = self._clock()
        start = end - _HISTORY_DAYS * 86_400
        history = self._loader(self.symbol, self.timeframe, start, end)
        points  = self.calculator.add_candles(history)
        if history:
            latest = max(history, key=lambda c: c.open_time)
            self._last_candle_time = latest.open_time
            self._current          = latest
        logger.info(
            "[Stream] %s/%s seeded with %d candles, %d VWAP points",
            self.symbol, self.timeframe, len(history), len(points),
        )
        if self._handlers.on_vwap_point is not None:
            for p in points:
                self._handlers.on_vwap_point(p.time, p.value)

    def _apply(self, candle: Kline) -> None:
        is_new = candle.open_time != self._last_candle_time
        self._last_candle_time = candle.open_time
        self._current          = candle

        if self._handlers.on_candle_update is not None:
            self._handlers.on_candle_update(candle)
        if is_new and self._handlers.on_new_candle is not None:
            self._handlers.on_new_candle(candle)

        points = self.calculator.add_candle(candle)
        if self._handlers.on_vwap_point is not None:
            for p in points:
                self._handlers.on_vwap_point(p.time, p.value)
