"""
Bybit public kline websocket feed.
Subscribes by topic, auto-reconnects, resubscribes after reconnect.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Coroutine, Dict, Optional, Set

import websockets
from websockets.exceptions import WebSocketException

from klinestore.config import settings
from klinestore.data.timeframes import Kline
from klinestore.errors import TransportError

logger = logging.getLogger(__name__)

# Receives the full decoded push message: {"topic": ..., "data": [...], ...}
MessageHandler = Callable[[Dict[str, Any]], Coroutine[Any, Any, None]]


def parse_kline_item(item: Dict[str, Any]) -> Kline:
    """Convert one element of a kline push ``data`` array to a Kline."""
    try:
        return Kline(
            open_time=int(item["start"]) // 1000,
            open=float(item["open"]),
            high=float(item["high"]),
            low=float(item["low"]),
            close=float(item["close"]),
            volume=float(item["volume"]),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise TransportError(f"Malformed kline push: {item!r}") from exc


class KlineFeed:
    """Single public-stream connection carrying kline topics."""

    def __init__(
        self,
        url: Optional[str] = None,
        connect: Callable[..., Any] = websockets.connect,
        reconnect_delay: float = 3.0,
        ping_interval: float = 20,
    ):
        self.url = url or settings.bybit_ws_url
        self._connect = connect
        self._reconnect_delay = reconnect_delay
        self._ping_interval = ping_interval

        self._ws: Optional[Any] = None
        self._subs: Set[str] = set()
        self._handler: Optional[MessageHandler] = None
        self._running = False

    @staticmethod
    def topic(interval: str, symbol: str) -> str:
        """kline.{interval}.{symbol}, interval in Bybit notation ("5", "60", "D")."""
        return f"kline.{interval}.{symbol.upper()}"

    @property
    def subscriptions(self) -> Set[str]:
        return set(self._subs)

    def on_message(self, handler: MessageHandler) -> None:
        self._handler = handler

    async def subscribe(self, topic: str) -> None:
        if topic in self._subs:
            return
        self._subs.add(topic)
        if self._ws is not None:
            await self._ws.send(json.dumps({"op": "subscribe", "args": [topic]}))
            logger.info("[WS] Subscribed: %s", topic)

    async def unsubscribe(self, topic: str) -> None:
        if topic not in self._subs:
            return
        self._subs.discard(topic)
        if self._ws is not None:
            await self._ws.send(json.dumps({"op": "unsubscribe", "args": [topic]}))
            logger.info("[WS] Unsubscribed: %s", topic)

    async def run(self) -> None:
        """Connect and pump messages until close() is called."""
        self._running = True
        while self._running:
            try:
                async with self._connect(
                    self.url,
                    ping_interval=self._ping_interval,
                    ping_timeout=10,
                    close_timeout=5,
                ) as ws:
                    self._ws = ws
                    logger.info("[WS] Connected to %s", self.url)

                    if self._subs:
                        await ws.send(json.dumps({"op": "subscribe", "args": sorted(self._subs)}))
                        logger.info("[WS] Resubscribed to %d topic(s)", len(self._subs))

                    async for raw in ws:
                        await self._handle(raw)

            except websockets.ConnectionClosed as exc:
                logger.warning("[WS] Connection closed: %s", exc)
            except OSError as exc:
                logger.warning("[WS] Connection error: %s", exc)
            except WebSocketException as exc:
                logger.warning("[WS] Handshake or protocol error: %s", exc)
            finally:
                self._ws = None

            if self._running:
                logger.info("[WS] Reconnecting in %.0fs", self._reconnect_delay)
                await asyncio.sleep(self._reconnect_delay)

    async def close(self) -> None:
        """Stop the reconnect loop and release the connection."""
        self._running = False
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        logger.info("[WS] Closed")

    async def _handle(self, raw: Any) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("[WS] Invalid JSON: %s", str(raw)[:100])
            return

        # Subscription acks and pongs.
        if "op" in data:
            if data.get("success") is False:
                logger.error("[WS] Op failed: %s", data)
            return

        topic = data.get("topic", "")
        if not topic.startswith("kline.") or topic not in self._subs or self._handler is None:
            return

        try:
            await self._handler(data)
        except Exception:
            logger.exception("[WS] Handler error on %s", topic)
