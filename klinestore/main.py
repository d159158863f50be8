"""Command-line entry point.

    python -m klinestore.main                      # serve (default)
    python -m klinestore.main serve --port 8080
    python -m klinestore.main backfill BTCUSDT 2024-01-01 2024-02-01 --batch-days 7
    python -m klinestore.main stream BTCUSDT --timeframe 1h
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone

import uvicorn

from klinestore.app_factory import create_app
from klinestore.config import settings
from klinestore.data.backfill import BackfillProgress, BackfillService
from klinestore.data.database import initialize_database
from klinestore.data.store import TimeSeriesStore
from klinestore.data.timeframes import _from_epoch
from klinestore.errors import KlineStoreError
from klinestore.logging_setup import configure_logging
from klinestore.streaming.aggregator import StreamHandlers, StreamingAggregator
from klinestore.streaming.feed import KlineFeed

logger = logging.getLogger(__name__)


def _parse_utc(value: str) -> datetime:
    """ISO date or datetime; naive values are taken as UTC."""
    try:
        dt = datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 date: {value!r}") from exc
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="klinestore", description="Bybit kline store")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default=settings.app_host)
    serve.add_argument("--port", type=int, default=settings.app_port)

    backfill = sub.add_parser("backfill", help="backfill one symbol and exit")
    backfill.add_argument("symbol")
    backfill.add_argument("start", type=_parse_utc)
    backfill.add_argument("end", type=_parse_utc)
    backfill.add_argument("--batch-days", type=int, default=None)

    stream = sub.add_parser("stream", help="follow the live feed and log candles and VWAP")
    stream.add_argument("symbol")
    stream.add_argument("--timeframe", default="5m")
    return parser


def _log_progress(progress: BackfillProgress) -> None:
    logger.info(
        "[Backfill] %s %s batch %d/%d",
        progress.symbol, progress.status.value, progress.current, progress.total,
    )


def _run_backfill(args: argparse.Namespace) -> int:
    service = BackfillService()
    try:
        progress = asyncio.run(
            service.start_backfill(
                args.symbol, args.start, args.end,
                batch_days=args.batch_days,
                on_progress=_log_progress,
            )
        )
    except KlineStoreError as exc:
        logger.error("Backfill failed: %s", exc)
        return 1
    logger.info(
        "Backfill %s %s: %d batch(es), %s gap(s) remaining",
        progress.symbol, progress.status.value, progress.total, progress.gaps_remaining,
    )
    return 0


def _run_stream(args: argparse.Namespace) -> int:
    store = TimeSeriesStore()
    feed  = KlineFeed()
    handlers = StreamHandlers(
        on_new_candle=lambda c: logger.info(
            "[Stream] %s new bar %s O=%s", args.symbol.upper(), _from_epoch(c.open_time), c.open,
        ),
        on_vwap_point=lambda t, v: logger.debug("[Stream] VWAP %s = %.4f", _from_epoch(t), v),
    )
    aggregator = StreamingAggregator(args.symbol, args.timeframe, feed, store.get_klines, handlers)

    async def _follow() -> None:
        await aggregator.start()
        try:
            await feed.run()
        finally:
            await aggregator.close()

    try:
        asyncio.run(_follow())
    except KeyboardInterrupt:
        logger.info("Stream stopped")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    configure_logging(settings.log_level)
    initialize_database()

    if args.command == "backfill":
        return _run_backfill(args)
    if args.command == "stream":
        return _run_stream(args)

    host = getattr(args, "host", settings.app_host)
    port = getattr(args, "port", settings.app_port)
    logger.info("Starting %s on %s:%s", settings.app_name, host, port)
    uvicorn.run(create_app(), host=host, port=port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
