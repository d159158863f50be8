"""Kline read API.

GET /api/price-klines?symbol=BTCUSDT&timeframe=1h&start=…&end=…
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from klinestore.api.deps import get_store
from klinestore.data.store import TimeSeriesStore
from klinestore.data.timeframes import require_utc
from klinestore.errors import StorageError, ValidationError

router = APIRouter(prefix="/api", tags=["klines"])


@router.get("/price-klines")
def price_klines(
    symbol: str = Query(min_length=1, description="Symbol, e.g. BTCUSDT"),
    timeframe: str = Query(default="5m", description="5m, 15m, 30m, 1h, 4h, 12h or 1d"),
    start: datetime = Query(description="First open_time to include"),
    end: datetime = Query(description="Last open_time to include"),
    store: TimeSeriesStore = Depends(get_store),
) -> dict[str, Any]:
    """Stored candles for one partition, ascending, inclusive bounds."""
    try:
        klines = store.get_klines(
            symbol.upper(),
            timeframe,
            require_utc(start, "start"),
            require_utc(end, "end"),
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return {
        "symbol":    symbol.upper(),
        "timeframe": timeframe,
        "count":     len(klines),
        "klines":    [k.to_dict() for k in klines],
    }
