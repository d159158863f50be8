"""Backfill API endpoints.

POST /api/backfill          : run a backfill for one symbol and window
GET  /api/backfill/gaps     : base-timeframe gaps in a window (read-only)
GET  /api/backfill/status   : recent runs, newest first
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from klinestore.api.deps import get_backfill_service
from klinestore.data.backfill import BackfillService
from klinestore.errors import (
    BackfillConflictError,
    KlineStoreError,
    TransportError,
    ValidationError,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/backfill", tags=["backfill"])


class BackfillRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    symbol: str = Field(min_length=1)
    start: datetime
    end: datetime
    batch_size: int | None = Field(default=None, alias="batchSize")


def _to_http(exc: KlineStoreError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, BackfillConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, TransportError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@router.post("")
async def start_backfill(
    payload: BackfillRequest,
    service: BackfillService = Depends(get_backfill_service),
) -> dict[str, Any]:
    """Run a backfill to completion and return its final progress.

    Only one run per symbol is permitted; a second request for a symbol that
    is still running gets 409.
    """
    if service.is_running(payload.symbol):
        raise HTTPException(
            status_code=409,
            detail=f"A backfill for {payload.symbol.upper()} is already running. Check /api/backfill/status.",
        )
    try:
        progress = await service.start_backfill(
            payload.symbol,
            payload.start,
            payload.end,
            batch_days=payload.batch_size,
        )
    except KlineStoreError as exc:
        logger.warning("[Backfill] Request for %s rejected: %s", payload.symbol, exc)
        raise _to_http(exc) from exc
    return {"progress": progress.to_dict()}


@router.get("/gaps")
def backfill_gaps(
    symbol: str = Query(min_length=1, description="Symbol, e.g. BTCUSDT"),
    start: datetime = Query(description="Window start (ISO-8601 with offset)"),
    end: datetime = Query(description="Window end, exclusive"),
    service: BackfillService = Depends(get_backfill_service),
) -> dict[str, Any]:
    try:
        gaps = service.find_data_gaps(symbol, start, end)
    except KlineStoreError as exc:
        raise _to_http(exc) from exc
    return {
        "symbol":          symbol.upper(),
        "count":           len(gaps),
        "missing_candles": sum(g.missing_candles for g in gaps),
        "gaps":            [g.to_dict() for g in gaps],
    }


@router.get("/status")
def backfill_status(
    limit: int = Query(default=20, ge=1, le=500),
    service: BackfillService = Depends(get_backfill_service),
) -> dict[str, Any]:
    try:
        runs = service.get_backfill_status(limit)
    except KlineStoreError as exc:
        raise _to_http(exc) from exc
    return {"runs": runs}
