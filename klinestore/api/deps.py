"""Shared service instances for the routers.

Routers take these through ``Depends`` so tests can swap them with
``app.dependency_overrides``.
"""
from __future__ import annotations

from functools import lru_cache

from klinestore.data.backfill import BackfillService
from klinestore.data.store import TimeSeriesStore


@lru_cache(maxsize=1)
def get_store() -> TimeSeriesStore:
    return TimeSeriesStore()


@lru_cache(maxsize=1)
def get_backfill_service() -> BackfillService:
    return BackfillService(store=get_store())
