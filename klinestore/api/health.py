from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter

from klinestore.config import settings

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
def health() -> dict[str, str]:
    """Liveness probe; does not touch the database."""
    return {
        "status": "ok",
        "service": settings.app_name,
        "timestamp": datetime.now(UTC).isoformat(),
    }
