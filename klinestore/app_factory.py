from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from klinestore.api.backfill import router as backfill_router
from klinestore.api.health import router as health_router
from klinestore.api.klines import router as klines_router
from klinestore.config import settings


async def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    # Request body and query validation failures map to 400.
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


def create_app() -> FastAPI:
    app = FastAPI(title=settings.app_name)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(health_router)
    app.include_router(backfill_router)
    app.include_router(klines_router)
    return app
