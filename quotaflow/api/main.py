"""Quotaflow FastAPI application — entry point for the API server."""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from config.settings import get_settings
from quotaflow import __version__
from quotaflow.core.exceptions import (
    AllocationNotFoundError,
    AllocationValidationError,
    QuotaExceededError,
)
from quotaflow.core.logging import get_logger, is_configured, setup_logging
from quotaflow.data.db import close_engine
from quotaflow.quota.engine import build_engine

log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup/shutdown lifecycle — build the quota engine, flush it on exit."""
    settings = get_settings()
    if not is_configured():
        setup_logging(settings.log_level, json_output=settings.log_json)

    log.info("api_starting", environment=settings.quota_env)
    app.state.quota_engine = await build_engine(settings)
    yield
    await app.state.quota_engine.close()
    app.state.quota_engine = None
    await close_engine()
    log.info("api_shutdown")


# ── Error Mapping ─────────────────────────────────────────────────


async def _quota_exceeded(_request: Request, exc: QuotaExceededError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content={
            "error": exc.code,
            "detail": str(exc),
            "resource": exc.resource,
            "current": exc.current,
            "limit": exc.limit,
        },
    )


async def _invalid_allocation(_request: Request, exc: AllocationValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": exc.code,
            "detail": str(exc),
            "violations": [
                {
                    "field": v.field,
                    "requested": v.requested,
                    "available": v.available,
                    "parent_limit": v.parent_limit,
                }
                for v in exc.violations
            ],
        },
    )


async def _allocation_not_found(_request: Request, exc: AllocationNotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc)},
    )


def create_app(lifespan_enabled: bool = True) -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="Quotaflow API",
        description="Hierarchical resource quota and usage tracking",
        version=__version__,
        lifespan=lifespan if lifespan_enabled else None,
    )

    app.add_exception_handler(QuotaExceededError, _quota_exceeded)
    app.add_exception_handler(AllocationValidationError, _invalid_allocation)
    app.add_exception_handler(AllocationNotFoundError, _allocation_not_found)

    # Register routers
    from quotaflow.api.routes.allocations import router as allocations_router
    from quotaflow.api.routes.health import router as health_router
    from quotaflow.api.routes.quota import router as quota_router

    app.include_router(health_router, prefix="/api")
    app.include_router(quota_router, prefix="/api")
    app.include_router(allocations_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "quotaflow.api.main:app",
        host=_settings.api_host,
        port=_settings.api_port,
        reload=_settings.quota_env == "dev",
    )
