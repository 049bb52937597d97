"""Health check endpoint — no auth required."""

from __future__ import annotations

from fastapi import APIRouter, Request

from config.settings import get_settings
from quotaflow import __version__
from quotaflow.api.models.schemas import HealthResponse
from quotaflow.core.logging import get_logger

log = get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    settings = get_settings()
    engine = getattr(request.app.state, "quota_engine", None)

    counter_store = "unknown"
    if engine is not None:
        healthy = await engine.usage.counters.ping()
        if not healthy:
            log.warning("counter_store_ping_failed")
        counter_store = "ok" if healthy else "unavailable"

    return HealthResponse(
        status="ok" if counter_store != "unavailable" else "degraded",
        version=__version__,
        environment=settings.quota_env,
        counter_store=counter_store,
    )
