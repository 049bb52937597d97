"""FastAPI dependency injection — shared instances for routes."""

from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, Request, status

from config.settings import get_settings
from quotaflow.core.types import OwnerContext
from quotaflow.quota.engine import QuotaEngine

# ── Engine ────────────────────────────────────────────────────────


async def get_quota_engine(request: Request) -> QuotaEngine:
    """Provide the QuotaEngine built during application startup."""
    engine: QuotaEngine | None = getattr(request.app.state, "quota_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Quota engine not initialized",
        )
    return engine


# ── Owner context ─────────────────────────────────────────────────


async def get_owner(
    x_user_id: str = Header(..., min_length=1),
    x_organization_id: str | None = Header(default=None),
    x_department_id: str | None = Header(default=None),
) -> OwnerContext:
    """Owner of the request, as established by the upstream gateway."""
    if x_department_id and not x_organization_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Department-Id requires X-Organization-Id",
        )
    return OwnerContext(
        user_id=x_user_id,
        organization_id=x_organization_id or None,
        department_id=x_department_id or None,
    )


# ── Admin dependency ──────────────────────────────────────────────


async def require_admin(
    x_admin_token: str = Header(default=""),
    x_user_id: str = Header(default="system"),
) -> str:
    """Return the acting admin's id once the admin token matches."""
    expected = get_settings().api_admin_token.get_secret_value()
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin token required",
        )
    return x_user_id
