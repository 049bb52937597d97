"""Custom exception hierarchy for quotaflow."""

from __future__ import annotations

from typing import Any


class QuotaflowError(Exception):
    """Base exception for all quotaflow errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = context or {}


# ── Policy ───────────────────────────────────────────────────────

class QuotaExceededError(QuotaflowError):
    """A hard ceiling would be crossed. The only deliberate rejection."""

    code = "QUOTA_EXCEEDED"

    def __init__(
        self,
        resource: str,
        current: int,
        limit: int,
        message: str | None = None,
    ) -> None:
        super().__init__(
            message or f"Quota exceeded for {resource}: {current}/{limit}",
            {"resource": resource, "current": current, "limit": limit},
        )
        self.resource = resource
        self.current = current
        self.limit = limit


# ── Administration ───────────────────────────────────────────────

class AllocationValidationError(QuotaflowError):
    """An allocation request does not fit inside its parent's limits."""

    code = "INVALID_QUOTA"

    def __init__(self, message: str, violations: list[Any] | None = None) -> None:
        super().__init__(message, {"violations": violations or []})
        self.violations: list[Any] = violations or []


class AllocationNotFoundError(QuotaflowError):
    """No allocation exists for the requested member or department."""


# ── Storage Layer ────────────────────────────────────────────────

class CounterStoreError(QuotaflowError):
    """Real-time counter store unreachable or returned garbage."""


class LedgerError(QuotaflowError):
    """Durable usage ledger read or write failed."""


class PlanLookupError(QuotaflowError):
    """Plan or allocation configuration could not be loaded."""
