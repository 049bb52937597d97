"""Explicit lookup cache for plan and allocation configuration.

Entries expire after a short TTL and are dropped immediately by the
invalidation triggers the allocation service and plan owners call on writes.
Negative lookups (no allocation) are cached too.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Hashable
from typing import Any, TypeVar

from cachetools import TTLCache

from quotaflow.core.constants import LIMIT_CACHE_MAX_ENTRIES, LIMIT_CACHE_TTL
from quotaflow.core.logging import get_logger

log = get_logger(__name__)

V = TypeVar("V")

_MISSING = object()


class LimitLookupCache:
    """TTL cache keyed by ``(kind, *ids)`` tuples."""

    def __init__(
        self,
        ttl_seconds: float = LIMIT_CACHE_TTL,
        max_entries: int = LIMIT_CACHE_MAX_ENTRIES,
    ) -> None:
        self._entries: TTLCache[Hashable, Any] = TTLCache(maxsize=max_entries, ttl=ttl_seconds)
        self.hits = 0
        self.misses = 0

    async def get_or_load(
        self,
        key: tuple[str, ...],
        loader: Callable[[], Awaitable[V]],
    ) -> V:
        cached = self._entries.get(key, _MISSING)
        if cached is not _MISSING:
            self.hits += 1
            return cached  # type: ignore[no-any-return]
        self.misses += 1
        value = await loader()
        self._entries[key] = value
        return value

    def __len__(self) -> int:
        return len(self._entries)

    # ── Invalidation Triggers ────────────────────────────────────

    def invalidate_member(self, user_id: str, department_id: str) -> None:
        self._entries.pop(("member", user_id, department_id), None)

    def invalidate_department(self, department_id: str) -> None:
        """Drop the department entry and every member entry under it."""
        self._entries.pop(("department", department_id), None)
        stale = [
            key for key in list(self._entries.keys())
            if key[0] == "member" and key[2] == department_id
        ]
        for key in stale:
            self._entries.pop(key, None)

    def invalidate_organization(self, organization_id: str) -> None:
        self._entries.pop(("organization", organization_id), None)

    def invalidate_account(self, user_id: str) -> None:
        self._entries.pop(("account", user_id), None)

    def clear(self) -> None:
        self._entries.clear()
        log.debug("limit_cache_cleared")
