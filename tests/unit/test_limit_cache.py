"""Tests for the limit lookup cache and its invalidation triggers."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from quotaflow.quota.cache import LimitLookupCache


class TestGetOrLoad:
    @pytest.mark.asyncio
    async def test_loads_once(self) -> None:
        cache = LimitLookupCache()
        loader = AsyncMock(return_value="plan")

        assert await cache.get_or_load(("account", "u1"), loader) == "plan"
        assert await cache.get_or_load(("account", "u1"), loader) == "plan"
        loader.assert_awaited_once()
        assert cache.hits == 1
        assert cache.misses == 1

    @pytest.mark.asyncio
    async def test_negative_lookups_cached(self) -> None:
        cache = LimitLookupCache()
        loader = AsyncMock(return_value=None)

        assert await cache.get_or_load(("member", "u1", "d1"), loader) is None
        assert await cache.get_or_load(("member", "u1", "d1"), loader) is None
        loader.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_loader_errors_not_cached(self) -> None:
        cache = LimitLookupCache()
        loader = AsyncMock(side_effect=[RuntimeError("db down"), "plan"])

        with pytest.raises(RuntimeError):
            await cache.get_or_load(("account", "u1"), loader)
        assert await cache.get_or_load(("account", "u1"), loader) == "plan"
        assert len(cache) == 1


class TestInvalidation:
    async def _filled(self) -> LimitLookupCache:
        cache = LimitLookupCache()
        for key in [
            ("member", "u1", "d1"),
            ("member", "u2", "d1"),
            ("member", "u1", "d2"),
            ("department", "d1"),
            ("department", "d2"),
            ("organization", "o1"),
            ("account", "u1"),
        ]:
            await cache.get_or_load(key, AsyncMock(return_value=key))
        return cache

    @pytest.mark.asyncio
    async def test_invalidate_member(self) -> None:
        cache = await self._filled()
        cache.invalidate_member("u1", "d1")
        assert len(cache) == 6

    @pytest.mark.asyncio
    async def test_invalidate_department_drops_members(self) -> None:
        cache = await self._filled()
        cache.invalidate_department("d1")
        # department d1 plus its two member entries
        assert len(cache) == 4
        loader = AsyncMock(return_value="fresh")
        assert await cache.get_or_load(("member", "u1", "d2"), loader) == ("member", "u1", "d2")
        loader.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalidate_plans(self) -> None:
        cache = await self._filled()
        cache.invalidate_organization("o1")
        cache.invalidate_account("u1")
        assert len(cache) == 5

    @pytest.mark.asyncio
    async def test_clear(self) -> None:
        cache = await self._filled()
        cache.clear()
        assert len(cache) == 0
