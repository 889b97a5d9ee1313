"""Unit tests for auth token providers."""

import asyncio

import pytest

from courier.core.auth import CallbackTokenProvider, StaticTokenProvider
from courier.core.exceptions import AuthError


class TestTokenProviders:
    @pytest.mark.asyncio
    async def test_static_refresh_counts(self):
        provider = StaticTokenProvider("abc")
        assert await provider.refresh() == "abc"
        assert provider.token == "abc"
        assert provider.refresh_count == 1

    @pytest.mark.asyncio
    async def test_callback_refresh_replaces_token(self):
        tokens = iter(["t2", "t3"])

        async def fetch():
            return next(tokens)

        provider = CallbackTokenProvider(fetch, initial="t1")
        assert provider.token == "t1"
        assert await provider.refresh() == "t2"
        assert provider.token == "t2"

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_fetch(self):
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0)
            return f"t{calls}"

        provider = CallbackTokenProvider(fetch)
        results = await asyncio.gather(provider.refresh(), provider.refresh(), provider.refresh())
        assert results == ["t1", "t1", "t1"]
        assert calls == 1

    @pytest.mark.asyncio
    async def test_empty_token_is_auth_error(self):
        async def fetch():
            return ""

        provider = CallbackTokenProvider(fetch, initial="old")
        with pytest.raises(AuthError):
            await provider.refresh()
        assert provider.token == "old"
