"""
Rotating Credentials
====================

The remote endpoint expects a short-lived token on every attempt. The
pipeline only needs two capabilities from whoever owns that credential:
read the current token, and refresh it after an auth failure.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from .exceptions import AuthError

__all__ = ["AuthTokenProvider", "CallbackTokenProvider", "StaticTokenProvider"]

class AuthTokenProvider(ABC):
    """Source of the short-lived credential attached to each attempt."""

    @property
    @abstractmethod
    def token(self) -> str:
        """Current token."""

    @abstractmethod
    async def refresh(self) -> str:
        """Obtain a fresh token. Raises AuthError when it cannot."""

class StaticTokenProvider(AuthTokenProvider):
    """Fixed token; refreshing is a no-op that counts calls."""

    def __init__(self, token: str = "") -> None:
        self._token = token
        self.refresh_count = 0

    @property
    def token(self) -> str:
        return self._token

    async def refresh(self) -> str:
        self.refresh_count += 1
        return self._token

class CallbackTokenProvider(AuthTokenProvider):
    """
    Token refreshed through an async callback.

    Concurrent refreshes share one in-flight call, so a burst of auth
    failures triggers a single round trip to the auth collaborator.
    """

    def __init__(self, fetch: Callable[[], Awaitable[str]], initial: str = "") -> None:
        self._fetch = fetch
        self._token = initial
        self._inflight: asyncio.Task[str] | None = None
        self.refresh_count = 0

    @property
    def token(self) -> str:
        return self._token

    async def refresh(self) -> str:
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._do_refresh())
        return await asyncio.shield(self._inflight)

    async def _do_refresh(self) -> str:
        token = await self._fetch()
        if not token:
            raise AuthError("Token refresh returned an empty credential", code="auth_refresh_failed")
        self._token = token
        self.refresh_count += 1
        return token
