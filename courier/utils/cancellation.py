"""
Request Cancellation Utility
============================

External cancellation for submitted requests. A caller hands a
``CancellationToken`` to ``DeliveryManager.submit``; firing it drops the
request from the queue or aborts its in-flight call.

For HTTP callers, ``watch_disconnect`` fires a token when the client goes
away so an abandoned request stops consuming a delivery slot.
"""

import asyncio
import logging
from collections.abc import Callable

from fastapi import Request

logger = logging.getLogger(__name__)

class CancellationToken:
    """
    One-shot cancellation signal.

    Usage:
        token = CancellationToken()
        future = manager.submit_nowait("save-settings", payload, cancel_token=token)
        token.cancel("user navigated away")
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation (immediately if already cancelled).

        Returns a callable that detaches it.
        """
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def detach() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return detach

    def cancel(self, reason: str | None = None) -> None:
        """Mark as cancelled and notify callbacks once."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:  # callbacks belong to other components
                logger.warning("Cancellation callback failed: %s", e)

async def watch_disconnect(
    request: Request, token: CancellationToken, check_interval: float = 0.5
) -> None:
    """Poll the client connection and cancel ``token`` once it drops.

    Run as a task alongside the awaited submission and cancel the task when
    the submission settles.
    """
    while not token.cancelled:
        try:
            if await request.is_disconnected():
                logger.info("Client disconnected: %s %s", request.method, request.url.path)
                token.cancel("client disconnected")
                return
        except (RuntimeError, OSError):
            return
        await asyncio.sleep(check_interval)

__all__ = ["CancellationToken", "watch_disconnect"]
