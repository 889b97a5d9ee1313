"""
Timer Scheduling
================

Every delay in the pipeline (dedup TTLs, retry backoff, circuit cooldown
checks) goes through an injected ``Scheduler`` rather than ad-hoc
``asyncio.sleep`` calls. Two implementations:

  AsyncioScheduler  wall-clock time, callbacks via ``loop.call_later``
  ManualScheduler   simulated time advanced explicitly; deterministic tests
                    and replays

``now()`` is milliseconds since the epoch so timestamps recorded in a
snapshot remain meaningful after a restart. ``monotonic()`` never steps
backwards and is used for in-process durations (latency, breaker window and
cooldown).
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

__all__ = ["AsyncioScheduler", "ManualScheduler", "ScheduledHandle", "Scheduler"]

class ScheduledHandle:
    """Cancel token for a scheduled callback."""

    __slots__ = ("_cancel", "_cancelled", "due_at")

    def __init__(self, due_at: float, cancel: Callable[[], None] | None = None) -> None:
        self.due_at = due_at
        self._cancel = cancel
        self._cancelled = False

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._cancel is not None:
            self._cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

class Scheduler(ABC):
    """Clock plus one-shot timers."""

    @abstractmethod
    def now(self) -> float:
        """Current time in milliseconds since the epoch."""

    @abstractmethod
    def monotonic(self) -> float:
        """Milliseconds on a clock unaffected by wall-clock steps; compare differences only."""

    @abstractmethod
    def schedule(self, delay_ms: float, fn: Callable[[], None]) -> ScheduledHandle:
        """Run ``fn`` once after ``delay_ms``; returns a cancel token."""

class AsyncioScheduler(Scheduler):
    """Timers on the running event loop."""

    def now(self) -> float:
        return time.time() * 1000

    def monotonic(self) -> float:
        return time.monotonic() * 1000

    def schedule(self, delay_ms: float, fn: Callable[[], None]) -> ScheduledHandle:
        loop = asyncio.get_running_loop()
        timer = loop.call_later(max(delay_ms, 0) / 1000, fn)
        return ScheduledHandle(self.now() + delay_ms, timer.cancel)

class ManualScheduler(Scheduler):
    """
    Simulated clock. Nothing fires until ``advance()`` moves time forward.

    Usage:
        scheduler = ManualScheduler()
        scheduler.schedule(1000, callback)
        scheduler.advance(999)   # nothing
        scheduler.advance(1)     # callback runs
    """

    def __init__(self, start_ms: float = 1_700_000_000_000.0) -> None:
        self._now = start_ms
        self._timers: list[tuple[float, int, ScheduledHandle, Callable[[], None]]] = []
        self._seq = itertools.count()
        self._wall_offset = 0.0

    def now(self) -> float:
        return self._now + self._wall_offset

    def monotonic(self) -> float:
        return self._now

    def schedule(self, delay_ms: float, fn: Callable[[], None]) -> ScheduledHandle:
        handle = ScheduledHandle(self._now + max(delay_ms, 0))
        heapq.heappush(self._timers, (handle.due_at, next(self._seq), handle, fn))
        return handle

    def advance(self, ms: float) -> int:
        """Move the clock forward, firing due callbacks in order. Returns how many ran."""
        target = self._now + ms
        fired = 0
        while self._timers and self._timers[0][0] <= target:
            due_at, _, handle, fn = heapq.heappop(self._timers)
            if handle.cancelled:
                continue
            self._now = max(self._now, due_at)
            fn()
            fired += 1
        self._now = target
        return fired

    def step_wall_clock(self, ms: float) -> None:
        """Shift ``now()`` by ``ms`` (may be negative) without moving timers or ``monotonic()``."""
        self._wall_offset += ms

    @property
    def pending(self) -> list[float]:
        """Delays (ms from now) of timers that have not fired or been cancelled."""
        return sorted(
            due_at - self._now for due_at, _, handle, _ in self._timers if not handle.cancelled
        )
