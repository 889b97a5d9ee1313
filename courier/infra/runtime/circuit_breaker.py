"""
Circuit Breaker — Per-Action Failure-Rate Gate
===============================================

Tracks a sliding window of recent outcomes for every action and fast-fails
actions that are persistently broken.

States:
  CLOSED     normal operation; opens when the failure ratio in the window
             reaches ``failure_ratio`` with at least ``min_samples`` outcomes
  OPEN       every request is rejected until ``cooldown_ms`` has elapsed
  HALF_OPEN  exactly one probe is admitted; success closes the circuit,
             failure reopens it. Other requests for the action wait in the
             queue (``can_dispatch`` is False) until the probe resolves.

The window holds at most ``window_size`` outcomes and none older than
``window_ms``. Window age and cooldown use the monotonic clock; the
reported timestamps are epoch milliseconds.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from courier.core.types import CircuitStatus
from courier.infra.runtime.scheduler import AsyncioScheduler, Scheduler
from courier.infra.telemetry import get_logger

logger = get_logger(__name__)

__all__ = ["CircuitBreaker", "CircuitBreakerConfig", "CircuitState"]

@dataclass(frozen=True)
class CircuitBreakerConfig:
    window_size: int = 20
    window_ms: float = 60_000.0
    failure_ratio: float = 0.5
    min_samples: int = 5
    cooldown_ms: float = 10_000.0

@dataclass
class CircuitState:
    """Breaker state for one action."""

    status: CircuitStatus = CircuitStatus.CLOSED
    window: deque[tuple[float, bool]] = field(default_factory=deque)
    opened_at: float | None = None
    opened_tick: float | None = None
    probe_in_flight: bool = False
    successes: int = 0
    failures: int = 0
    last_success_at: float | None = None
    last_failure_at: float | None = None

    def failure_rate(self) -> float:
        if not self.window:
            return 0.0
        return sum(1 for _, ok in self.window if not ok) / len(self.window)

StateListener = Callable[[str, CircuitStatus], None]

class CircuitBreaker:
    """
    Per-action circuit breaker registry.

    Usage:
        breaker = CircuitBreaker(CircuitBreakerConfig(), scheduler)
        if breaker.allow("save-settings"):
            ...call the endpoint...
            breaker.record("save-settings", success=True)
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        scheduler: Scheduler | None = None,
        on_state_change: StateListener | None = None,
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._clock = scheduler or AsyncioScheduler()
        self._states: dict[str, CircuitState] = {}
        self._on_state_change = on_state_change

    def _state(self, action: str) -> CircuitState:
        state = self._states.get(action)
        if state is None:
            state = CircuitState(window=deque(maxlen=self._config.window_size))
            self._states[action] = state
        return state

    def _transition(self, action: str, state: CircuitState, status: CircuitStatus) -> None:
        if state.status == status:
            return
        previous = state.status
        state.status = status
        if status == CircuitStatus.OPEN:
            state.opened_at = self._clock.now()
            state.opened_tick = self._clock.monotonic()
        logger.warning(
            "circuit_state_changed",
            circuit=action,
            from_status=previous.value,
            to_status=status.value,
            failure_rate=round(state.failure_rate(), 3),
        )
        if self._on_state_change is not None:
            self._on_state_change(action, status)

    def _prune(self, state: CircuitState) -> None:
        cutoff = self._clock.monotonic() - self._config.window_ms
        while state.window and state.window[0][0] < cutoff:
            state.window.popleft()

    def _cooled_down(self, state: CircuitState) -> bool:
        opened = state.opened_tick or 0.0
        return self._clock.monotonic() - opened >= self._config.cooldown_ms

    # ── Gate ───────────────────────────────────────────────────────

    def allow(self, action: str) -> bool:
        """
        Whether a request for ``action`` may call the endpoint now.

        In HALF_OPEN the first caller becomes the probe; callers should
        check ``can_dispatch`` first so the rest stay queued.
        """
        state = self._state(action)
        if state.status == CircuitStatus.CLOSED:
            return True
        if state.status == CircuitStatus.OPEN:
            if not self._cooled_down(state):
                return False
            self._transition(action, state, CircuitStatus.HALF_OPEN)
        if state.probe_in_flight:
            return False
        state.probe_in_flight = True
        return True

    def can_dispatch(self, action: str) -> bool:
        """False only while a half-open probe for ``action`` is outstanding."""
        state = self._states.get(action)
        return state is None or not (
            state.status == CircuitStatus.HALF_OPEN and state.probe_in_flight
        )

    def release_probe(self, action: str) -> None:
        """Forget an aborted probe without recording an outcome."""
        state = self._states.get(action)
        if state is not None:
            state.probe_in_flight = False

    def retry_in_ms(self, action: str) -> float | None:
        """Remaining cooldown for an open circuit."""
        state = self._states.get(action)
        if state is None or state.status != CircuitStatus.OPEN:
            return None
        opened = state.opened_tick or 0.0
        return max(0.0, self._config.cooldown_ms - (self._clock.monotonic() - opened))

    # ── Outcomes ───────────────────────────────────────────────────

    def record(self, action: str, success: bool) -> None:
        state = self._state(action)
        now = self._clock.now()
        tick = self._clock.monotonic()
        if success:
            state.successes += 1
            state.last_success_at = now
        else:
            state.failures += 1
            state.last_failure_at = now

        if state.status == CircuitStatus.HALF_OPEN:
            state.probe_in_flight = False
            if success:
                state.window.clear()
                self._transition(action, state, CircuitStatus.CLOSED)
            else:
                state.window.append((tick, False))
                self._transition(action, state, CircuitStatus.OPEN)
            return

        state.window.append((tick, success))
        self._prune(state)
        if state.status == CircuitStatus.CLOSED and (
            len(state.window) >= self._config.min_samples
            and state.failure_rate() >= self._config.failure_ratio
        ):
            self._transition(action, state, CircuitStatus.OPEN)

    # ── Administration ─────────────────────────────────────────────

    def status(self, action: str) -> dict[str, Any]:
        state = self._states.get(action)
        if state is None:
            return {
                "status": CircuitStatus.CLOSED.value,
                "failure_rate": 0.0,
                "samples": 0,
                "successes": 0,
                "failures": 0,
                "opened_at": None,
                "last_success_at": None,
                "last_failure_at": None,
            }
        self._prune(state)
        current = state.status
        if current == CircuitStatus.OPEN and self._cooled_down(state):
            current = CircuitStatus.HALF_OPEN
        return {
            "status": current.value,
            "failure_rate": round(state.failure_rate(), 3),
            "samples": len(state.window),
            "successes": state.successes,
            "failures": state.failures,
            "opened_at": state.opened_at,
            "last_success_at": state.last_success_at,
            "last_failure_at": state.last_failure_at,
        }

    def statuses(self) -> dict[str, dict[str, Any]]:
        return {action: self.status(action) for action in self._states}

    def reset(self, action: str) -> None:
        state = self._states.pop(action, None)
        if state is not None and state.status != CircuitStatus.CLOSED:
            logger.info("circuit_reset", circuit=action)
            if self._on_state_change is not None:
                self._on_state_change(action, CircuitStatus.CLOSED)
