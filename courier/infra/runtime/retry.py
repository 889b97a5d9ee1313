"""
Retry Policy — Exponential Backoff with Jitter
===============================================

Pure decision function: given a classified failure and how many executions
a request has used, say whether to try again and after how long.

    delay(n) = min(max_delay, base_delay * 2**n) * (1 ± jitter_fraction)

where ``n`` is the zero-based retry index (0 for the first retry). Jitter is
symmetric so a burst of failures does not retry in lockstep.

| kind                | retried | notes                                        |
|---------------------|---------|----------------------------------------------|
| network / timeout   | yes     |                                              |
| server              | yes     |                                              |
| rate-limit          | yes     | server ``retryAfterMs`` hint wins if present |
| auth                | yes     | refresh token first, attempt-neutral, capped |
| everything else     | no      | terminal                                     |
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from courier.core.exceptions import DeliveryError
from courier.core.types import ErrorKind

__all__ = ["RetryConfig", "RetryDecision", "RetryPolicy"]

_BACKOFF_KINDS = frozenset({
    ErrorKind.NETWORK,
    ErrorKind.TIMEOUT,
    ErrorKind.SERVER,
    ErrorKind.RATE_LIMIT,
})

@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior."""

    base_delay_ms: float = 1000.0
    max_delay_ms: float = 30000.0
    jitter_fraction: float = 0.1
    max_auth_refreshes: int = 1

@dataclass(frozen=True, slots=True)
class RetryDecision:
    """Outcome of ``RetryPolicy.decide``."""

    retry: bool
    delay_ms: float = 0.0
    refresh_auth: bool = False
    # False when the execution that just failed must not count toward max_attempts.
    count_attempt: bool = True
    reason: str = ""

class RetryPolicy:
    """
    Maps (error, attempts used) to a retry decision.

    Example:
        policy = RetryPolicy(RetryConfig(base_delay_ms=500))
        decision = policy.decide(ServerError("boom"), attempt=1, max_attempts=3)
        if decision.retry:
            queue.requeue_for_retry(entry, decision.delay_ms, error)
    """

    def __init__(self, config: RetryConfig | None = None, rng: random.Random | None = None):
        self._config = config or RetryConfig()
        self._rng = rng or random.Random()

    @property
    def config(self) -> RetryConfig:
        return self._config

    def backoff_bounds(self, retry_index: int) -> tuple[float, float]:
        """Inclusive range ``compute_delay(retry_index)`` can return."""
        nominal = self._nominal(retry_index)
        jitter = self._config.jitter_fraction
        return nominal * (1 - jitter), nominal * (1 + jitter)

    def _nominal(self, retry_index: int) -> float:
        cfg = self._config
        return min(cfg.max_delay_ms, cfg.base_delay_ms * (2 ** max(retry_index, 0)))

    def compute_delay(self, retry_index: int) -> float:
        """
        Backoff delay with jitter.

        Args:
            retry_index: Zero-based retry number (0 = first retry after initial failure)

        Returns:
            Delay in milliseconds
        """
        nominal = self._nominal(retry_index)
        jitter = self._config.jitter_fraction
        return nominal * (1 + self._rng.uniform(-jitter, jitter))

    def decide(
        self,
        error: DeliveryError,
        attempt: int,
        max_attempts: int,
        *,
        auth_refreshes: int = 0,
    ) -> RetryDecision:
        """
        Decide whether a failed execution is retried.

        Args:
            error: Classified failure of the execution that just finished
            attempt: Executions used so far, including the one that failed
            max_attempts: Execution budget of the request
            auth_refreshes: Token refreshes already spent on this request
        """
        kind = error.kind

        if kind == ErrorKind.AUTH:
            if auth_refreshes < self._config.max_auth_refreshes:
                return RetryDecision(
                    retry=True,
                    refresh_auth=True,
                    count_attempt=False,
                    reason="auth_refresh",
                )
            return RetryDecision(retry=False, reason="auth_refresh_exhausted")

        if kind not in _BACKOFF_KINDS or not error.retryable:
            return RetryDecision(retry=False, reason="not_retryable")

        if attempt >= max_attempts:
            return RetryDecision(retry=False, reason="attempts_exhausted")

        if kind == ErrorKind.RATE_LIMIT and error.retry_after_ms is not None:
            return RetryDecision(
                retry=True, delay_ms=max(float(error.retry_after_ms), 0.0), reason="retry_after"
            )

        return RetryDecision(
            retry=True, delay_ms=self.compute_delay(attempt - 1), reason="backoff"
        )
