"""Custom exception classes for Courier.

Includes:
- Base exception with API-friendly serialisation
- Delivery error taxonomy carrying retry and circuit metadata
- Helpers that map HTTP status codes and remote error codes to a kind
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any

from .types import ErrorKind

__all__ = [
    "AuthError",
    "CircuitOpenError",
    "ClientError",
    "CourierException",
    "DeliveryError",
    "DuplicateSupersededError",
    "NetworkError",
    "QueueFullError",
    "RateLimitError",
    "RequestCancelledError",
    "RequestTimeoutError",
    "ServerError",
    "SnapshotError",
    "ValidationError",
    "error_for_code",
    "error_for_status",
]


class CourierException(Exception):
    """Base exception for all Courier errors."""

    def __init__(
        self, detail: str, status_code: int = 500, error_code: str = "INTERNAL_ERROR"
    ):
        self.detail = detail
        self.status_code = status_code
        self.error_code = error_code
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(detail)

    def to_dict(self):
        """Convert exception to dictionary for API response."""
        return {
            "error": self.error_code,
            "detail": self.detail,
            "status_code": self.status_code,
            "timestamp": self.timestamp,
        }


class ValidationError(CourierException):
    """Raised when submit input is missing or malformed."""

    def __init__(self, detail: str):
        super().__init__(detail=detail, status_code=422, error_code="VALIDATION_ERROR")


class SnapshotError(CourierException):
    """Raised when a persisted queue snapshot cannot be decoded."""

    def __init__(self, detail: str):
        super().__init__(
            detail=f"Snapshot unreadable: {detail}",
            status_code=500,
            error_code="SNAPSHOT_ERROR",
        )


# =============================================================================
# DELIVERY ERRORS (with retry metadata)
# =============================================================================


_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.NETWORK: "Network connection problem. Please check your internet connection.",
    ErrorKind.TIMEOUT: "Request timed out. Please check your connection and try again.",
    ErrorKind.SERVER: "Server error occurred. Please try again in a moment.",
    ErrorKind.CLIENT: "Invalid request. Please refresh the page and try again.",
    ErrorKind.RATE_LIMIT: "Too many requests. Please wait a moment before trying again.",
    ErrorKind.AUTH: "Your session has expired. Please refresh the page.",
    ErrorKind.CIRCUIT_OPEN: "The service is temporarily unavailable. Please try again shortly.",
    ErrorKind.QUEUE_FULL: "Too many pending changes. Please wait for them to finish.",
    ErrorKind.SUPERSEDED: "This change was replaced by a newer one.",
    ErrorKind.CANCELLED: "The request was cancelled.",
}


class DeliveryError(CourierException):
    """Base exception for every failure the delivery pipeline can report.

    ``code`` is the remote (or synthesised) error code, ``kind`` the
    classification the retry policy and circuit breaker act on. ``attempts``
    and ``history`` are filled in when the error becomes terminal.
    """

    kind: ErrorKind = ErrorKind.NETWORK
    retryable: bool = True
    # Whether this failure counts against the endpoint's health.
    trips_circuit: bool = True
    default_status: int = 502

    def __init__(
        self,
        detail: str,
        *,
        code: str | None = None,
        status: int | None = None,
        retry_after_ms: float | None = None,
        original_error: BaseException | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(
            detail=detail,
            status_code=self.default_status,
            error_code=(code or self.kind.value).upper().replace("-", "_"),
        )
        self.code = code or self.kind.value
        self.status = status
        self.retry_after_ms = retry_after_ms
        self.original_error = original_error
        self.context = context or {}
        self.attempts = 0
        self.history: list[dict[str, Any]] = []

    @property
    def message(self) -> str:
        return self.detail

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES.get(self.kind, "Request failed. Please try again.")

    def with_attempts(
        self, attempts: int, history: list[dict[str, Any]] | None = None
    ) -> DeliveryError:
        """Attach the attempt count and history of the failed request."""
        self.attempts = attempts
        self.history = list(history or [])
        return self

    def to_dict(self):
        return {
            "kind": self.kind.value,
            "message": self.detail,
            "attempts": self.attempts,
            "lastErrorCode": self.code,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, code={self.code!r}, detail={self.detail!r})"


class NetworkError(DeliveryError):
    """Transport-level failure: connection refused, reset, DNS, bad response."""

    kind = ErrorKind.NETWORK


class RequestTimeoutError(DeliveryError):
    """No response within the per-attempt timeout."""

    kind = ErrorKind.TIMEOUT
    default_status = 504


class ServerError(DeliveryError):
    """Remote endpoint answered with a 5xx."""

    kind = ErrorKind.SERVER


class RateLimitError(DeliveryError):
    """Remote endpoint asked us to slow down (429 or explicit code)."""

    kind = ErrorKind.RATE_LIMIT
    default_status = 429


class AuthError(DeliveryError):
    """Expired or invalid credential; recoverable by one token refresh."""

    kind = ErrorKind.AUTH
    trips_circuit = False
    default_status = 401


class ClientError(DeliveryError):
    """Remote rejected the request (4xx other than auth and rate limiting)."""

    kind = ErrorKind.CLIENT
    retryable = False
    trips_circuit = False
    default_status = 400


class CircuitOpenError(DeliveryError):
    """Action is failing persistently; the transport was not called."""

    kind = ErrorKind.CIRCUIT_OPEN
    retryable = False
    trips_circuit = False
    default_status = 503

    def __init__(self, action: str, retry_in_ms: float | None = None):
        super().__init__(
            f"Circuit open for action '{action}'",
            retry_after_ms=retry_in_ms,
            context={"action": action},
        )


class QueueFullError(DeliveryError):
    """Queue already holds ``max_queue_size`` live requests."""

    kind = ErrorKind.QUEUE_FULL
    retryable = False
    trips_circuit = False
    default_status = 503

    def __init__(self, limit: int):
        super().__init__(
            f"Queue size limit exceeded ({limit})", context={"limit": limit}
        )


class DuplicateSupersededError(DeliveryError):
    """Request was replaced by a newer one touching the same settings."""

    kind = ErrorKind.SUPERSEDED
    retryable = False
    trips_circuit = False
    default_status = 409

    def __init__(self, request_id: str, superseded_by: str):
        super().__init__(
            f"Request {request_id} superseded by {superseded_by}",
            context={"superseded_by": superseded_by},
        )
        self.superseded_by = superseded_by


class RequestCancelledError(DeliveryError):
    """Request was cancelled before it completed."""

    kind = ErrorKind.CANCELLED
    retryable = False
    trips_circuit = False
    default_status = 499

    def __init__(self, detail: str = "Request cancelled"):
        super().__init__(detail)


# =============================================================================
# CLASSIFICATION
# =============================================================================

_AUTH_WORDS = frozenset(
    {"auth", "unauthorized", "unauthenticated", "nonce", "token", "security",
     "credential", "credentials", "forbidden", "session"}
)
_RATE_WORDS = frozenset({"rate", "ratelimit", "ratelimited", "throttled", "throttle"})
_AVAILABILITY_WORDS = frozenset({"server", "internal", "unavailable", "connection", "overloaded"})


def _code_words(code: str) -> set[str]:
    return {w for w in re.split(r"[^a-z0-9]+", code.lower()) if w}


def error_for_status(
    status: int,
    detail: str,
    *,
    code: str | None = None,
    retry_after_ms: float | None = None,
) -> DeliveryError:
    """Build the delivery error implied by a non-2xx HTTP status."""
    if status == 429:
        return RateLimitError(detail, code=code, status=status, retry_after_ms=retry_after_ms)
    if status in (401, 403):
        return AuthError(detail, code=code, status=status)
    if status == 408:
        return RequestTimeoutError(detail, code=code, status=status)
    if 400 <= status < 500:
        return ClientError(detail, code=code, status=status)
    if status >= 500:
        return ServerError(detail, code=code, status=status)
    return NetworkError(detail, code=code, status=status)


def error_for_code(
    code: str, detail: str, *, retry_after_ms: float | None = None
) -> DeliveryError:
    """Build the delivery error for a structured ``success: false`` response.

    The endpoint reports application errors by code. Anything that does not
    look like a credential, throttling or availability problem is a client
    error: the endpoint answered and refused.
    """
    words = _code_words(code)
    if retry_after_ms is not None or words & _RATE_WORDS or {"too", "many"} <= words:
        return RateLimitError(detail, code=code, retry_after_ms=retry_after_ms)
    if words & _AUTH_WORDS:
        return AuthError(detail, code=code)
    if "timeout" in words:
        return RequestTimeoutError(detail, code=code)
    if words & _AVAILABILITY_WORDS:
        return ServerError(detail, code=code)
    return ClientError(detail, code=code)
