"""
Transport — One Call to the Settings Endpoint
==============================================

Sends a single request and normalises whatever happens into an ``Outcome``:

  - ``{success: true, data, meta}``                 → Outcome.ok
  - ``{success: false, error: {code, message, ...}}`` → Outcome.failed(error_for_code)
  - non-2xx status                                  → Outcome.failed(error_for_status)
  - no response within the timeout                  → RequestTimeoutError
  - connection / protocol failure                   → NetworkError

Transports never raise for delivery failures. ``asyncio.CancelledError``
propagates so the manager can abort an in-flight call.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections import Counter
from collections.abc import Awaitable, Callable, Mapping
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from courier.core.exceptions import (
    DeliveryError,
    NetworkError,
    RequestTimeoutError,
    ServerError,
    error_for_code,
    error_for_status,
)
from courier.core.models import Outcome
from courier.infra.telemetry import get_logger

logger = get_logger(__name__)

__all__ = [
    "CallableTransport",
    "HttpTransport",
    "Transport",
    "WireError",
    "WireRequest",
    "WireResponse",
    "outcome_from_envelope",
]

# ── Wire Models ────────────────────────────────────────────────────

class WireRequest(BaseModel):
    """Request body sent to the endpoint."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    action: str
    payload: dict[str, Any]
    auth_token: str = Field(default="", alias="authToken")
    request_id: str = Field(alias="requestId")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

class ResponseMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    timestamp_ms: float | None = Field(default=None, alias="timestampMs")
    execution_ms: float | None = Field(default=None, alias="executionMs")

class WireError(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = "unknown_error"
    message: str = ""
    retry_after_ms: float | None = Field(default=None, alias="retryAfterMs")

class WireResponse(BaseModel):
    """Response envelope; ``error`` is set when ``success`` is false."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    data: Any = None
    meta: ResponseMeta | None = None
    error: WireError | None = None

def outcome_from_envelope(body: Any) -> Outcome:
    """Normalise a decoded response body into an Outcome."""
    try:
        envelope = WireResponse.model_validate(body)
    except PydanticValidationError as exc:
        return Outcome.failed(
            ServerError("Malformed response envelope", code="parse_error", original_error=exc)
        )
    if envelope.success:
        meta = envelope.meta.model_dump(by_alias=True, exclude_none=True) if envelope.meta else {}
        return Outcome.ok(envelope.data, meta)
    error = envelope.error or WireError()
    return Outcome.failed(
        error_for_code(
            error.code,
            error.message or error.code,
            retry_after_ms=error.retry_after_ms,
        )
    )

def _retry_after_ms(value: str | None) -> float | None:
    """Parse a Retry-After header (delta seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value) * 1000, 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max((when.timestamp() - time.time()) * 1000, 0.0)

# ── Transport Interface ────────────────────────────────────────────

class Transport(ABC):
    """Sends one request; returns a normalised outcome."""

    def __init__(self) -> None:
        self._request_count = 0
        self._success_count = 0
        self._error_counts: Counter[str] = Counter()
        self._total_ms = 0.0

    @abstractmethod
    async def _send(self, request: WireRequest, timeout_ms: float) -> Outcome:
        """Perform the call; may raise ``TimeoutError`` or transport exceptions."""

    async def send(self, request: WireRequest, *, timeout_ms: float) -> Outcome:
        start = time.perf_counter()
        try:
            outcome = await asyncio.wait_for(self._send(request, timeout_ms), timeout_ms / 1000)
        except TimeoutError as exc:
            outcome = Outcome.failed(
                RequestTimeoutError(
                    f"No response within {timeout_ms:.0f} ms",
                    code="timeout_error",
                    original_error=exc,
                )
            )
        except DeliveryError as exc:
            outcome = Outcome.failed(exc)
        except (httpx.HTTPError, OSError) as exc:
            outcome = Outcome.failed(
                NetworkError(f"Request failed: {exc}", code="network_error", original_error=exc)
            )

        elapsed_ms = (time.perf_counter() - start) * 1000
        self._record(outcome, elapsed_ms)
        if outcome.error is not None:
            logger.debug(
                "transport_failed",
                request_id=request.request_id,
                error_kind=outcome.error.kind.value,
                error_code=outcome.error.code,
                elapsed_ms=round(elapsed_ms, 1),
            )
        return outcome

    def _record(self, outcome: Outcome, elapsed_ms: float) -> None:
        self._request_count += 1
        self._total_ms += elapsed_ms
        if outcome.success:
            self._success_count += 1
        elif outcome.error is not None:
            self._error_counts[outcome.error.kind.value] += 1

    def get_stats(self) -> dict[str, Any]:
        count = self._request_count
        return {
            "request_count": count,
            "success_count": self._success_count,
            "error_count": count - self._success_count,
            "success_rate": self._success_count / count if count else 0.0,
            "average_response_ms": round(self._total_ms / count, 2) if count else 0.0,
            "error_counts_by_kind": dict(self._error_counts),
        }

    async def close(self) -> None:
        return None

# ── HTTP ───────────────────────────────────────────────────────────

class HttpTransport(Transport):
    """
    JSON-over-HTTP transport backed by ``httpx.AsyncClient``.

    Usage:
        transport = HttpTransport("https://example.test/settings")
        outcome = await transport.send(request, timeout_ms=10_000)
    """

    def __init__(
        self,
        endpoint_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__()
        self._endpoint_url = endpoint_url
        self._headers = {"Accept": "application/json", **(headers or {})}
        self._client = client
        self._owns_client = client is None

    def _ensure_client(self, timeout_ms: float) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_ms / 1000))
        return self._client

    async def _send(self, request: WireRequest, timeout_ms: float) -> Outcome:
        client = self._ensure_client(timeout_ms)
        headers = dict(self._headers)
        headers["X-Request-ID"] = request.request_id
        if request.auth_token:
            headers["Authorization"] = f"Bearer {request.auth_token}"
        try:
            response = await client.post(
                self._endpoint_url, json=request.to_wire(), headers=headers
            )
        except httpx.TimeoutException as exc:
            raise TimeoutError(str(exc)) from exc
        return self._normalise(response)

    def _normalise(self, response: httpx.Response) -> Outcome:
        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_success:
            if body is None:
                return Outcome.failed(
                    ServerError(
                        "Failed to parse response", code="parse_error", status=response.status_code
                    )
                )
            return outcome_from_envelope(body)

        structured: WireError | None = None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            try:
                structured = WireError.model_validate(body["error"])
            except PydanticValidationError:
                structured = None

        retry_after = _retry_after_ms(response.headers.get("Retry-After"))
        if structured is not None and structured.retry_after_ms is not None:
            retry_after = structured.retry_after_ms
        detail = (
            structured.message
            if structured is not None and structured.message
            else f"HTTP {response.status_code}: {response.reason_phrase}"
        )
        return Outcome.failed(
            error_for_status(
                response.status_code,
                detail,
                code=structured.code if structured is not None else f"http_{response.status_code}",
                retry_after_ms=retry_after,
            )
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

# ── In-Process ─────────────────────────────────────────────────────

EnvelopeHandler = Callable[[dict[str, Any]], Awaitable[Any]]

class CallableTransport(Transport):
    """Delivers to an async callable that returns a response envelope."""

    def __init__(self, handler: EnvelopeHandler) -> None:
        super().__init__()
        self._handler = handler

    async def _send(self, request: WireRequest, timeout_ms: float) -> Outcome:
        return outcome_from_envelope(await self._handler(request.to_wire()))
