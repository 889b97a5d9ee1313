"""
Delivery Runtime — Request Lifecycle Management
================================================

Provides:
  - Priority queue with bounded concurrency and durable snapshots
  - Per-action circuit breakers and the retry policy
  - Request deduplication and supersession
  - Transports to the settings endpoint
  - The DeliveryManager façade that drives all of the above

Depends on: telemetry
Depended on by: api
"""

from courier.infra.runtime.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from courier.infra.runtime.dedup import DedupResult, Deduplicator
from courier.infra.runtime.manager import BatchResult, DeliveryManager
from courier.infra.runtime.queue import QueueConfig, QueueSnapshot, RequestQueue
from courier.infra.runtime.retry import RetryConfig, RetryDecision, RetryPolicy
from courier.infra.runtime.scheduler import (
    AsyncioScheduler,
    ManualScheduler,
    ScheduledHandle,
    Scheduler,
)
from courier.infra.runtime.transport import (
    CallableTransport,
    HttpTransport,
    Transport,
    WireRequest,
)

__all__ = [
    "AsyncioScheduler",
    "BatchResult",
    "CallableTransport",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "DedupResult",
    "Deduplicator",
    "DeliveryManager",
    "HttpTransport",
    "ManualScheduler",
    "QueueConfig",
    "QueueSnapshot",
    "RequestQueue",
    "RetryConfig",
    "RetryDecision",
    "RetryPolicy",
    "ScheduledHandle",
    "Scheduler",
    "Transport",
    "WireRequest",
]
