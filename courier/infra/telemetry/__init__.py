"""
Telemetry Layer — Observability
================================

All other layers depend on this.

Provides:
  - Structured logging with delivery context (request id, action, attempt)
  - Prometheus metrics and the read-only delivery summary
  - Lifecycle event fan-out for notification collaborators

Usage:
    from courier.infra.telemetry import get_logger

    logger = get_logger(__name__)
    logger.info("request_enqueued", priority="high", depth=3)
"""

from courier.infra.telemetry.events import EventEmitter
from courier.infra.telemetry.logger import (
    StructuredLogger,
    get_logger,
    request_context,
    setup_logging,
)
from courier.infra.telemetry.metrics import DeliveryMetrics, PercentileTracker

__all__ = [
    "DeliveryMetrics",
    "EventEmitter",
    "PercentileTracker",
    "StructuredLogger",
    "get_logger",
    "request_context",
    "setup_logging",
]
