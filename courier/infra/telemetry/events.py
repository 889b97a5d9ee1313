"""
Lifecycle Event Stream
======================

Fan-out of ``LifecycleEvent`` records to notification subscribers (toast UI,
sync observers, audit logs). Delivery is synchronous, at-most-once and
unacknowledged; a failing subscriber is logged and skipped so it can never
stall the delivery pipeline.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from typing import Any

from courier.core.models import LifecycleEvent
from courier.infra.telemetry.logger import get_logger

logger = get_logger(__name__)

EventSubscriber = Callable[[LifecycleEvent], Any]

class EventEmitter:
    """Synchronous publish/subscribe for lifecycle events."""

    def __init__(self, recent_limit: int = 100) -> None:
        self._subscribers: list[EventSubscriber] = []
        self._recent: deque[LifecycleEvent] = deque(maxlen=recent_limit)

    def subscribe(self, subscriber: EventSubscriber) -> Callable[[], None]:
        """Register a subscriber; returns a callable that unsubscribes it."""
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def emit(self, event: LifecycleEvent) -> None:
        self._recent.append(event)
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as exc:  # subscribers are external code
                logger.error(
                    "event_subscriber_failed",
                    exc=exc,
                    event_type=event.type.value,
                    request_id=event.request_id,
                )

    @property
    def recent(self) -> list[LifecycleEvent]:
        return list(self._recent)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
