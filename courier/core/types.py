"""
Canonical Type Definitions
===========================

Single source of truth for shared enums used across the delivery stack.

This module defines:
- Priority: queue bucket a request is admitted to
- EntryState: queue-local state of a tracked request
- CircuitStatus: per-action circuit breaker status
- ErrorKind: classification of a delivery failure
- EventType: lifecycle notifications emitted by the manager
"""

from enum import StrEnum

__all__ = [
    "SAVE_SETTINGS_ACTION",
    "CircuitStatus",
    "EntryState",
    "ErrorKind",
    "EventType",
    "Priority",
]

# Action whose payload is deduplicated per setting key.
SAVE_SETTINGS_ACTION = "save-settings"

class Priority(StrEnum):
    """Queue priority buckets, drained in declaration order."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def ordered(cls) -> tuple["Priority", ...]:
        return (cls.HIGH, cls.NORMAL, cls.LOW)

_PRIORITY_RANK = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}

class EntryState(StrEnum):
    """State of a queue entry.

    ``done`` and ``failed`` are terminal.
    """

    PENDING = "pending"
    ACTIVE = "active"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EntryState.DONE, EntryState.FAILED)

class CircuitStatus(StrEnum):
    """Circuit breaker status for one action."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"

class ErrorKind(StrEnum):
    """Classification that drives retry and circuit decisions."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER = "server"
    CLIENT = "client"
    RATE_LIMIT = "rate-limit"
    AUTH = "auth"
    CIRCUIT_OPEN = "circuit-open"
    QUEUE_FULL = "queue-full"
    SUPERSEDED = "superseded"
    CANCELLED = "cancelled"
    VALIDATION = "validation"

class EventType(StrEnum):
    """Lifecycle notifications for the external notification collaborator."""

    QUEUED = "queued"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CIRCUIT_OPEN = "circuit-open"
