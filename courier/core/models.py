"""
Delivery Records
================

Plain records that flow through the delivery pipeline:

  RequestDescriptor  immutable description of one logical request
  QueueEntry         the queue's mutable tracking record for a descriptor
  AttemptRecord      one failed execution, kept for the caller's error history
  Outcome            normalised result of a single transport call
  DeliveryResult     what a successful ``submit`` resolves with
  LifecycleEvent     notification handed to event subscribers
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .exceptions import DeliveryError, ValidationError
from .types import EntryState, EventType, Priority

__all__ = [
    "AttemptRecord",
    "DeliveryResult",
    "LifecycleEvent",
    "Outcome",
    "QueueEntry",
    "RequestDescriptor",
    "canonical_payload",
    "new_request_id",
]

_SCALARS = (str, int, float, bool)

def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"

def canonical_payload(payload: Mapping[str, Any]) -> str:
    """Stable JSON form of a payload: sorted keys, no whitespace."""
    return json.dumps(dict(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

def _freeze_payload(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise ValidationError("payload must be a mapping of setting keys to values")
    frozen: dict[str, Any] = {}
    for key, value in payload.items():
        if not isinstance(key, str) or not key:
            raise ValidationError(f"payload key {key!r} must be a non-empty string")
        if value is not None and not isinstance(value, _SCALARS):
            raise ValidationError(
                f"payload value for {key!r} must be a string, number or boolean"
            )
        frozen[key] = value
    return MappingProxyType(frozen)

@dataclass(frozen=True, slots=True)
class RequestDescriptor:
    """Immutable record of one logical request."""

    action: str
    payload: Mapping[str, Any]
    created_at: float
    priority: Priority = Priority.NORMAL
    max_attempts: int = 3
    id: str = field(default_factory=new_request_id)

    def __post_init__(self) -> None:
        if not isinstance(self.action, str) or not self.action.strip():
            raise ValidationError("action must be a non-empty string")
        if not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ValidationError("max_attempts must be a positive integer")
        object.__setattr__(self, "priority", Priority(self.priority))
        if not isinstance(self.payload, MappingProxyType):
            object.__setattr__(self, "payload", _freeze_payload(self.payload))

    @property
    def canonical(self) -> str:
        return canonical_payload(self.payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "payload": dict(self.payload),
            "priority": self.priority.value,
            "created_at": self.created_at,
            "max_attempts": self.max_attempts,
        }

@dataclass(slots=True)
class AttemptRecord:
    """One failed execution of a request."""

    attempt: int
    kind: str
    code: str
    message: str
    at: float
    delay_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "at": self.at,
            "delay_ms": self.delay_ms,
        }

@dataclass(slots=True)
class QueueEntry:
    """
    Queue-local tracking record.

    Owned by the RequestQueue; other components read it but only the queue
    transitions ``state`` or touches ``attempt``.
    """

    descriptor: RequestDescriptor
    enqueued_at: float
    state: EntryState = EntryState.PENDING
    attempt: int = 0
    last_error: DeliveryError | None = None
    auth_refreshes: int = 0
    started_at: float | None = None
    completed_at: float | None = None
    history: list[AttemptRecord] = field(default_factory=list)
    # Monotonic submit time; None for entries restored from a snapshot.
    submitted_tick: float | None = None

    @property
    def id(self) -> str:
        return self.descriptor.id

    @property
    def action(self) -> str:
        return self.descriptor.action

    @property
    def priority(self) -> Priority:
        return self.descriptor.priority

    def history_dicts(self) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self.history]

@dataclass(frozen=True, slots=True)
class Outcome:
    """Normalised result of one transport call (or a synthesised failure)."""

    success: bool
    data: Any = None
    meta: Mapping[str, Any] = field(default_factory=dict)
    error: DeliveryError | None = None

    @classmethod
    def ok(cls, data: Any = None, meta: Mapping[str, Any] | None = None) -> Outcome:
        return cls(success=True, data=data, meta=meta or {})

    @classmethod
    def failed(cls, error: DeliveryError) -> Outcome:
        return cls(success=False, error=error)

@dataclass(frozen=True, slots=True)
class DeliveryResult:
    """Successful delivery as seen by the caller."""

    request_id: str
    action: str
    data: Any
    attempts: int
    meta: Mapping[str, Any] = field(default_factory=dict)

@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    """Observational notification; no acknowledgment expected."""

    type: EventType
    request_id: str
    action: str
    attempt: int
    detail: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "requestId": self.request_id,
            "action": self.action,
            "attempt": self.attempt,
            "detail": dict(self.detail),
        }
