"""
Deduplicator — Collapse Repeated Requests
==========================================

Two strategies, chosen by action:

  generic         one key per request: sha256(action | canonical payload).
                  A second identical request inside the window is tied to
                  the first (``canonical_id``) instead of being queued.

  save-settings   one key per (action, setting key). A newer request
                  supersedes every older live request whose keys are all
                  contained in its own; the manager drops the older request
                  and settles its caller with the newer result. Partial
                  overlaps stay separate unless ``merge_partial_overlaps``
                  is enabled, in which case the older request's other keys
                  are folded into the newer payload. Separate requests that
                  share a key are dispatched one after the other, oldest
                  first (``DeliveryManager``).

Keys self-expire ``window_ms`` after they are recorded. Nothing here is
persisted; the key table is rebuilt from new submissions after a restart.
"""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from courier.core.models import DeliveryResult, RequestDescriptor
from courier.core.types import SAVE_SETTINGS_ACTION
from courier.infra.runtime.scheduler import ScheduledHandle, Scheduler
from courier.infra.telemetry import get_logger

logger = get_logger(__name__)

__all__ = ["DedupResult", "Deduplicator"]

@dataclass(frozen=True, slots=True)
class DedupResult:
    """Verdict for one submission."""

    is_duplicate: bool
    descriptor: RequestDescriptor
    # Surviving request when is_duplicate.
    canonical_id: str | None = None
    # Settled result of the surviving request, if it already succeeded.
    result: DeliveryResult | None = None
    # Older live requests this submission replaces.
    superseded: tuple[str, ...] = ()

@dataclass
class _Claim:
    request_id: str
    action: str
    keys: tuple[str, ...]
    payload: Mapping[str, Any]
    handle: ScheduledHandle | None = None
    result: DeliveryResult | None = None
    per_setting: bool = False
    settings: frozenset[str] = field(default_factory=frozenset)

def dedup_key(action: str, canonical: str) -> str:
    return hashlib.sha256(f"{action}|{canonical}".encode()).hexdigest()

class Deduplicator:
    """Dedup key table with TTL expiry driven by the injected scheduler."""

    def __init__(
        self,
        scheduler: Scheduler,
        window_ms: float = 5000.0,
        merge_partial_overlaps: bool = False,
    ) -> None:
        self._scheduler = scheduler
        self._window_ms = window_ms
        self._merge = merge_partial_overlaps
        self._owners: dict[str, str] = {}
        self._claims: dict[str, _Claim] = {}

    @property
    def window_ms(self) -> float:
        return self._window_ms

    def __len__(self) -> int:
        return len(self._owners)

    def check(self, descriptor: RequestDescriptor) -> DedupResult:
        """Classify ``descriptor`` and record its keys."""
        if descriptor.action == SAVE_SETTINGS_ACTION and descriptor.payload:
            return self._check_settings(descriptor)

        key = dedup_key(descriptor.action, descriptor.canonical)
        owner = self._owners.get(key)
        if owner is not None and owner != descriptor.id:
            claim = self._claims[owner]
            logger.debug("dedup_hit", request_id=descriptor.id, canonical_id=owner)
            return DedupResult(
                is_duplicate=True,
                descriptor=descriptor,
                canonical_id=owner,
                result=claim.result,
            )
        self._claim(descriptor, (key,))
        return DedupResult(is_duplicate=False, descriptor=descriptor)

    def _check_settings(self, descriptor: RequestDescriptor) -> DedupResult:
        action = descriptor.action
        new_settings = frozenset(descriptor.payload)
        overlapping = {
            self._owners[dedup_key(action, name)]
            for name in new_settings
            if dedup_key(action, name) in self._owners
        }
        overlapping.discard(descriptor.id)

        merged_payload: dict[str, Any] | None = None
        if self._merge:
            for request_id in sorted(overlapping, key=self._claim_order):
                older = self._claims[request_id]
                if not older.settings <= new_settings:
                    merged_payload = merged_payload or {}
                    for name, value in older.payload.items():
                        if name not in descriptor.payload:
                            merged_payload[name] = value
        if merged_payload:
            merged_payload.update(descriptor.payload)
            descriptor = replace(descriptor, payload=merged_payload)
            new_settings = frozenset(descriptor.payload)
            logger.info(
                "dedup_payload_merged",
                request_id=descriptor.id,
                setting_count=len(new_settings),
            )

        superseded = tuple(
            request_id
            for request_id in sorted(overlapping, key=self._claim_order)
            if self._claims[request_id].settings <= new_settings
        )
        for request_id in superseded:
            self._drop(request_id)

        keys = tuple(dedup_key(action, name) for name in descriptor.payload)
        self._claim(descriptor, keys, settings=new_settings)
        if superseded:
            logger.info(
                "dedup_superseded",
                request_id=descriptor.id,
                superseded=list(superseded),
            )
        return DedupResult(is_duplicate=False, descriptor=descriptor, superseded=superseded)

    def _claim_order(self, request_id: str) -> int:
        return list(self._claims).index(request_id)

    def _claim(
        self,
        descriptor: RequestDescriptor,
        keys: tuple[str, ...],
        *,
        settings: frozenset[str] | None = None,
    ) -> None:
        self._drop(descriptor.id)
        claim = _Claim(
            request_id=descriptor.id,
            action=descriptor.action,
            keys=keys,
            payload=descriptor.payload,
            per_setting=settings is not None,
            settings=settings or frozenset(),
        )
        for key in keys:
            previous = self._owners.get(key)
            if previous is not None and previous in self._claims:
                # Partial overlap: the newer request owns the shared key.
                older = self._claims[previous]
                older.keys = tuple(k for k in older.keys if k != key)
            self._owners[key] = descriptor.id
        self._claims[descriptor.id] = claim
        claim.handle = self._scheduler.schedule(
            self._window_ms, lambda: self._expire(descriptor.id)
        )

    def _expire(self, request_id: str) -> None:
        if request_id in self._claims:
            logger.debug("dedup_key_expired", request_id=request_id)
            self._drop(request_id)

    def _drop(self, request_id: str) -> None:
        claim = self._claims.pop(request_id, None)
        if claim is None:
            return
        if claim.handle is not None:
            claim.handle.cancel()
        for key in claim.keys:
            if self._owners.get(key) == request_id:
                del self._owners[key]

    def release(
        self,
        descriptor: RequestDescriptor,
        success: bool,
        result: DeliveryResult | None = None,
    ) -> None:
        """
        Settle the keys of a finished request.

        Failed requests and all ``save-settings`` requests drop their keys so
        a re-submission is delivered again. Successful generic requests keep
        their key until it expires; later duplicates settle with ``result``.
        """
        claim = self._claims.get(descriptor.id)
        if claim is None:
            return
        if success and not claim.per_setting:
            claim.result = result
            return
        self._drop(descriptor.id)

    def forget(self, request_id: str) -> None:
        """Drop every key owned by ``request_id``."""
        self._drop(request_id)

    def clear(self) -> None:
        for request_id in list(self._claims):
            self._drop(request_id)
