"""
Request Queue — Bounded Priority Admission with Durable Snapshots
==================================================================

Manages delivery admission with:
  - Three priority buckets (HIGH > NORMAL > LOW), FIFO within a bucket
  - A hard cap on live entries (pending + retrying + active)
  - A concurrency cap on active entries
  - Retry re-insertion at the head of the bucket after a scheduled delay
  - A bounded history of terminal entries
  - A snapshot written after every mutation and restored at startup

Design:
  - Every public operation mutates state without awaiting, so each one is
    atomic with respect to the manager's drain loop
  - Snapshot serialisation is synchronous; the storage write happens in a
    single background writer task that coalesces bursts of mutations
  - Only this class touches entry state, the active set and the snapshot
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from courier.core.exceptions import (
    CourierException,
    DeliveryError,
    QueueFullError,
    SnapshotError,
)
from courier.core.models import AttemptRecord, Outcome, QueueEntry, RequestDescriptor
from courier.core.storage import StorageBackend
from courier.core.types import EntryState, Priority
from courier.infra.runtime.scheduler import AsyncioScheduler, ScheduledHandle, Scheduler
from courier.infra.telemetry import DeliveryMetrics, get_logger

logger = get_logger(__name__)

__all__ = [
    "HistoryRecord",
    "QueueConfig",
    "QueueSnapshot",
    "RequestQueue",
]

SNAPSHOT_VERSION = 1

@dataclass(frozen=True)
class QueueConfig:
    """Queue capacity and persistence configuration."""

    max_concurrent: int = 5
    max_queue_size: int = 100
    history_limit: int = 50
    snapshot_key: str = "courier_request_queue"
    snapshot_max_age_ms: float = 3_600_000.0  # entries older than this are dropped on restore

# ── Snapshot Models ────────────────────────────────────────────────

class DescriptorSnapshot(BaseModel):
    id: str
    action: str
    payload: dict[str, str | int | float | bool | None]
    priority: Priority
    created_at: float
    max_attempts: int = Field(ge=1)

class AttemptSnapshot(BaseModel):
    attempt: int
    kind: str
    code: str
    message: str
    at: float
    delay_ms: float | None = None

class EntrySnapshot(BaseModel):
    descriptor: DescriptorSnapshot
    state: EntryState
    attempt: int = Field(ge=0)
    enqueued_at: float
    auth_refreshes: int = 0
    history: list[AttemptSnapshot] = Field(default_factory=list)

class HistoryRecord(BaseModel):
    """Terminal entry kept for metrics and status."""

    id: str
    action: str
    priority: Priority
    state: EntryState
    attempts: int
    enqueued_at: float
    completed_at: float
    duration_ms: float
    error_kind: str | None = None
    error_code: str | None = None

class QueueSnapshot(BaseModel):
    """Serialised queue: live entries plus bounded terminal history."""

    version: int = SNAPSHOT_VERSION
    saved_at: float
    entries: list[EntrySnapshot] = Field(default_factory=list)
    history: list[HistoryRecord] = Field(default_factory=list)

# ── Request Queue ──────────────────────────────────────────────────

class RequestQueue:
    """
    Priority queue with bounded concurrency and a durable snapshot.

    Usage:
        queue = RequestQueue(QueueConfig(max_concurrent=2), scheduler, storage)
        entry = queue.enqueue(descriptor)
        entry = queue.dequeue()
        queue.complete(entry, Outcome.ok(data))
    """

    def __init__(
        self,
        config: QueueConfig | None = None,
        scheduler: Scheduler | None = None,
        storage: StorageBackend | None = None,
        metrics: DeliveryMetrics | None = None,
    ) -> None:
        self._config = config or QueueConfig()
        self._scheduler = scheduler or AsyncioScheduler()
        self._storage = storage
        self._metrics = metrics

        self._buckets: dict[Priority, deque[QueueEntry]] = {p: deque() for p in Priority.ordered()}
        self._entries: dict[str, QueueEntry] = {}
        self._active: dict[str, QueueEntry] = {}
        self._retry_timers: dict[str, ScheduledHandle] = {}
        self._history: deque[HistoryRecord] = deque(maxlen=self._config.history_limit)
        self._drain_callback: Callable[[], None] | None = None

        self._pending_write: str | None = None
        self._writer: asyncio.Task[None] | None = None

        self._total_queued = 0
        self._total_processed = 0
        self._total_failed = 0
        self._peak_length = 0
        self._wait_total_ms = 0.0
        self._wait_samples = 0

    @property
    def config(self) -> QueueConfig:
        return self._config

    def set_drain_callback(self, callback: Callable[[], None] | None) -> None:
        """Called whenever a slot frees up or a retry becomes ready."""
        self._drain_callback = callback

    def _notify_drain(self) -> None:
        if self._drain_callback is not None:
            self._drain_callback()

    # ── Admission ──────────────────────────────────────────────────

    def enqueue(self, descriptor: RequestDescriptor) -> QueueEntry:
        """Append to the tail of the descriptor's priority bucket."""
        if len(self._entries) >= self._config.max_queue_size:
            logger.warning(
                "queue_full",
                request_id=descriptor.id,
                limit=self._config.max_queue_size,
            )
            raise QueueFullError(self._config.max_queue_size)
        if descriptor.id in self._entries:
            return self._entries[descriptor.id]

        entry = QueueEntry(
            descriptor=descriptor,
            enqueued_at=self._scheduler.now(),
            submitted_tick=self._scheduler.monotonic(),
        )
        self._buckets[descriptor.priority].append(entry)
        self._entries[entry.id] = entry
        self._total_queued += 1
        self._peak_length = max(self._peak_length, len(self._entries))
        logger.debug(
            "request_enqueued",
            request_id=entry.id,
            priority=descriptor.priority.value,
            depth=len(self._entries),
        )
        self._changed()
        return entry

    def dequeue(self, is_eligible: Callable[[QueueEntry], bool] | None = None) -> QueueEntry | None:
        """
        Admit the next entry, or return None without side effects.

        Scans buckets in priority order and returns the first entry that
        ``is_eligible`` accepts; skipped entries keep their position.
        """
        if len(self._active) >= self._config.max_concurrent:
            return None
        for priority in Priority.ordered():
            bucket = self._buckets[priority]
            for entry in bucket:
                if is_eligible is not None and not is_eligible(entry):
                    continue
                bucket.remove(entry)
                self._activate(entry)
                return entry
        return None

    def _activate(self, entry: QueueEntry) -> None:
        now = self._scheduler.now()
        entry.state = EntryState.ACTIVE
        entry.attempt += 1
        if entry.started_at is None:
            wait_ms = max(now - entry.enqueued_at, 0.0)
            self._wait_total_ms += wait_ms
            self._wait_samples += 1
            if self._metrics is not None:
                self._metrics.record_wait(wait_ms)
        entry.started_at = now
        self._active[entry.id] = entry
        self._changed()

    # ── Transitions ────────────────────────────────────────────────

    def requeue_for_retry(
        self,
        entry: QueueEntry,
        delay_ms: float,
        error: DeliveryError,
        *,
        count_attempt: bool = True,
        auth_refresh: bool = False,
    ) -> None:
        """
        Release the slot and re-insert at the head of the bucket after ``delay_ms``.

        ``count_attempt=False`` hands the failed execution back so it does
        not count toward ``max_attempts``.
        """
        if self._active.pop(entry.id, None) is None:
            raise ValueError(f"Entry {entry.id} is not active")
        entry.state = EntryState.RETRYING
        entry.last_error = error
        entry.history.append(
            AttemptRecord(
                attempt=entry.attempt,
                kind=error.kind.value,
                code=error.code,
                message=error.detail,
                at=self._scheduler.now(),
                delay_ms=delay_ms,
            )
        )
        if not count_attempt:
            entry.attempt = max(entry.attempt - 1, 0)
        if auth_refresh:
            entry.auth_refreshes += 1

        self._retry_timers[entry.id] = self._scheduler.schedule(
            delay_ms, lambda: self._reinsert(entry.id)
        )
        logger.debug(
            "retry_scheduled",
            request_id=entry.id,
            attempt=entry.attempt,
            delay_ms=round(delay_ms, 1),
        )
        self._changed()
        self._notify_drain()

    def _reinsert(self, entry_id: str) -> None:
        self._retry_timers.pop(entry_id, None)
        entry = self._entries.get(entry_id)
        if entry is None or entry.state != EntryState.RETRYING:
            return
        entry.state = EntryState.PENDING
        self._buckets[entry.priority].appendleft(entry)
        self._changed()
        self._notify_drain()

    def complete(
        self, entry: QueueEntry, outcome: Outcome, *, count_attempt: bool = True
    ) -> QueueEntry:
        """
        Move an admitted entry to ``done`` or ``failed``.

        ``count_attempt=False`` is for entries that were admitted but never
        executed (circuit rejection).
        """
        if self._entries.get(entry.id) is not entry:
            raise ValueError(f"Entry {entry.id} is not live")
        self._detach(entry)
        if not count_attempt:
            entry.attempt = max(entry.attempt - 1, 0)
        now = self._scheduler.now()
        if outcome.success:
            entry.state = EntryState.DONE
        else:
            entry.state = EntryState.FAILED
            entry.last_error = outcome.error
            if outcome.error is not None:
                entry.history.append(
                    AttemptRecord(
                        attempt=entry.attempt,
                        kind=outcome.error.kind.value,
                        code=outcome.error.code,
                        message=outcome.error.detail,
                        at=now,
                    )
                )
            self._total_failed += 1
        self._finish(entry, now)
        return entry

    def remove(self, entry: QueueEntry, error: DeliveryError) -> bool:
        """
        Terminally drop a live entry (superseded or cancelled).

        Frees its slot immediately. Returns False if the entry was not live.
        """
        if self._entries.get(entry.id) is not entry:
            return False
        self._detach(entry)
        entry.state = EntryState.FAILED
        entry.last_error = error
        self._finish(entry, self._scheduler.now())
        return True

    def clear(self) -> list[QueueEntry]:
        """Drop every entry that is not executing. Returns the dropped entries."""
        dropped = [entry for entry in self._entries.values() if entry.id not in self._active]
        for entry in dropped:
            self._detach(entry)
            entry.state = EntryState.FAILED
            entry.completed_at = self._scheduler.now()
            del self._entries[entry.id]
        if dropped:
            logger.info("queue_cleared", dropped=len(dropped))
        self._changed()
        return dropped

    def _detach(self, entry: QueueEntry) -> None:
        timer = self._retry_timers.pop(entry.id, None)
        if timer is not None:
            timer.cancel()
        bucket = self._buckets[entry.priority]
        if entry in bucket:
            bucket.remove(entry)
        self._active.pop(entry.id, None)

    def _finish(self, entry: QueueEntry, now: float) -> None:
        entry.completed_at = now
        del self._entries[entry.id]
        self._total_processed += 1
        error = entry.last_error if entry.state == EntryState.FAILED else None
        self._history.append(
            HistoryRecord(
                id=entry.id,
                action=entry.action,
                priority=entry.priority,
                state=entry.state,
                attempts=entry.attempt,
                enqueued_at=entry.enqueued_at,
                completed_at=now,
                duration_ms=max(now - entry.enqueued_at, 0.0),
                error_kind=error.kind.value if error is not None else None,
                error_code=error.code if error is not None else None,
            )
        )
        self._changed()
        self._notify_drain()

    # ── Read Access ────────────────────────────────────────────────

    def get(self, entry_id: str) -> QueueEntry | None:
        return self._entries.get(entry_id)

    def entries(self) -> list[QueueEntry]:
        return list(self._entries.values())

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def bucket_sizes(self) -> dict[str, int]:
        return {p.value: len(self._buckets[p]) for p in Priority.ordered()}

    @property
    def history(self) -> list[dict[str, Any]]:
        self._evict_history()
        return [record.model_dump(mode="json") for record in self._history]

    def stats(self) -> dict[str, Any]:
        states = [entry.state for entry in self._entries.values()]
        return {
            "pending": states.count(EntryState.PENDING),
            "retrying": states.count(EntryState.RETRYING),
            "active": len(self._active),
            "total": len(self._entries),
            "by_priority": self.bucket_sizes(),
            "capacity": self._config.max_queue_size,
            "max_concurrent": self._config.max_concurrent,
            "total_queued": self._total_queued,
            "total_processed": self._total_processed,
            "total_failed": self._total_failed,
            "peak_length": self._peak_length,
            "average_wait_ms": (
                round(self._wait_total_ms / self._wait_samples, 2) if self._wait_samples else 0.0
            ),
        }

    # ── Persistence ────────────────────────────────────────────────

    def _changed(self) -> None:
        if self._metrics is not None:
            self._metrics.record_queue_depth(self.bucket_sizes(), len(self._active))
        self.persist()

    def _evict_history(self) -> None:
        cutoff = self._scheduler.now() - self._config.snapshot_max_age_ms
        while self._history and self._history[0].completed_at < cutoff:
            self._history.popleft()

    def snapshot(self) -> QueueSnapshot:
        self._evict_history()
        entries = [
            EntrySnapshot(
                descriptor=DescriptorSnapshot(
                    id=entry.id,
                    action=entry.action,
                    payload=dict(entry.descriptor.payload),
                    priority=entry.priority,
                    created_at=entry.descriptor.created_at,
                    max_attempts=entry.descriptor.max_attempts,
                ),
                state=entry.state,
                attempt=entry.attempt,
                enqueued_at=entry.enqueued_at,
                auth_refreshes=entry.auth_refreshes,
                history=[AttemptSnapshot(**record.to_dict()) for record in entry.history],
            )
            for entry in self._entries.values()
        ]
        return QueueSnapshot(
            saved_at=self._scheduler.now(),
            entries=entries,
            history=list(self._history),
        )

    def persist(self) -> None:
        """Serialise now; write in the background."""
        if self._storage is None:
            return
        self._pending_write = self.snapshot().model_dump_json()
        if self._writer is not None and not self._writer.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; flush() writes it.
            return
        self._writer = loop.create_task(self._write_pending())

    async def _write_pending(self) -> None:
        while self._pending_write is not None and self._storage is not None:
            data, self._pending_write = self._pending_write, None
            if not await self._storage.set(self._config.snapshot_key, data):
                logger.warning("snapshot_write_failed", key=self._config.snapshot_key)

    async def flush(self) -> None:
        """Wait until the latest snapshot has been handed to storage."""
        if self._writer is not None and not self._writer.done():
            await self._writer
        if self._pending_write is not None:
            await self._write_pending()

    @staticmethod
    def decode_snapshot(raw: str) -> QueueSnapshot:
        try:
            snapshot = QueueSnapshot.model_validate_json(raw)
        except PydanticValidationError as exc:
            raise SnapshotError(str(exc)) from exc
        if snapshot.version != SNAPSHOT_VERSION:
            raise SnapshotError(f"unsupported version {snapshot.version}")
        return snapshot

    async def restore(self) -> int:
        """
        Re-admit entries from the stored snapshot. Returns how many.

        Every live entry comes back as ``pending`` with its attempt count;
        entries older than ``snapshot_max_age_ms`` are dropped. An unreadable
        snapshot is deleted.
        """
        if self._storage is None:
            return 0
        raw = await self._storage.get(self._config.snapshot_key)
        if raw is None:
            return 0
        try:
            snapshot = self.decode_snapshot(raw)
        except SnapshotError as exc:
            logger.warning("snapshot_discarded", reason=exc.detail[:200])
            await self._storage.delete(self._config.snapshot_key)
            return 0

        cutoff = self._scheduler.now() - self._config.snapshot_max_age_ms
        restored = stale = 0
        for saved in sorted(snapshot.entries, key=lambda s: s.enqueued_at):
            if saved.enqueued_at < cutoff:
                stale += 1
                continue
            if saved.descriptor.id in self._entries:
                continue
            if len(self._entries) >= self._config.max_queue_size:
                logger.warning("snapshot_entry_dropped", request_id=saved.descriptor.id)
                continue
            try:
                entry = self._entry_from_snapshot(saved)
            except CourierException as exc:
                logger.warning(
                    "snapshot_entry_invalid", request_id=saved.descriptor.id, reason=exc.detail
                )
                continue
            self._buckets[entry.priority].append(entry)
            self._entries[entry.id] = entry
            restored += 1

        for record in snapshot.history:
            if record.completed_at >= cutoff:
                self._history.append(record)

        self._peak_length = max(self._peak_length, len(self._entries))
        logger.info("snapshot_restored", restored=restored, stale=stale)
        self._changed()
        return restored

    @staticmethod
    def _entry_from_snapshot(saved: EntrySnapshot) -> QueueEntry:
        d = saved.descriptor
        descriptor = RequestDescriptor(
            id=d.id,
            action=d.action,
            payload=d.payload,
            priority=d.priority,
            created_at=d.created_at,
            max_attempts=d.max_attempts,
        )
        return QueueEntry(
            descriptor=descriptor,
            enqueued_at=saved.enqueued_at,
            state=EntryState.PENDING,
            attempt=saved.attempt,
            auth_refreshes=saved.auth_refreshes,
            history=[AttemptRecord(**record.model_dump()) for record in saved.history],
        )

    def suspend(self) -> int:
        """
        Return active and retrying entries to the head of their buckets.

        Used on shutdown: an interrupted call has no known outcome, so the
        entry is delivered again (attempt preserved) after the next start.
        """
        for timer in self._retry_timers.values():
            timer.cancel()
        self._retry_timers.clear()
        interrupted = [
            entry
            for entry in self._entries.values()
            if entry.state in (EntryState.ACTIVE, EntryState.RETRYING)
        ]
        for entry in sorted(interrupted, key=lambda e: e.enqueued_at, reverse=True):
            self._active.pop(entry.id, None)
            entry.state = EntryState.PENDING
            self._buckets[entry.priority].appendleft(entry)
        if interrupted:
            self._changed()
        return len(interrupted)

    async def close(self) -> None:
        """Suspend in-flight work and flush the final snapshot."""
        self.suspend()
        await self.flush()
