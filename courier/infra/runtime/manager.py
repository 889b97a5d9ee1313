"""
Delivery Manager — Request Lifecycle Orchestration
====================================================

Top-level façade of the delivery pipeline:

    submit() → Deduplicator → RequestQueue → drain loop
             → CircuitBreaker → Transport → RetryPolicy
             → settle caller future, metrics, lifecycle events

Lifecycle of one logical request:

    submitted → (deduped-away | queued) → active
              → (succeeded | retrying → queued | failed | circuit-rejected)

Design:
  - All collaborators are injected; nothing here is a module-level singleton
  - The drain loop is synchronous and re-entrancy guarded; each admitted
    entry runs in its own asyncio task
  - Aborting an entry (supersede, cancel, stop) cancels its task and frees
    the slot immediately without touching the breaker or retry budget
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from courier.core.auth import AuthTokenProvider, StaticTokenProvider
from courier.core.config import Settings, get_settings
from courier.core.exceptions import (
    AuthError,
    CircuitOpenError,
    CourierException,
    DeliveryError,
    DuplicateSupersededError,
    NetworkError,
    QueueFullError,
    RequestCancelledError,
    ValidationError,
)
from courier.core.models import DeliveryResult, LifecycleEvent, Outcome, QueueEntry, RequestDescriptor
from courier.core.storage import StorageBackend, create_storage_backend
from courier.core.types import SAVE_SETTINGS_ACTION, EventType, Priority
from courier.infra.runtime.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from courier.infra.runtime.dedup import Deduplicator
from courier.infra.runtime.queue import QueueConfig, RequestQueue
from courier.infra.runtime.retry import RetryConfig, RetryPolicy
from courier.infra.runtime.scheduler import AsyncioScheduler, Scheduler
from courier.infra.runtime.transport import HttpTransport, Transport, WireRequest
from courier.infra.telemetry import DeliveryMetrics, EventEmitter, get_logger, request_context
from courier.utils.cancellation import CancellationToken

logger = get_logger(__name__)

__all__ = ["BatchResult", "DeliveryManager"]

@dataclass
class BatchResult:
    """Outcome of ``submit_batch``; ``results`` and ``errors`` are keyed by input index."""

    results: dict[int, DeliveryResult] = field(default_factory=dict)
    errors: dict[int, CourierException] = field(default_factory=dict)

    @property
    def success_count(self) -> int:
        return len(self.results)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success_count": self.success_count,
            "error_count": self.error_count,
            "results": {
                index: {"request_id": r.request_id, "data": r.data, "attempts": r.attempts}
                for index, r in sorted(self.results.items())
            },
            "errors": {index: e.to_dict() for index, e in sorted(self.errors.items())},
        }

def _copy_outcome(source: asyncio.Future[Any], target: asyncio.Future[Any]) -> None:
    if target.done():
        return
    if source.cancelled():
        target.cancel()
    elif source.exception() is not None:
        target.set_exception(source.exception())
    else:
        target.set_result(source.result())

class DeliveryManager:
    """
    Reliable delivery of actions to the settings endpoint.

    Usage:
        async with DeliveryManager.from_settings() as manager:
            result = await manager.submit("save-settings", {"menu_bg": "#000"})
    """

    def __init__(
        self,
        transport: Transport,
        *,
        scheduler: Scheduler | None = None,
        queue: RequestQueue | None = None,
        breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        dedup: Deduplicator | None = None,
        auth: AuthTokenProvider | None = None,
        metrics: DeliveryMetrics | None = None,
        events: EventEmitter | None = None,
        request_timeout_ms: float = 10_000.0,
        default_max_attempts: int = 3,
    ) -> None:
        self._scheduler = scheduler or AsyncioScheduler()
        self._metrics = metrics or DeliveryMetrics()
        self._transport = transport
        self._queue = queue or RequestQueue(QueueConfig(), self._scheduler, metrics=self._metrics)
        self._breaker = breaker or CircuitBreaker(
            CircuitBreakerConfig(),
            self._scheduler,
            on_state_change=self._metrics.record_circuit_state,
        )
        self._retry_policy = retry_policy or RetryPolicy()
        self._dedup = dedup or Deduplicator(self._scheduler)
        self._auth = auth or StaticTokenProvider()
        self._events = events or EventEmitter()
        self._request_timeout_ms = request_timeout_ms
        self._default_max_attempts = default_max_attempts

        self._futures: dict[str, asyncio.Future[DeliveryResult]] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._probes: set[str] = set()
        self._tokens: dict[str, tuple[CancellationToken, Callable[[], None]]] = {}
        self._owned: list[StorageBackend] = []
        self._draining = False
        self._started = False
        self._closed = False

        self._queue.set_drain_callback(self._drain)

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        transport: Transport | None = None,
        scheduler: Scheduler | None = None,
        storage: StorageBackend | None = None,
        auth: AuthTokenProvider | None = None,
    ) -> DeliveryManager:
        """Wire a manager from ``Settings``; unspecified collaborators are built here."""
        settings = settings or get_settings()
        scheduler = scheduler or AsyncioScheduler()
        metrics = DeliveryMetrics()
        owned: list[StorageBackend] = []
        if storage is None and settings.SNAPSHOT_ENABLED:
            storage = create_storage_backend(settings)
            owned.append(storage)

        queue = RequestQueue(
            QueueConfig(
                max_concurrent=settings.MAX_CONCURRENT,
                max_queue_size=settings.MAX_QUEUE_SIZE,
                history_limit=settings.HISTORY_LIMIT,
                snapshot_key=settings.SNAPSHOT_KEY,
                snapshot_max_age_ms=settings.SNAPSHOT_MAX_AGE_MS,
            ),
            scheduler,
            storage if settings.SNAPSHOT_ENABLED else None,
            metrics,
        )
        breaker = CircuitBreaker(
            CircuitBreakerConfig(
                window_size=settings.CIRCUIT_WINDOW_SIZE,
                window_ms=settings.CIRCUIT_WINDOW_MS,
                failure_ratio=settings.CIRCUIT_FAILURE_RATIO,
                min_samples=settings.CIRCUIT_MIN_SAMPLES,
                cooldown_ms=settings.CIRCUIT_COOLDOWN_MS,
            ),
            scheduler,
            on_state_change=metrics.record_circuit_state,
        )
        manager = cls(
            transport or HttpTransport(settings.ENDPOINT_URL),
            scheduler=scheduler,
            queue=queue,
            breaker=breaker,
            retry_policy=RetryPolicy(
                RetryConfig(
                    base_delay_ms=settings.RETRY_BASE_DELAY_MS,
                    max_delay_ms=settings.RETRY_MAX_DELAY_MS,
                    jitter_fraction=settings.RETRY_JITTER_FRACTION,
                    max_auth_refreshes=settings.RETRY_MAX_AUTH_REFRESHES,
                )
            ),
            dedup=Deduplicator(
                scheduler,
                window_ms=settings.DEDUP_WINDOW_MS,
                merge_partial_overlaps=settings.DEDUP_MERGE_PARTIAL_OVERLAPS,
            ),
            auth=auth or StaticTokenProvider(settings.AUTH_TOKEN),
            metrics=metrics,
            request_timeout_ms=settings.REQUEST_TIMEOUT_MS,
            default_max_attempts=settings.DEFAULT_MAX_ATTEMPTS,
        )
        manager._owned = owned
        return manager

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Restore the persisted queue and start draining it."""
        if self._started:
            return
        self._started = True
        self._closed = False
        restored = await self._queue.restore()
        logger.info("delivery_manager_started", restored=restored)
        self._drain()

    async def stop(self) -> None:
        """
        Abort in-flight calls, cancel pending callers and flush the snapshot.

        Live entries stay in the snapshot and are delivered after the next
        ``start()``.
        """
        if self._closed:
            return
        self._closed = True
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for request_id in list(self._probes):
            entry = self._queue.get(request_id)
            if entry is not None:
                self._breaker.release_probe(entry.action)
        self._probes.clear()

        for future in self._futures.values():
            future.cancel()
        self._futures.clear()
        for _, detach in self._tokens.values():
            detach()
        self._tokens.clear()
        self._dedup.clear()

        await self._queue.close()
        await self._transport.close()
        for storage in self._owned:
            await storage.close()
        self._started = False
        logger.info("delivery_manager_stopped", live=len(self._queue))

    async def __aenter__(self) -> DeliveryManager:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ── Submission ─────────────────────────────────────────────────

    async def submit(
        self,
        action: str,
        payload: Mapping[str, Any],
        *,
        priority: Priority | str = Priority.NORMAL,
        max_attempts: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> DeliveryResult:
        """
        Deliver ``action`` with ``payload``.

        Returns:
            DeliveryResult of the request that was actually delivered (the
            newer one when this request was superseded or deduplicated)

        Raises:
            ValidationError: missing or malformed input
            DeliveryError: terminal failure, with attempts and history attached
        """
        return await self.submit_nowait(
            action,
            payload,
            priority=priority,
            max_attempts=max_attempts,
            cancel_token=cancel_token,
        )

    def submit_nowait(
        self,
        action: str,
        payload: Mapping[str, Any],
        *,
        priority: Priority | str = Priority.NORMAL,
        max_attempts: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> asyncio.Future[DeliveryResult]:
        """Enqueue and return a future that settles with the delivery outcome."""
        if self._closed:
            raise CourierException(
                "Delivery manager is stopped", status_code=503, error_code="MANAGER_STOPPED"
            )
        descriptor = self._build_descriptor(action, payload, priority, max_attempts)
        loop = asyncio.get_running_loop()
        self._metrics.record_submitted(descriptor.action)

        verdict = self._dedup.check(descriptor)
        if verdict.is_duplicate and verdict.canonical_id is not None:
            self._metrics.record_deduped(descriptor.action)
            follower: asyncio.Future[DeliveryResult] = loop.create_future()
            if verdict.result is not None:
                follower.set_result(verdict.result)
                return follower
            primary = self._futures.get(verdict.canonical_id)
            if primary is not None:
                logger.info(
                    "request_deduplicated",
                    request_id=descriptor.id,
                    canonical_id=verdict.canonical_id,
                )
                primary.add_done_callback(lambda f: _copy_outcome(f, follower))
                if cancel_token is not None:
                    self._bind_follower_token(cancel_token, follower)
                return follower
            # Key outlived its request; deliver this one instead.
            self._dedup.forget(verdict.canonical_id)
            verdict = self._dedup.check(descriptor)

        descriptor = verdict.descriptor
        future: asyncio.Future[DeliveryResult] = loop.create_future()
        self._futures[descriptor.id] = future
        for old_id in verdict.superseded:
            self._supersede(old_id, descriptor.id, future)

        try:
            self._queue.enqueue(descriptor)
        except QueueFullError as exc:
            self._futures.pop(descriptor.id, None)
            self._dedup.release(descriptor, success=False)
            exc.with_attempts(0)
            self._metrics.record_failure(descriptor.action, exc.kind.value)
            self._emit(EventType.FAILED, descriptor.id, descriptor.action, 0, self._error_detail(exc))
            future.set_exception(exc)
            return future

        self._emit(
            EventType.QUEUED,
            descriptor.id,
            descriptor.action,
            0,
            {"priority": descriptor.priority.value, "superseded": list(verdict.superseded)},
        )
        logger.info(
            "request_queued",
            request_id=descriptor.id,
            action=descriptor.action,
            priority=descriptor.priority.value,
            depth=len(self._queue),
        )
        if cancel_token is not None:
            detach = cancel_token.add_callback(
                lambda: self.cancel(descriptor.id, reason=cancel_token.reason)
            )
            if descriptor.id in self._futures:
                self._tokens[descriptor.id] = (cancel_token, detach)
        self._drain()
        return future

    def _build_descriptor(
        self,
        action: str,
        payload: Mapping[str, Any],
        priority: Priority | str,
        max_attempts: int | None,
    ) -> RequestDescriptor:
        if not action:
            raise ValidationError("action is required")
        if payload is None:
            raise ValidationError("payload is required")
        try:
            priority = Priority(priority)
        except ValueError as exc:
            raise ValidationError(f"priority must be one of {[p.value for p in Priority]}") from exc
        return RequestDescriptor(
            action=action,
            payload=payload,
            created_at=self._scheduler.now(),
            priority=priority,
            max_attempts=max_attempts if max_attempts is not None else self._default_max_attempts,
        )

    async def submit_batch(
        self,
        requests: Iterable[Mapping[str, Any]],
        *,
        fail_fast: bool = False,
    ) -> BatchResult:
        """
        Submit several requests and wait for all of them.

        Each item is ``{"action", "payload", "priority"?, "max_attempts"?}``.
        With ``fail_fast`` the first error is raised (invalid input before
        anything is submitted); otherwise errors are collected per index.
        """
        items = list(requests)
        batch = BatchResult()
        descriptors: dict[int, dict[str, Any]] = {}
        for index, item in enumerate(items):
            try:
                descriptors[index] = {
                    "action": item["action"],
                    "payload": item["payload"],
                    "priority": item.get("priority", Priority.NORMAL),
                    "max_attempts": item.get("max_attempts"),
                }
                self._build_descriptor(**descriptors[index])
            except (KeyError, TypeError) as exc:
                batch.errors[index] = ValidationError(f"batch item {index} is malformed: {exc}")
            except ValidationError as exc:
                batch.errors[index] = exc
        if fail_fast and batch.errors:
            raise batch.errors[min(batch.errors)]

        futures: dict[int, asyncio.Future[DeliveryResult]] = {}
        for index, kwargs in descriptors.items():
            if index in batch.errors:
                continue
            try:
                futures[index] = self.submit_nowait(**kwargs)
            except CourierException as exc:
                if fail_fast:
                    raise
                batch.errors[index] = exc

        if fail_fast:
            results = await asyncio.gather(*futures.values())
            batch.results.update(zip(futures, results, strict=True))
            return batch

        outcomes = await asyncio.gather(*futures.values(), return_exceptions=True)
        for index, outcome in zip(futures, outcomes, strict=True):
            if isinstance(outcome, CourierException):
                batch.errors[index] = outcome
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                batch.results[index] = outcome
        return batch

    # ── Cancellation & Supersession ────────────────────────────────

    def cancel(self, request_id: str, reason: str | None = None) -> bool:
        """Drop a live request. Its caller is rejected with RequestCancelledError."""
        entry = self._queue.get(request_id)
        if entry is None:
            return False
        error = RequestCancelledError(reason or "Request cancelled")
        self._abort(entry, error)
        error.with_attempts(entry.attempt, entry.history_dicts())
        self._dedup.release(entry.descriptor, success=False)
        self._metrics.record_cancelled(entry.action)
        self._emit(EventType.FAILED, entry.id, entry.action, entry.attempt, self._error_detail(error))
        logger.info("request_cancelled", request_id=entry.id, reason=error.detail)
        self._settle(entry.id, error=error)
        return True

    def _supersede(
        self, old_id: str, new_id: str, new_future: asyncio.Future[DeliveryResult]
    ) -> None:
        entry = self._queue.get(old_id)
        old_future = self._futures.pop(old_id, None)
        token = self._tokens.pop(old_id, None)
        if entry is not None:
            self._abort(entry, DuplicateSupersededError(old_id, new_id))
            self._metrics.record_superseded(entry.action)
            logger.info("request_superseded", request_id=old_id, superseded_by=new_id)
        if old_future is not None and not old_future.done():
            new_future.add_done_callback(lambda f: _copy_outcome(f, old_future))
            if token is not None:
                token[1]()
                self._bind_follower_token(token[0], old_future)

    def _bind_follower_token(
        self, token: CancellationToken, future: asyncio.Future[DeliveryResult]
    ) -> None:
        def reject() -> None:
            if not future.done():
                future.set_exception(RequestCancelledError(token.reason or "Request cancelled"))

        token.add_callback(reject)

    def _abort(self, entry: QueueEntry, error: DeliveryError) -> None:
        task = self._tasks.pop(entry.id, None)
        if task is not None:
            task.cancel()
        if entry.id in self._probes:
            self._probes.discard(entry.id)
            self._breaker.release_probe(entry.action)
        self._queue.remove(entry, error)

    # ── Drain Loop ─────────────────────────────────────────────────

    def _drain(self) -> None:
        if self._draining or self._closed:
            return
        self._draining = True
        try:
            while True:
                entry = self._queue.dequeue(self._eligible)
                if entry is None:
                    break
                self._dispatch(entry)
        finally:
            self._draining = False

    def _eligible(self, entry: QueueEntry) -> bool:
        return self._breaker.can_dispatch(entry.action) and not self._writes_behind(entry)

    def _writes_behind(self, entry: QueueEntry) -> bool:
        """
        True while an older live ``save-settings`` entry writes one of this
        entry's keys. Live entries are kept in submission order, so the
        newest value for a key always reaches the endpoint last.
        """
        if entry.action != SAVE_SETTINGS_ACTION:
            return False
        keys = entry.descriptor.payload.keys()
        for other in self._queue.entries():
            if other is entry:
                return False
            if other.action == entry.action and not keys.isdisjoint(other.descriptor.payload):
                return True
        return False

    def _dispatch(self, entry: QueueEntry) -> None:
        if not self._breaker.allow(entry.action):
            error = CircuitOpenError(entry.action, self._breaker.retry_in_ms(entry.action))
            self._fail(entry, error, count_attempt=False)
            return
        if not self._breaker.can_dispatch(entry.action):
            self._probes.add(entry.id)
        self._tasks[entry.id] = asyncio.get_running_loop().create_task(
            self._execute(entry), name=f"courier-{entry.id}"
        )

    async def _execute(self, entry: QueueEntry) -> None:
        with request_context(request_id=entry.id, action=entry.action, attempt=entry.attempt):
            try:
                request = WireRequest(
                    action=entry.action,
                    payload=dict(entry.descriptor.payload),
                    auth_token=self._auth.token,
                    request_id=entry.id,
                )
                try:
                    outcome = await self._transport.send(
                        request, timeout_ms=self._request_timeout_ms
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # transports are pluggable
                    logger.error("transport_crashed", exc=exc)
                    outcome = Outcome.failed(
                        NetworkError(
                            f"Unexpected transport failure: {exc}",
                            code="transport_error",
                            original_error=exc,
                        )
                    )
                self._probes.discard(entry.id)
                await self._handle_outcome(entry, outcome)
            except asyncio.CancelledError:
                logger.debug("request_aborted")
                raise
            finally:
                if self._tasks.get(entry.id) is asyncio.current_task():
                    del self._tasks[entry.id]

    async def _handle_outcome(self, entry: QueueEntry, outcome: Outcome) -> None:
        if outcome.success:
            self._breaker.record(entry.action, True)
            self._succeed(entry, outcome)
            return

        error = outcome.error or NetworkError("Transport reported failure without an error")
        self._breaker.record(entry.action, not error.trips_circuit)
        decision = self._retry_policy.decide(
            error,
            entry.attempt,
            entry.descriptor.max_attempts,
            auth_refreshes=entry.auth_refreshes,
        )

        if decision.retry and decision.refresh_auth:
            try:
                await self._auth.refresh()
            except AuthError as refresh_error:
                self._fail(entry, refresh_error)
                return
            except Exception as exc:  # auth collaborator is external
                self._fail(
                    entry,
                    AuthError(
                        f"Token refresh failed: {exc}",
                        code="auth_refresh_failed",
                        original_error=exc,
                    ),
                )
                return
            logger.info("auth_token_refreshed")

        if decision.retry:
            self._queue.requeue_for_retry(
                entry,
                decision.delay_ms,
                error,
                count_attempt=decision.count_attempt,
                auth_refresh=decision.refresh_auth,
            )
            self._metrics.record_retry(entry.action, error.kind.value)
            self._emit(
                EventType.RETRYING,
                entry.id,
                entry.action,
                entry.attempt,
                {
                    "delayMs": round(decision.delay_ms, 1),
                    "errorKind": error.kind.value,
                    "errorCode": error.code,
                    "reason": decision.reason,
                },
            )
            logger.warning(
                "request_retrying",
                error_kind=error.kind.value,
                error_code=error.code,
                delay_ms=round(decision.delay_ms, 1),
                reason=decision.reason,
            )
            return

        self._fail(entry, error)

    # ── Settlement ─────────────────────────────────────────────────

    def _succeed(self, entry: QueueEntry, outcome: Outcome) -> None:
        self._queue.complete(entry, outcome)
        result = DeliveryResult(
            request_id=entry.id,
            action=entry.action,
            data=outcome.data,
            attempts=entry.attempt,
            meta=dict(outcome.meta),
        )
        self._dedup.release(entry.descriptor, success=True, result=result)
        latency_ms = self._latency_ms(entry)
        self._metrics.record_success(entry.action, latency_ms)
        self._emit(
            EventType.SUCCEEDED,
            entry.id,
            entry.action,
            entry.attempt,
            {"payloadKeys": list(entry.descriptor.payload), "durationMs": round(latency_ms, 1)},
        )
        logger.info("request_succeeded", attempts=entry.attempt, latency_ms=round(latency_ms, 1))
        self._settle(entry.id, result=result)

    def _latency_ms(self, entry: QueueEntry) -> float:
        if entry.submitted_tick is not None:
            return max(self._scheduler.monotonic() - entry.submitted_tick, 0.0)
        # Restored entries only have the persisted epoch timestamp.
        return max(self._scheduler.now() - entry.descriptor.created_at, 0.0)

    def _fail(self, entry: QueueEntry, error: DeliveryError, *, count_attempt: bool = True) -> None:
        self._queue.complete(entry, Outcome.failed(error), count_attempt=count_attempt)
        error.with_attempts(entry.attempt, entry.history_dicts())
        self._dedup.release(entry.descriptor, success=False)
        if isinstance(error, CircuitOpenError):
            self._metrics.record_circuit_rejected(entry.action)
            event = EventType.CIRCUIT_OPEN
        else:
            self._metrics.record_failure(entry.action, error.kind.value)
            event = EventType.FAILED
        self._emit(event, entry.id, entry.action, entry.attempt, self._error_detail(error))
        logger.warning(
            "request_failed",
            request_id=entry.id,
            error_kind=error.kind.value,
            error_code=error.code,
            attempts=entry.attempt,
        )
        self._settle(entry.id, error=error)

    def _settle(
        self,
        request_id: str,
        *,
        result: DeliveryResult | None = None,
        error: DeliveryError | None = None,
    ) -> None:
        token = self._tokens.pop(request_id, None)
        if token is not None:
            token[1]()
        future = self._futures.pop(request_id, None)
        if future is None or future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    @staticmethod
    def _error_detail(error: DeliveryError) -> dict[str, Any]:
        return {**error.to_dict(), "userMessage": error.user_message}

    def _emit(
        self,
        event_type: EventType,
        request_id: str,
        action: str,
        attempt: int,
        detail: Mapping[str, Any],
    ) -> None:
        self._events.emit(LifecycleEvent(event_type, request_id, action, attempt, dict(detail)))

    # ── Read Access ────────────────────────────────────────────────

    def subscribe(self, subscriber: Callable[[LifecycleEvent], Any]) -> Callable[[], None]:
        """Receive lifecycle events; returns an unsubscribe callable."""
        return self._events.subscribe(subscriber)

    @property
    def metrics(self) -> Mapping[str, Any]:
        return MappingProxyType(self._metrics.summary())

    def export_prometheus(self) -> bytes:
        return self._metrics.export_prometheus()

    @property
    def queue(self) -> RequestQueue:
        return self._queue

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def started(self) -> bool:
        return self._started

    def reset_circuit(self, action: str) -> None:
        self._breaker.reset(action)
        self._drain()

    def clear(self) -> int:
        """Drop all queued (not executing) requests; their callers are cancelled."""
        dropped = self._queue.clear()
        for entry in dropped:
            error = RequestCancelledError("Queue cleared").with_attempts(
                entry.attempt, entry.history_dicts()
            )
            self._dedup.release(entry.descriptor, success=False)
            self._metrics.record_cancelled(entry.action)
            self._emit(EventType.FAILED, entry.id, entry.action, entry.attempt, self._error_detail(error))
            self._settle(entry.id, error=error)
        return len(dropped)

    def status(self) -> dict[str, Any]:
        return {
            "started": self._started,
            "queue": self._queue.stats(),
            "entries": [
                {
                    "id": entry.id,
                    "action": entry.action,
                    "priority": entry.priority.value,
                    "state": entry.state.value,
                    "attempt": entry.attempt,
                    "enqueued_at": entry.enqueued_at,
                }
                for entry in self._queue.entries()
            ],
            "in_flight": len(self._tasks),
            "dedup_keys": len(self._dedup),
            "circuits": self._breaker.statuses(),
            "transport": self._transport.get_stats(),
            "history": self._queue.history,
        }
