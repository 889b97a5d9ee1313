"""
Delivery Manager — Unit Tests
=============================

End-to-end request lifecycles against a scripted transport and a simulated
clock.
"""

import asyncio
import random

import pytest

from courier.core.auth import StaticTokenProvider
from courier.core.exceptions import (
    AuthError,
    CircuitOpenError,
    ClientError,
    CourierException,
    QueueFullError,
    RequestCancelledError,
    RequestTimeoutError,
    ServerError,
    ValidationError,
)
from courier.core.models import Outcome
from courier.core.storage import InMemoryBackend
from courier.core.types import EntryState, EventType, Priority
from courier.infra.runtime.circuit_breaker import CircuitBreakerConfig
from courier.infra.runtime.queue import QueueConfig
from courier.infra.runtime.scheduler import ManualScheduler
from courier.utils.cancellation import CancellationToken
from delivery_helpers import GatedTransport, StubTransport, build_manager, settle


def _server_error():
    return Outcome.failed(ServerError("boom", status=500, code="http_500"))


class TestDeliveryScenarios:
    def setup_method(self):
        self.scheduler = ManualScheduler()
        self.events = []

    def _manager(self, transport, **kwargs):
        manager = build_manager(transport, self.scheduler, **kwargs)
        manager.subscribe(self.events.append)
        return manager

    def _events(self, event_type):
        return [event for event in self.events if event.type == event_type]

    @pytest.mark.asyncio
    async def test_retries_with_backoff_then_succeeds(self):
        transport = StubTransport([_server_error(), Outcome.failed(RequestTimeoutError("slow"))])
        manager = self._manager(transport)

        future = manager.submit_nowait("save-settings", {"menu_bg": "#ff0000"})
        await settle()
        assert len(transport.calls) == 1
        first_delay = self.scheduler.pending[0]
        assert 900 <= first_delay <= 1100

        self.scheduler.advance(first_delay)
        await settle()
        assert len(transport.calls) == 2
        second_delay = self.scheduler.pending[0]
        assert 1800 <= second_delay <= 2200

        self.scheduler.advance(second_delay)
        await settle()
        result = await future
        assert result.attempts == 3
        assert result.data == {"saved": True}

        retrying = self._events(EventType.RETRYING)
        assert len(retrying) == 2
        assert [event.detail["errorKind"] for event in retrying] == ["server", "timeout"]
        assert len(self._events(EventType.SUCCEEDED)) == 1

    @pytest.mark.asyncio
    async def test_concurrency_limit_holds_sixth_request(self):
        transport = StubTransport(hold=True)
        manager = self._manager(transport, queue_config=QueueConfig(max_concurrent=5))

        futures = [manager.submit_nowait("save-settings", {f"key_{n}": n}) for n in range(6)]
        await settle()
        assert transport.in_flight == 5
        assert manager.queue.active_count == 5
        sixth = manager.queue.get(manager.status()["entries"][-1]["id"])
        assert sixth.state == EntryState.PENDING

        transport.release.set()
        results = await asyncio.gather(*futures)
        assert len(results) == 6
        assert transport.max_in_flight == 5
        assert len(transport.calls) == 6

    @pytest.mark.asyncio
    async def test_rapid_saves_of_same_key_deliver_latest_only(self):
        transport = StubTransport()
        manager = self._manager(transport)

        first = manager.submit_nowait("save-settings", {"menu_bg": "#fff"})
        self.scheduler.advance(200)
        second = manager.submit_nowait("save-settings", {"menu_bg": "#000"})
        await settle()

        assert len(transport.calls) == 1
        assert transport.calls[0].payload == {"menu_bg": "#000"}
        first_result = await first
        second_result = await second
        assert first_result is second_result
        assert manager.metrics["counts"]["superseded"] == 1

    @pytest.mark.asyncio
    async def test_superseding_in_flight_save_aborts_its_call(self):
        transport = StubTransport(hold=True)
        manager = self._manager(transport)

        first = manager.submit_nowait("save-settings", {"menu_bg": "#fff"})
        await settle()
        assert transport.in_flight == 1
        assert manager.queue.active_count == 1

        second = manager.submit_nowait("save-settings", {"menu_bg": "#000"})
        await settle()
        assert len(transport.calls) == 2
        assert transport.in_flight == 1
        assert manager.queue.active_count == 1

        transport.release.set()
        second_result = await second
        assert (await first) is second_result
        assert second_result.attempts == 1
        assert transport.calls[-1].payload == {"menu_bg": "#000"}
        assert manager.queue.active_count == 0
        circuit = manager.breaker.status("save-settings")
        assert circuit["failures"] == 0
        assert circuit["samples"] == 1
        assert self._events(EventType.RETRYING) == []
        assert self._events(EventType.FAILED) == []

    @pytest.mark.asyncio
    async def test_partial_overlap_waits_for_older_save(self):
        transport = StubTransport(hold=True)
        manager = self._manager(transport)

        older = manager.submit_nowait("save-settings", {"menu_bg": "#fff", "menu_fg": "#111"})
        await settle()
        newer = manager.submit_nowait("save-settings", {"menu_bg": "#000"})
        unrelated = manager.submit_nowait("save-settings", {"font": "serif"})
        await settle()

        assert sum("menu_bg" in call.payload for call in transport.calls) == 1
        assert [dict(call.payload) for call in transport.calls] == [
            {"menu_bg": "#fff", "menu_fg": "#111"},
            {"font": "serif"},
        ]

        transport.release.set()
        older_result, newer_result, _ = await asyncio.gather(older, newer, unrelated)
        assert older_result is not newer_result
        assert transport.calls[-1].payload == {"menu_bg": "#000"}
        assert manager.metrics["counts"]["superseded"] == 0

    @pytest.mark.asyncio
    async def test_partial_overlap_waits_for_older_save_to_finish_retrying(self):
        transport = StubTransport([_server_error()], hold=True)
        manager = self._manager(transport)

        manager.submit_nowait("save-settings", {"menu_bg": "#fff", "menu_fg": "#111"})
        await settle()
        newer = manager.submit_nowait("save-settings", {"menu_bg": "#000"})
        transport.release.set()
        await settle()
        assert len(transport.calls) == 1

        self.scheduler.advance(self.scheduler.pending[0])
        await settle()
        await newer
        assert [sorted(call.payload) for call in transport.calls] == [
            ["menu_bg", "menu_fg"],
            ["menu_bg", "menu_fg"],
            ["menu_bg"],
        ]


class TestConcurrencyBound:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [1, 7, 42])
    async def test_random_workload_never_exceeds_limit(self, seed):
        rng = random.Random(seed)
        scheduler = ManualScheduler()
        transport = GatedTransport()
        limit = 3
        manager = build_manager(
            transport, scheduler, queue_config=QueueConfig(max_concurrent=limit, max_queue_size=50)
        )
        futures = []

        def check():
            assert manager.queue.active_count <= limit
            assert transport.in_flight <= limit

        for step in range(200):
            roll = rng.random()
            if roll < 0.4:
                if rng.random() < 0.7:
                    action, payload = "save-settings", {f"k{rng.randrange(6)}": step}
                else:
                    action, payload = "load-settings", {"scope": rng.randrange(3)}
                futures.append(
                    manager.submit_nowait(action, payload, priority=rng.choice(list(Priority)))
                )
            elif roll < 0.75 and transport.open_calls():
                request_id = rng.choice(transport.open_calls())
                outcome = _server_error() if rng.random() < 0.3 else Outcome.ok({"saved": True})
                transport.finish(request_id, outcome)
            elif roll < 0.85 and len(manager.queue):
                manager.cancel(rng.choice(manager.queue.entries()).id)
            else:
                scheduler.advance(rng.uniform(0, 2500))
            check()
            await settle()
            check()

        for _ in range(100):
            if all(future.done() for future in futures):
                break
            for request_id in transport.open_calls():
                transport.finish(request_id, Outcome.ok({"saved": True}))
            await settle()
            scheduler.advance(5000)
            await settle()
            check()

        assert all(future.done() for future in futures)
        assert transport.max_in_flight <= limit
        assert len(manager.queue) == 0
        for future in futures:
            if not future.cancelled():
                future.exception()


class TestFailures:
    def setup_method(self):
        self.scheduler = ManualScheduler()
        self.events = []

    def _manager(self, transport, **kwargs):
        manager = build_manager(transport, self.scheduler, **kwargs)
        manager.subscribe(self.events.append)
        return manager

    @pytest.mark.asyncio
    async def test_retry_exhaustion_reports_history(self):
        transport = StubTransport([_server_error(), _server_error(), _server_error()])
        manager = self._manager(transport)

        future = manager.submit_nowait("save-settings", {"menu_bg": "#111"})
        for _ in range(3):
            await settle()
            if self.scheduler.pending:
                self.scheduler.advance(self.scheduler.pending[0])
        await settle()

        with pytest.raises(ServerError) as info:
            await future
        error = info.value
        assert error.attempts == 3
        assert len(error.history) == 3
        assert error.to_dict() == {
            "kind": "server",
            "message": "boom",
            "attempts": 3,
            "lastErrorCode": "http_500",
        }
        failed = [event for event in self.events if event.type == EventType.FAILED]
        assert failed[0].detail["userMessage"].startswith("Server error")

    @pytest.mark.asyncio
    async def test_client_error_is_terminal(self):
        transport = StubTransport([Outcome.failed(ClientError("bad value", status=400))])
        manager = self._manager(transport)

        with pytest.raises(ClientError) as info:
            await manager.submit("save-settings", {"menu_bg": "nope"})
        assert info.value.attempts == 1
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_transport_crash_becomes_network_error(self):
        transport = StubTransport([RuntimeError("bug")])
        manager = self._manager(transport)

        future = manager.submit_nowait("save-settings", {"menu_bg": "#222"})
        await settle()
        retrying = [event for event in self.events if event.type == EventType.RETRYING]
        assert retrying[0].detail["errorCode"] == "transport_error"

        self.scheduler.advance(self.scheduler.pending[0])
        await settle()
        assert (await future).attempts == 2

    @pytest.mark.asyncio
    async def test_auth_failure_refreshes_without_spending_attempt(self):
        transport = StubTransport([Outcome.failed(AuthError("expired", code="invalid_nonce"))])
        auth = StaticTokenProvider("token-1")
        manager = self._manager(transport, auth=auth)

        future = manager.submit_nowait("save-settings", {"menu_bg": "#333"}, max_attempts=1)
        await settle()
        self.scheduler.advance(0)
        await settle()

        result = await future
        assert result.attempts == 1
        assert len(transport.calls) == 2
        assert auth.refresh_count == 1

    @pytest.mark.asyncio
    async def test_second_auth_failure_is_terminal(self):
        transport = StubTransport([
            Outcome.failed(AuthError("expired")),
            Outcome.failed(AuthError("still expired")),
        ])
        manager = self._manager(transport)

        future = manager.submit_nowait("save-settings", {"menu_bg": "#444"})
        await settle()
        self.scheduler.advance(0)
        await settle()

        with pytest.raises(AuthError):
            await future
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_validation(self):
        manager = self._manager(StubTransport())
        with pytest.raises(ValidationError):
            manager.submit_nowait("", {"a": 1})
        with pytest.raises(ValidationError):
            manager.submit_nowait("save-settings", {"a": {"nested": True}})
        with pytest.raises(ValidationError):
            manager.submit_nowait("save-settings", {"a": 1}, priority="urgent")
        with pytest.raises(ValidationError):
            manager.submit_nowait("save-settings", {"a": 1}, max_attempts=0)


class TestCircuit:
    def setup_method(self):
        self.scheduler = ManualScheduler()
        self.events = []

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_calling_transport(self):
        transport = StubTransport([_server_error() for _ in range(5)])
        manager = build_manager(transport, self.scheduler)
        manager.subscribe(self.events.append)

        failing = [
            manager.submit_nowait("save-settings", {f"k{n}": n}, max_attempts=1) for n in range(5)
        ]
        results = await asyncio.gather(*failing, return_exceptions=True)
        assert all(isinstance(r, ServerError) for r in results)

        self.events.clear()
        with pytest.raises(CircuitOpenError) as info:
            await manager.submit("save-settings", {"fresh": 1})
        assert info.value.attempts == 0
        assert len(transport.calls) == 5
        assert [event.type for event in self.events] == [EventType.QUEUED, EventType.CIRCUIT_OPEN]
        assert manager.metrics["counts"]["circuit_rejected"] == 1

        # other actions are unaffected
        assert (await manager.submit("load-settings", {})).attempts == 1

    @pytest.mark.asyncio
    async def test_half_open_holds_others_until_probe_settles(self):
        transport = StubTransport([_server_error() for _ in range(5)], hold=True)
        transport.release.set()
        manager = build_manager(transport, self.scheduler)
        failing = [
            manager.submit_nowait("save-settings", {f"k{n}": n}, max_attempts=1) for n in range(5)
        ]
        await asyncio.gather(*failing, return_exceptions=True)

        self.scheduler.advance(10_000)
        transport.release = asyncio.Event()
        probe = manager.submit_nowait("save-settings", {"probe": 1})
        waiting = manager.submit_nowait("save-settings", {"other": 2})
        await settle()
        assert len(transport.calls) == 6
        assert manager.breaker.status("save-settings")["status"] == "half-open"
        assert manager.status()["entries"][-1]["state"] == "pending"

        transport.release.set()
        await probe
        await waiting
        assert len(transport.calls) == 7
        assert manager.breaker.status("save-settings")["status"] == "closed"

    @pytest.mark.asyncio
    async def test_client_errors_do_not_open_circuit(self):
        transport = StubTransport([Outcome.failed(ClientError("bad")) for _ in range(6)])
        manager = build_manager(transport, self.scheduler)
        futures = [
            manager.submit_nowait("save-settings", {f"k{n}": n}) for n in range(6)
        ]
        await asyncio.gather(*futures, return_exceptions=True)
        assert manager.breaker.status("save-settings")["status"] == "closed"

    @pytest.mark.asyncio
    async def test_reset_circuit(self):
        transport = StubTransport([_server_error() for _ in range(5)])
        manager = build_manager(
            transport, self.scheduler, breaker_config=CircuitBreakerConfig(cooldown_ms=60_000)
        )
        failing = [
            manager.submit_nowait("save-settings", {f"k{n}": n}, max_attempts=1) for n in range(5)
        ]
        await asyncio.gather(*failing, return_exceptions=True)
        manager.reset_circuit("save-settings")
        assert (await manager.submit("save-settings", {"after": 1})).attempts == 1


class TestDedupAndCancellation:
    def setup_method(self):
        self.scheduler = ManualScheduler()
        self.events = []

    @pytest.mark.asyncio
    async def test_identical_loads_share_one_call(self):
        transport = StubTransport()
        manager = build_manager(transport, self.scheduler)
        first = manager.submit_nowait("load-settings", {"scope": "menu"})
        second = manager.submit_nowait("load-settings", {"scope": "menu"})
        assert (await first) is (await second)
        assert len(transport.calls) == 1

        third = await manager.submit("load-settings", {"scope": "menu"})
        assert third is (await first)
        assert manager.metrics["counts"]["deduped"] == 2

        self.scheduler.advance(5000)
        await manager.submit("load-settings", {"scope": "menu"})
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_cancel_in_flight(self):
        transport = StubTransport(hold=True)
        manager = build_manager(transport, self.scheduler)
        manager.subscribe(self.events.append)
        future = manager.submit_nowait("save-settings", {"menu_bg": "#555"})
        await settle()
        assert transport.in_flight == 1

        request_id = manager.status()["entries"][0]["id"]
        assert manager.cancel(request_id, reason="user closed dialog") is True
        with pytest.raises(RequestCancelledError):
            await future
        await settle()
        assert transport.in_flight == 0
        assert manager.queue.active_count == 0
        assert self.events[-1].detail["kind"] == "cancelled"
        assert manager.cancel(request_id) is False

    @pytest.mark.asyncio
    async def test_cancel_token(self):
        transport = StubTransport(hold=True)
        manager = build_manager(
            transport, self.scheduler, queue_config=QueueConfig(max_concurrent=1)
        )
        manager.submit_nowait("save-settings", {"a": 1})
        token = CancellationToken()
        queued = manager.submit_nowait("save-settings", {"b": 2}, cancel_token=token)
        token.cancel("navigated away")

        with pytest.raises(RequestCancelledError) as info:
            await queued
        assert info.value.message == "navigated away"
        assert len(manager.queue) == 1
        transport.release.set()
        await settle()

    @pytest.mark.asyncio
    async def test_cancel_token_on_follower_only_rejects_follower(self):
        transport = StubTransport(hold=True)
        manager = build_manager(transport, self.scheduler)
        primary = manager.submit_nowait("load-settings", {})
        token = CancellationToken()
        follower = manager.submit_nowait("load-settings", {}, cancel_token=token)
        token.cancel()

        with pytest.raises(RequestCancelledError):
            await follower
        transport.release.set()
        assert (await primary).attempts == 1

    @pytest.mark.asyncio
    async def test_queue_full(self):
        transport = StubTransport(hold=True)
        manager = build_manager(
            transport,
            self.scheduler,
            queue_config=QueueConfig(max_concurrent=1, max_queue_size=2),
        )
        manager.subscribe(self.events.append)
        manager.submit_nowait("save-settings", {"a": 1})
        manager.submit_nowait("save-settings", {"b": 1})
        rejected = manager.submit_nowait("save-settings", {"c": 1})

        with pytest.raises(QueueFullError):
            await rejected
        assert self.events[-1].type == EventType.FAILED
        assert self.events[-1].detail["kind"] == "queue-full"
        transport.release.set()
        await settle()

    @pytest.mark.asyncio
    async def test_clear_cancels_waiting_callers(self):
        transport = StubTransport(hold=True)
        manager = build_manager(
            transport, self.scheduler, queue_config=QueueConfig(max_concurrent=1)
        )
        running = manager.submit_nowait("save-settings", {"a": 1})
        waiting = manager.submit_nowait("save-settings", {"b": 1})
        await settle()
        assert manager.clear() == 1
        with pytest.raises(RequestCancelledError):
            await waiting
        transport.release.set()
        await running


class TestOrderingAndLifecycle:
    def setup_method(self):
        self.scheduler = ManualScheduler()

    @pytest.mark.asyncio
    async def test_priority_order(self):
        transport = StubTransport(hold=True)
        manager = build_manager(
            transport, self.scheduler, queue_config=QueueConfig(max_concurrent=1)
        )
        futures = [
            manager.submit_nowait("save-settings", {"first": 1}),
            manager.submit_nowait("save-settings", {"low": 1}, priority=Priority.LOW),
            manager.submit_nowait("save-settings", {"high": 1}, priority="high"),
        ]
        transport.release.set()
        await asyncio.gather(*futures)
        assert [list(call.payload) for call in transport.calls] == [["first"], ["high"], ["low"]]

    @pytest.mark.asyncio
    async def test_wire_request_carries_token(self):
        transport = StubTransport()
        manager = build_manager(transport, self.scheduler)
        result = await manager.submit("save-settings", {"menu_bg": "#666"})
        call = transport.calls[0]
        assert call.auth_token == "token-1"
        assert call.request_id == result.request_id
        assert result.meta == {"timestampMs": 1, "executionMs": 2}

    @pytest.mark.asyncio
    async def test_latency_ignores_wall_clock_steps(self):
        transport = StubTransport(hold=True)
        manager = build_manager(transport, self.scheduler)
        future = manager.submit_nowait("save-settings", {"menu_bg": "#999"})
        await settle()
        self.scheduler.advance(250)
        self.scheduler.step_wall_clock(-3_600_000)
        transport.release.set()
        await future
        assert manager.metrics["latency_ms"]["mean"] == 250.0

    @pytest.mark.asyncio
    async def test_batch(self):
        manager = build_manager(StubTransport([_server_error()]), self.scheduler)
        batch = manager.submit_batch([
            {"action": "save-settings", "payload": {"a": 1}, "max_attempts": 1},
            {"action": "save-settings", "payload": {"b": 1}},
            {"action": "save-settings"},
        ])
        result = await batch
        assert result.success_count == 1
        assert set(result.errors) == {0, 2}
        assert isinstance(result.errors[0], ServerError)
        assert isinstance(result.errors[2], ValidationError)

    @pytest.mark.asyncio
    async def test_batch_fail_fast_rejects_invalid_input(self):
        transport = StubTransport()
        manager = build_manager(transport, self.scheduler)
        with pytest.raises(ValidationError):
            await manager.submit_batch(
                [{"action": "save-settings", "payload": {"a": 1}}, {"payload": {}}],
                fail_fast=True,
            )
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_pending_work_survives_restart(self):
        storage = InMemoryBackend()
        held = StubTransport(hold=True)
        manager = build_manager(held, self.scheduler, storage=storage)
        await manager.start()
        future = manager.submit_nowait("save-settings", {"menu_bg": "#777"})
        await settle()
        await manager.stop()
        assert future.cancelled()
        with pytest.raises(CourierException):
            manager.submit_nowait("save-settings", {"menu_bg": "#888"})

        events = []
        transport = StubTransport()
        restarted = build_manager(transport, self.scheduler, storage=storage)
        restarted.subscribe(events.append)
        await restarted.start()
        await settle()
        assert [call.payload for call in transport.calls] == [{"menu_bg": "#777"}]
        succeeded = [event for event in events if event.type == EventType.SUCCEEDED]
        assert succeeded[0].attempt == 2
        await restarted.stop()

    @pytest.mark.asyncio
    async def test_status_and_metrics(self):
        manager = build_manager(StubTransport(), self.scheduler)
        await manager.submit("save-settings", {"a": 1})
        status = manager.status()
        assert status["queue"]["total_processed"] == 1
        assert status["transport"]["success_count"] == 1
        assert status["history"][0]["state"] == "done"
        assert manager.metrics["counts"]["submitted"] == 1
        assert manager.metrics["counts"]["succeeded"] == 1
        assert b"courier_delivery_requests_total" in manager.export_prometheus()
