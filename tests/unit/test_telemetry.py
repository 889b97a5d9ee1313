"""
Telemetry — Unit Tests
======================

Structured log formatting, lifecycle event fan-out and delivery metrics.
"""

import json
import logging

from courier.core.models import LifecycleEvent
from courier.core.types import CircuitStatus, EventType
from courier.infra.telemetry import (
    DeliveryMetrics,
    EventEmitter,
    PercentileTracker,
    get_logger,
    request_context,
)
from courier.infra.telemetry.logger import StructuredFormatter


def _record(msg="request_enqueued", **extra):
    record = logging.LogRecord("courier.test", logging.INFO, __file__, 10, msg, None, None)
    record.__dict__.update(extra)
    return record


class TestStructuredFormatter:
    def test_json_output_carries_fields(self):
        formatter = StructuredFormatter(json_output=True)
        entry = json.loads(formatter.format(_record(depth=3, priority="high")))
        assert entry["event"] == "request_enqueued"
        assert entry["level"] == "INFO"
        assert entry["data"] == {"depth": 3, "priority": "high"}
        assert "context" not in entry

    def test_request_context_is_injected(self):
        formatter = StructuredFormatter(json_output=True)
        with request_context(request_id="req_abc", action="save-settings", attempt=2):
            entry = json.loads(formatter.format(_record()))
        assert entry["context"] == {"request_id": "req_abc", "action": "save-settings", "attempt": 2}
        assert "context" not in json.loads(formatter.format(_record()))

    def test_non_json_values_are_stringified(self):
        formatter = StructuredFormatter(json_output=True)
        entry = json.loads(formatter.format(_record(keys=("a", "b"))))
        assert entry["data"]["keys"] == "('a', 'b')"

    def test_human_readable_output(self):
        formatter = StructuredFormatter(json_output=False)
        with request_context(request_id="req_0123456789", action="ping", attempt=1):
            line = formatter.format(_record(depth=1))
        assert "23456789" in line
        assert "request_enqueued | depth=1" in line

    def test_bound_logger_merges_context(self, caplog):
        caplog.set_level(logging.INFO, logger="courier.test.bound")
        log = get_logger("courier.test.bound").bind(origin="instance-a")
        log.info("remote_settings_changed", keys="menu_bg")
        record = caplog.records[-1]
        assert record.getMessage() == "remote_settings_changed"
        assert record.origin == "instance-a"
        assert record.keys == "menu_bg"


class TestEventEmitter:
    def setup_method(self):
        self.emitter = EventEmitter(recent_limit=2)
        self.event = LifecycleEvent(EventType.QUEUED, "req_1", "save-settings", 0, {"priority": "normal"})

    def test_fan_out_and_unsubscribe(self):
        seen = []
        unsubscribe = self.emitter.subscribe(seen.append)
        self.emitter.emit(self.event)
        unsubscribe()
        self.emitter.emit(self.event)
        assert seen == [self.event]
        assert self.emitter.subscriber_count == 0

    def test_failing_subscriber_is_skipped(self):
        seen = []

        def broken(event):
            raise ValueError("toast renderer crashed")

        self.emitter.subscribe(broken)
        self.emitter.subscribe(seen.append)
        self.emitter.emit(self.event)
        assert seen == [self.event]

    def test_recent_is_bounded(self):
        for _ in range(3):
            self.emitter.emit(self.event)
        assert len(self.emitter.recent) == 2

    def test_event_wire_form(self):
        assert self.event.to_dict() == {
            "type": "queued",
            "requestId": "req_1",
            "action": "save-settings",
            "attempt": 0,
            "detail": {"priority": "normal"},
        }


class TestDeliveryMetrics:
    def setup_method(self):
        self.metrics = DeliveryMetrics()

    def test_summary_counts(self):
        self.metrics.record_submitted("save-settings")
        self.metrics.record_success("save-settings", 120.0)
        self.metrics.record_retry("save-settings", "server")
        self.metrics.record_failure("save-settings", "client")
        summary = self.metrics.summary()
        assert summary["counts"]["submitted"] == 1
        assert summary["counts"]["succeeded"] == 1
        assert summary["counts"]["retried"] == 1
        assert summary["failures_by_kind"] == {"client": 1}
        assert summary["latency_ms"]["count"] == 1

    def test_queue_depth(self):
        self.metrics.record_queue_depth({"high": 1, "normal": 3, "low": 0}, 2)
        self.metrics.record_queue_depth({"high": 0, "normal": 1, "low": 0}, 1)
        queue = self.metrics.summary()["queue"]
        assert queue == {"depth": 1, "peak_depth": 4, "active": 1, "avg_wait_ms": 0.0}

    def test_prometheus_export(self):
        self.metrics.record_submitted("save-settings")
        self.metrics.record_circuit_state("save-settings", CircuitStatus.OPEN)
        text = self.metrics.export_prometheus().decode()
        assert 'courier_delivery_requests_total{action="save-settings",outcome="submitted"} 1.0' in text
        assert 'courier_circuit_state{action="save-settings"} 2.0' in text

    def test_registries_are_independent(self):
        DeliveryMetrics().record_submitted("save-settings")
        assert self.metrics.count("submitted") == 0


class TestPercentileTracker:
    def test_percentiles(self):
        tracker = PercentileTracker(window_size=100)
        for value in range(1, 101):
            tracker.record(float(value))
        assert tracker.percentile(50) == 51.0
        assert tracker.percentile(99) == 100.0
        assert tracker.mean() == 50.5

    def test_empty(self):
        assert PercentileTracker().percentile(95) == 0.0
