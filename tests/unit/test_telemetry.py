"""Unit tests for structured logging, redaction and the metrics collector."""

import json
import logging

from prometheus_client import CollectorRegistry

from formrelay.core.types import ItemState
from formrelay.infra.telemetry import (
    REDACTED,
    StructuredFormatter,
    clear_dispatch_context,
    redact,
    set_dispatch_context,
)
from formrelay.infra.telemetry.metrics import MetricsCollector, PercentileTracker


def _record(**extra):
    record = logging.LogRecord("formrelay.test", logging.INFO, __file__, 10, "delivery_succeeded", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRedaction:
    def test_nested_secrets_masked(self):
        payload = {
            "customerID": "CUST0001",
            "secret": "s3cret",
            "webhookUrl": "https://hooks.test/x",
            "nested": [{"api_key": "sk-123", "ok": 1}],
            "OPENAI_API_KEY": "sk-456",
        }
        assert redact(payload) == {
            "customerID": "CUST0001",
            "secret": REDACTED,
            "webhookUrl": REDACTED,
            "nested": [{"api_key": REDACTED, "ok": 1}],
            "OPENAI_API_KEY": REDACTED,
        }

    def test_input_untouched(self):
        payload = {"secret": "s3cret"}
        redact(payload)
        assert payload == {"secret": "s3cret"}


class TestStructuredFormatter:
    def teardown_method(self):
        clear_dispatch_context()

    def test_json_entry_with_context_and_redaction(self):
        set_dispatch_context(submission_id="sub-1", endpoint="CreditCheckSystem", item_id="item-1")
        line = StructuredFormatter(json_output=True).format(
            _record(http_status=200, secret="s3cret", payload={"token": "t", "customerID": "CUST0001"})
        )
        entry = json.loads(line)

        assert entry["message"] == "delivery_succeeded"
        assert entry["level"] == "INFO"
        assert entry["context"] == {
            "submission_id": "sub-1",
            "endpoint": "CreditCheckSystem",
            "item_id": "item-1",
        }
        assert entry["data"]["http_status"] == 200
        assert entry["data"]["secret"] == REDACTED
        assert entry["data"]["payload"] == {"token": REDACTED, "customerID": "CUST0001"}

    def test_human_output(self):
        line = StructuredFormatter(json_output=False).format(_record(retry_count=1))
        assert "delivery_succeeded" in line
        assert '"retry_count": 1' in line
        assert "| INFO" in line


class TestMetricsCollector:
    def setup_method(self):
        self.registry = CollectorRegistry()
        self.metrics = MetricsCollector(registry=self.registry)

    def test_delivery_counters_and_percentiles(self):
        for latency in (0.1, 0.2, 0.3):
            self.metrics.record_delivery(endpoint="AuditLogService", status="success", latency_s=latency)
        self.metrics.record_delivery(endpoint="AuditLogService", status="error", latency_s=0.4)

        assert self.registry.get_sample_value(
            "formrelay_dispatch_deliveries_total", {"endpoint": "AuditLogService", "status": "success"}
        ) == 3
        summary = self.metrics.get_summary()
        assert summary["endpoints"]["AuditLogService"]["count"] == 4
        assert summary["endpoints"]["AuditLogService"]["p50"] == 0.3

    def test_outcomes(self):
        self.metrics.record_outcome(endpoint="E", state=ItemState.SUCCEEDED, terminal_failure=False)
        self.metrics.record_outcome(endpoint="E", state=ItemState.VALIDATION_FAILED, terminal_failure=True)
        assert self.metrics.get_summary()["outcomes"] == {"succeeded": 1, "validation_failed": 1}
        assert self.registry.get_sample_value(
            "formrelay_dispatch_terminal_failures_total", {"endpoint": "E", "state": "validation_failed"}
        ) == 1

    def test_prometheus_export(self):
        self.metrics.record_queue(depth=3, in_flight=1)
        text = self.metrics.export_prometheus().decode()
        assert "formrelay_dispatch_queue_depth 3.0" in text
        assert "formrelay_dispatch_in_flight 1.0" in text


def test_percentile_tracker_window():
    tracker = PercentileTracker(window_size=3)
    for value in (10.0, 1.0, 2.0, 3.0):
        tracker.record(value)
    assert tracker.count == 3
    assert tracker.percentile(100) == 3.0
    assert tracker.mean() == 2.0
