"""
Dispatch Orchestrator — Unit Tests
===================================

Covers:
  1. Fan-out to enabled endpoints
  2. Concurrency ceiling
  3. Retry bound and backoff growth
  4. Non-retryable failures
  5. Shutdown (drop vs flush)
  6. Records and status
"""

import asyncio

import pytest
from conftest import ECHO, wait_until

from formrelay.core.config import DispatchConfig
from formrelay.core.exceptions import ConfigurationError, CustomerNotFound, EndpointNotFound, RetryPolicy
from formrelay.core.types import (
    CustomerConfig,
    EndpointConfig,
    EndpointOverride,
    FieldCondition,
    ItemState,
    Submission,
)
from formrelay.infra.runtime.orchestrator import DispatchOrchestrator, RetryScheduler
from formrelay.services.customers import CustomerConfigStore, default_store
from formrelay.services.endpoints import EndpointRegistry, default_registry


def _submission(email="jane@example.com"):
    return Submission.from_form({"customerID": "CUST0001", "emailAddress": email}, customer_id="CUSTTEST")


# ── Fan-out ─────────────────────────────────────────────────────────────────


class TestSubmit:
    @pytest.mark.asyncio
    async def test_single_success(self, make_orchestrator, transport):
        orchestrator = make_orchestrator()
        [item_id] = await orchestrator.submit(_submission())
        assert await orchestrator.wait_idle(timeout_s=2.0)

        record = orchestrator.record(item_id)
        assert record.state is ItemState.SUCCEEDED
        assert record.attempts == 1
        assert record.last_http_status == 200
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_fans_out_to_enabled_endpoints(self, transport, metrics, example_form):
        orchestrator = DispatchOrchestrator(
            default_store(),
            default_registry(),
            transport,
            config=DispatchConfig(base_url="http://downstream.test/api"),
            metrics=metrics,
        )
        item_ids = await orchestrator.submit(Submission.from_form(example_form), "CUST001")
        assert await orchestrator.wait_idle(timeout_s=2.0)

        records = [orchestrator.record(i) for i in item_ids]
        assert [r.endpoint for r in records] == [
            "CustomerProfileAPI",
            "AddressVerificationService",
            "CreditCheckSystem",
            "ProductCatalogService",
            "DocumentStorageService",
            "WebhookEndpoint",
        ]
        assert all(r.state is ItemState.SUCCEEDED for r in records)
        assert len(transport.calls) == 6

    @pytest.mark.asyncio
    async def test_conditionally_enabled_endpoint(self, make_orchestrator, transport):
        customer = CustomerConfig(
            customer_id="CUSTTEST",
            enabled_endpoints=("EchoService",),
            endpoint_overrides={
                "EchoService": EndpointOverride(
                    enabled_when=FieldCondition("emailAddress", lambda v: v.endswith("@example.com")),
                ),
            },
        )
        orchestrator = make_orchestrator(customers=[customer])
        assert await orchestrator.submit(_submission("jane@elsewhere.org")) == []
        assert len(await orchestrator.submit(_submission())) == 1
        await orchestrator.wait_idle(timeout_s=2.0)
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_submit_to_endpoint(self, make_orchestrator, transport):
        orchestrator = make_orchestrator()
        item_id = await orchestrator.submit_to_endpoint(_submission(), "EchoService", priority=3)
        await orchestrator.wait_idle(timeout_s=2.0)
        assert orchestrator.record(item_id).state is ItemState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_submit_batch(self, make_orchestrator, transport):
        orchestrator = make_orchestrator()
        item_ids = await orchestrator.submit_batch([_submission(), _submission(), _submission()])
        await orchestrator.wait_idle(timeout_s=2.0)
        assert len(item_ids) == 3
        assert len(transport.calls) == 3

    @pytest.mark.asyncio
    async def test_unknown_customer_and_endpoint(self, make_orchestrator):
        orchestrator = make_orchestrator()
        with pytest.raises(CustomerNotFound):
            await orchestrator.submit(_submission(), "NOPE")
        with pytest.raises(EndpointNotFound):
            await orchestrator.submit_to_endpoint(_submission(), "NoSuchService")
        assert orchestrator.status().idle

    @pytest.mark.asyncio
    async def test_negative_priority_rejected(self, make_orchestrator):
        orchestrator = make_orchestrator()
        with pytest.raises(ValueError):
            await orchestrator.submit(_submission(), priority=-1)

    def test_bad_customer_config_rejected_at_construction(self, transport):
        customer = CustomerConfig(customer_id="CUSTTEST", enabled_endpoints=("Missing",))
        with pytest.raises(ConfigurationError):
            DispatchOrchestrator(
                CustomerConfigStore([customer]),
                EndpointRegistry([ECHO]),
                transport,
            )


# ── Concurrency ─────────────────────────────────────────────────────────────


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_in_flight_never_exceeds_ceiling(self, make_orchestrator, transport):
        transport.gate = asyncio.Event()
        orchestrator = make_orchestrator(max_concurrent=2, max_workers=5)
        await orchestrator.submit_batch([_submission() for _ in range(6)])

        await wait_until(lambda: transport.active == 2)
        status = orchestrator.status()
        assert status.in_flight == 2
        assert status.queue_length == 4
        assert status.busy_slots == 2

        transport.gate.set()
        assert await orchestrator.wait_idle(timeout_s=2.0)
        assert transport.max_active == 2
        assert len(transport.calls) == 6

    @pytest.mark.asyncio
    async def test_worker_count_also_caps(self, make_orchestrator, transport):
        transport.gate = asyncio.Event()
        orchestrator = make_orchestrator(max_concurrent=10, max_workers=3)
        await orchestrator.submit_batch([_submission() for _ in range(5)])

        await wait_until(lambda: transport.active == 3)
        assert orchestrator.status().available_slots == 0

        transport.gate.set()
        assert await orchestrator.wait_idle(timeout_s=2.0)
        assert transport.max_active == 3

    @pytest.mark.asyncio
    async def test_configured_default_priority_applies(self, make_orchestrator, transport):
        transport.gate = asyncio.Event()
        orchestrator = make_orchestrator(max_workers=1, default_priority=7)
        await orchestrator.submit(_submission())
        await orchestrator.submit(_submission(), priority=9)
        await orchestrator.submit(_submission())
        await wait_until(lambda: transport.active == 1)

        assert [item.priority for item in orchestrator.queue.snapshot()] == [9, 7]

        transport.gate.set()
        assert await orchestrator.wait_idle(timeout_s=2.0)


# ── Retries ─────────────────────────────────────────────────────────────────


class TestRetries:
    @pytest.mark.asyncio
    async def test_retry_bound_and_backoff(self, make_orchestrator, transport, metrics):
        transport.default_status = 500
        orchestrator = make_orchestrator(max_retries=2, base_delay_s=0.01)
        [item_id] = await orchestrator.submit(_submission())
        assert await orchestrator.wait_idle(timeout_s=2.0)

        record = orchestrator.record(item_id)
        assert record.state is ItemState.RETRIES_EXHAUSTED
        assert record.attempts == 3
        assert record.retry_count == 2
        assert record.retry_delays == pytest.approx([0.02, 0.04])
        assert record.last_http_status == 500
        assert len(transport.calls) == 3
        assert metrics._registry.get_sample_value(
            "formrelay_dispatch_retries_total", {"endpoint": "EchoService"}
        ) == 2
        assert metrics._registry.get_sample_value(
            "formrelay_dispatch_terminal_failures_total",
            {"endpoint": "EchoService", "state": "retries_exhausted"},
        ) == 1

    @pytest.mark.asyncio
    async def test_zero_retries_means_one_attempt(self, make_orchestrator, transport):
        transport.default_status = 503
        orchestrator = make_orchestrator(max_retries=0)
        [item_id] = await orchestrator.submit(_submission())
        assert await orchestrator.wait_idle(timeout_s=2.0)
        assert orchestrator.record(item_id).state is ItemState.RETRIES_EXHAUSTED
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self, make_orchestrator, transport):
        transport.statuses = [500, 502]
        orchestrator = make_orchestrator(max_retries=3, base_delay_s=0.005)
        [item_id] = await orchestrator.submit(_submission())
        assert await orchestrator.wait_idle(timeout_s=2.0)

        record = orchestrator.record(item_id)
        assert record.state is ItemState.SUCCEEDED
        assert record.attempts == 3
        assert record.errors == [
            "API request failed with status 500",
            "API request failed with status 502",
        ]

    @pytest.mark.asyncio
    async def test_endpoint_policy_overrides_engine_default(self, make_orchestrator, transport):
        transport.default_status = 500
        strict = EndpointConfig(
            name="StrictService",
            path="/strict",
            required_fields=("customerID",),
            retry_policy=RetryPolicy(max_retries=1, base_delay_s=0.001),
        )
        customer = CustomerConfig("CUSTTEST", ("StrictService",))
        orchestrator = make_orchestrator(customers=[customer], endpoints=[strict], max_retries=5)
        [item_id] = await orchestrator.submit(_submission())
        assert await orchestrator.wait_idle(timeout_s=2.0)
        assert orchestrator.record(item_id).attempts == 2

    @pytest.mark.asyncio
    async def test_validation_failure_not_retried(self, make_orchestrator, transport):
        orchestrator = make_orchestrator()
        [item_id] = await orchestrator.submit(_submission(email="not-an-email"))
        assert await orchestrator.wait_idle(timeout_s=2.0)

        record = orchestrator.record(item_id)
        assert record.state is ItemState.VALIDATION_FAILED
        assert record.retry_delays == []
        assert record.errors == ["Field emailAddress is invalid: Invalid email format"]
        assert transport.calls == []


# ── Shutdown ────────────────────────────────────────────────────────────────


class TestShutdown:
    @pytest.mark.asyncio
    async def test_drops_pending_retries(self, make_orchestrator, transport):
        transport.default_status = 500
        orchestrator = make_orchestrator(base_delay_s=10.0)
        [item_id] = await orchestrator.submit(_submission())
        await wait_until(lambda: orchestrator.status().pending_retries == 1)

        await orchestrator.shutdown()
        record = orchestrator.record(item_id)
        assert record.state is ItemState.FAILED
        assert record.errors[-1] == "dropped at shutdown"
        assert len(transport.calls) == 1
        assert orchestrator.status().idle

    @pytest.mark.asyncio
    async def test_flush_runs_pending_retries(self, make_orchestrator, transport):
        transport.statuses = [500]
        orchestrator = make_orchestrator(base_delay_s=10.0)
        [item_id] = await orchestrator.submit(_submission())
        await wait_until(lambda: orchestrator.status().pending_retries == 1)

        await orchestrator.shutdown(flush_retries=True, timeout_s=2.0)
        record = orchestrator.record(item_id)
        assert record.state is ItemState.SUCCEEDED
        assert record.attempts == 2
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_in_flight_finishes_during_shutdown(self, make_orchestrator, transport):
        transport.gate = asyncio.Event()
        orchestrator = make_orchestrator(max_concurrent=1)
        first, second = await orchestrator.submit_batch([_submission(), _submission()])
        await wait_until(lambda: transport.active == 1)

        stopping = asyncio.create_task(orchestrator.shutdown(timeout_s=2.0))
        await asyncio.sleep(0.01)
        transport.gate.set()
        await stopping

        assert orchestrator.record(first).state is ItemState.SUCCEEDED
        assert orchestrator.record(second).state is ItemState.FAILED
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_retryable_failure_during_shutdown_is_terminal(self, make_orchestrator, transport):
        transport.gate = asyncio.Event()
        transport.default_status = 500
        orchestrator = make_orchestrator()
        [item_id] = await orchestrator.submit(_submission())
        await wait_until(lambda: transport.active == 1)

        stopping = asyncio.create_task(orchestrator.shutdown(timeout_s=2.0))
        await asyncio.sleep(0.01)
        transport.gate.set()
        await stopping

        record = orchestrator.record(item_id)
        assert record.state is ItemState.FAILED
        assert orchestrator.status().pending_retries == 0

    @pytest.mark.asyncio
    async def test_in_flight_cancelled_after_timeout_is_failed(self, make_orchestrator, transport):
        transport.gate = asyncio.Event()
        orchestrator = make_orchestrator()
        [item_id] = await orchestrator.submit(_submission())
        await wait_until(lambda: transport.active == 1)

        await orchestrator.shutdown(timeout_s=0.05)

        record = orchestrator.record(item_id)
        assert record.state is ItemState.FAILED
        assert record.errors[-1] == "cancelled at shutdown"
        assert orchestrator.status().in_flight == 0

    @pytest.mark.asyncio
    async def test_submit_after_shutdown_rejected(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await orchestrator.shutdown()
        with pytest.raises(RuntimeError):
            await orchestrator.submit(_submission())


# ── Records & status ────────────────────────────────────────────────────────


class TestRecords:
    @pytest.mark.asyncio
    async def test_eviction_keeps_non_terminal(self, transport, metrics, echo_customer):
        orchestrator = DispatchOrchestrator(
            CustomerConfigStore([echo_customer]),
            EndpointRegistry([ECHO]),
            transport,
            config=DispatchConfig(base_url="http://x/api"),
            metrics=metrics,
            max_records=2,
        )
        ids = []
        for _ in range(3):
            ids.extend(await orchestrator.submit(_submission()))
            await orchestrator.wait_idle(timeout_s=2.0)

        assert orchestrator.record(ids[0]) is None
        assert [r.item_id for r in orchestrator.records()] == ids[1:]

    @pytest.mark.asyncio
    async def test_status_and_stats(self, make_orchestrator):
        orchestrator = make_orchestrator(max_workers=4)
        await orchestrator.submit(_submission())
        await orchestrator.wait_idle(timeout_s=2.0)

        status = orchestrator.status().to_dict()
        assert status["idle"] is True
        assert status["workers"] == {"available": 4, "busy": 0, "total": 4}
        assert status["states"] == {"succeeded": 1}

        stats = orchestrator.get_stats()
        assert stats["queue"]["total_completed"] == 1
        assert stats["config"]["max_workers"] == 4

    @pytest.mark.asyncio
    async def test_wait_idle_times_out(self, make_orchestrator, transport):
        transport.gate = asyncio.Event()
        orchestrator = make_orchestrator()
        await orchestrator.submit(_submission())
        assert await orchestrator.wait_idle(timeout_s=0.05) is False
        transport.gate.set()
        assert await orchestrator.wait_idle(timeout_s=2.0) is True


class TestRetryScheduler:
    @pytest.mark.asyncio
    async def test_fires_after_delay(self, make_item):
        scheduler = RetryScheduler()
        fired = []
        scheduler.schedule(make_item(), 0.01, fired.append)
        assert scheduler.pending_count() == 1
        await wait_until(lambda: fired)
        assert scheduler.pending_count() == 0

    @pytest.mark.asyncio
    async def test_cancel_all_returns_items(self, make_item):
        scheduler = RetryScheduler()
        fired = []
        items = [make_item(), make_item()]
        for item in items:
            scheduler.schedule(item, 5.0, fired.append)

        assert scheduler.cancel_all() == items
        await asyncio.sleep(0.01)
        assert fired == []
        assert scheduler.pending_count() == 0
