"""
Dispatch Orchestrator — Queue/Pool Glue and Retry Scheduling
==============================================================

The only component that both enqueues and claims work.

Lifecycle per work item:
  queued → claimed → succeeded
                   → validation_failed | transformation_failed | failed
                   → retry_scheduled → queued (retry_count + 1, priority + 1)
                   → retries_exhausted

Design:
  - Configuration (customers, endpoints, limits) is injected and frozen
  - Draining is synchronous: reserve a slot, claim an item, start one task.
    It stops as soon as the queue is empty, ``max_concurrent`` items are in
    flight, or no slot is idle
  - ``submit`` returns once items are queued; delivery is observed through
    ``status()``, ``record()`` and the log
  - Retries sit on cancellable timer handles so shutdown can flush or drop
    them deterministically
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from formrelay.core.config import DispatchConfig
from formrelay.core.exceptions import RetriesExhausted, compute_backoff_delay
from formrelay.core.types import (
    DispatchOutcome,
    DispatchRecord,
    ItemState,
    Submission,
    WorkerSlot,
    WorkItem,
)
from formrelay.infra.runtime.pipeline import DeliveryPipeline
from formrelay.infra.runtime.queue import DispatchQueue
from formrelay.infra.runtime.worker_pool import WorkerPool
from formrelay.infra.telemetry import get_logger, get_metrics, set_dispatch_context
from formrelay.infra.telemetry.metrics import MetricsCollector
from formrelay.services.customers import CustomerConfigStore, validate_customer_config
from formrelay.services.endpoints import EndpointRegistry
from formrelay.services.enrichment import Enricher
from formrelay.services.transport import DeliveryTransport

logger = get_logger(__name__)

DEFAULT_MAX_RECORDS = 1000
SHUTDOWN_REASON = "dropped at shutdown"
CANCELLED_REASON = "cancelled at shutdown"


# ── Retry Scheduler ────────────────────────────────────────────────


class RetryScheduler:
    """Deferred re-enqueue of work items on cancellable loop timers."""

    def __init__(self) -> None:
        self._pending: dict[str, tuple[asyncio.TimerHandle, WorkItem]] = {}

    def schedule(self, item: WorkItem, delay_s: float, callback: Callable[[WorkItem], None]) -> None:
        loop = asyncio.get_running_loop()
        key = item.attempt_key
        handle = loop.call_later(delay_s, self._fire, key, callback)
        self._pending[key] = (handle, item)

    def _fire(self, key: str, callback: Callable[[WorkItem], None]) -> None:
        entry = self._pending.pop(key, None)
        if entry is not None:
            callback(entry[1])

    def pending_count(self) -> int:
        return len(self._pending)

    def pending_items(self) -> list[WorkItem]:
        return [item for _, item in self._pending.values()]

    def cancel_all(self) -> list[WorkItem]:
        """Cancel every timer and return the items that will no longer run."""
        items = []
        for handle, item in self._pending.values():
            handle.cancel()
            items.append(item)
        self._pending.clear()
        return items


# ── Status ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DispatchStatus:
    queue_length: int
    in_flight: int
    available_slots: int
    busy_slots: int
    total_slots: int
    pending_retries: int
    states: dict[str, int] = field(default_factory=dict)

    @property
    def idle(self) -> bool:
        return self.queue_length == 0 and self.in_flight == 0 and self.pending_retries == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue": {"length": self.queue_length, "in_flight": self.in_flight},
            "workers": {
                "available": self.available_slots,
                "busy": self.busy_slots,
                "total": self.total_slots,
            },
            "pending_retries": self.pending_retries,
            "states": dict(self.states),
            "idle": self.idle,
        }


# ── Orchestrator ───────────────────────────────────────────────────


class DispatchOrchestrator:
    """
    Fans submissions out to their endpoints and drives delivery.

    Usage:
        orchestrator = DispatchOrchestrator(customers, endpoints, transport)
        item_ids = await orchestrator.submit(Submission.from_form(form), "CUST001")
        await orchestrator.wait_idle()
        await orchestrator.shutdown()
    """

    def __init__(
        self,
        customers: CustomerConfigStore,
        endpoints: EndpointRegistry,
        transport: DeliveryTransport,
        *,
        enricher: Enricher | None = None,
        config: DispatchConfig | None = None,
        metrics: MetricsCollector | None = None,
        max_records: int = DEFAULT_MAX_RECORDS,
    ) -> None:
        for customer in customers:
            validate_customer_config(customer, endpoints)

        self._config = config or DispatchConfig()
        self._customers = customers
        self._endpoints = endpoints
        self._metrics = metrics or get_metrics()
        self._queue = DispatchQueue(metrics=self._metrics)
        self._pipeline = DeliveryPipeline(
            transport,
            base_url=self._config.base_url,
            timeout_s=self._config.delivery_timeout_s,
            enricher=enricher,
            metrics=self._metrics,
        )
        self._pool = WorkerPool(self._pipeline, self._config.max_workers, metrics=self._metrics)
        self._retries = RetryScheduler()
        self._tasks: set[asyncio.Task[None]] = set()
        self._records: OrderedDict[str, DispatchRecord] = OrderedDict()
        self._max_records = max_records
        self._idle = asyncio.Event()
        self._idle.set()
        self._accepting = True
        self._stopping = False

    @property
    def config(self) -> DispatchConfig:
        return self._config

    @property
    def queue(self) -> DispatchQueue:
        return self._queue

    @property
    def pool(self) -> WorkerPool:
        return self._pool

    # ── Submission ─────────────────────────────────────────────────

    async def submit(
        self,
        submission: Submission,
        customer_id: str | None = None,
        priority: int | None = None,
    ) -> list[str]:
        """Queue one work item per enabled endpoint. Returns the item ids.

        ``priority`` defaults to the configured ``default_priority``.
        """
        self._ensure_accepting()
        priority = self._priority(priority)
        customer = self._customers.lookup(customer_id or submission.customer_id)

        items = []
        for name in customer.enabled_endpoints:
            if not customer.override_for(name).is_enabled_for(submission):
                logger.debug(
                    "endpoint_skipped",
                    endpoint=name,
                    customer_id=customer.customer_id,
                    submission_id=submission.submission_id,
                )
                continue
            items.append(
                WorkItem(
                    submission=submission,
                    customer=customer,
                    endpoint=self._endpoints.get(name),
                    priority=priority,
                )
            )

        for item in items:
            self._accept(item)
        logger.info(
            "submission_accepted",
            submission_id=submission.submission_id,
            customer_id=customer.customer_id,
            endpoints=[i.endpoint.name for i in items],
            priority=priority,
        )
        self._drain()
        return [i.item_id for i in items]

    async def submit_to_endpoint(
        self,
        submission: Submission,
        endpoint: str,
        priority: int | None = None,
        customer_id: str | None = None,
    ) -> str:
        """Queue a single work item for one named endpoint."""
        self._ensure_accepting()
        priority = self._priority(priority)
        customer = self._customers.lookup(customer_id or submission.customer_id)
        item = WorkItem(
            submission=submission,
            customer=customer,
            endpoint=self._endpoints.get(endpoint),
            priority=priority,
        )
        self._accept(item)
        self._drain()
        return item.item_id

    async def submit_batch(
        self,
        submissions: Iterable[Submission],
        customer_id: str | None = None,
        priority: int | None = None,
    ) -> list[str]:
        item_ids: list[str] = []
        for submission in submissions:
            item_ids.extend(await self.submit(submission, customer_id, priority))
        return item_ids

    def _priority(self, priority: int | None) -> int:
        return self._config.default_priority if priority is None else priority

    def _ensure_accepting(self) -> None:
        if not self._accepting:
            raise RuntimeError("Orchestrator is shutting down")

    def _accept(self, item: WorkItem) -> None:
        self._queue.enqueue(item)
        self._store_record(
            DispatchRecord(
                item_id=item.item_id,
                customer_id=item.customer.customer_id,
                endpoint=item.endpoint.name,
                submission_id=item.submission.submission_id,
            )
        )
        self._idle.clear()

    # ── Draining ───────────────────────────────────────────────────

    def _drain(self) -> None:
        while (
            not self._stopping
            and self._queue.length() > 0
            and self._queue.in_flight_count() < self._config.max_concurrent
            and self._pool.available_slots() > 0
        ):
            slot = self._pool.reserve()
            item = self._queue.claim_next()
            if item is None:
                self._pool.release(slot)
                break
            self._update_record(item, ItemState.CLAIMED, attempted=True)
            task = asyncio.create_task(self._run(item, slot), name=f"dispatch-{item.attempt_key}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        self._update_idle()

    async def _run(self, item: WorkItem, slot: WorkerSlot) -> None:
        set_dispatch_context(
            submission_id=item.submission.submission_id,
            customer_id=item.customer.customer_id,
            endpoint=item.endpoint.name,
            item_id=item.item_id,
        )
        outcome: DispatchOutcome | None = None
        try:
            outcome = await self._pool.process(item, slot)
        except asyncio.CancelledError:
            record = self._update_record(item, ItemState.FAILED)
            record.errors.append(CANCELLED_REASON)
            self._terminal(item, record, ItemState.FAILED, CANCELLED_REASON)
            raise
        finally:
            self._queue.complete(item)
            if outcome is not None:
                self._handle_outcome(outcome)
                self._drain()
            self._update_idle()

    # ── Outcomes & retries ─────────────────────────────────────────

    def _handle_outcome(self, outcome: DispatchOutcome) -> None:
        item = outcome.item
        record = self._update_record(item, outcome.state, http_status=outcome.http_status)
        reason = outcome.error.detail if outcome.error is not None else None
        if reason:
            record.errors.append(reason)

        if outcome.state is ItemState.SUCCEEDED:
            self._metrics.record_outcome(endpoint=item.endpoint.name, state=outcome.state, terminal_failure=False)
            logger.info(
                "dispatch_succeeded",
                http_status=outcome.http_status,
                latency_ms=round(outcome.latency_s * 1000, 1),
                **item.to_log_context(),
            )
            return

        if not outcome.retry_requested:
            self._terminal(item, record, outcome.state, reason)
            return

        if self._stopping:
            self._terminal(item, record, ItemState.FAILED, f"{reason} ({SHUTDOWN_REASON})")
            return

        policy = item.endpoint.retry_policy or self._config.retry_policy
        if not policy.allows_retry(item.retry_count):
            exhausted = RetriesExhausted(
                f"Retries exhausted after {item.retry_count} retries: {reason}",
                retry_count=item.retry_count,
                last_error=reason,
            )
            record.errors.append(exhausted.detail)
            self._terminal(item, record, ItemState.RETRIES_EXHAUSTED, reason)
            return

        delay = compute_backoff_delay(policy, item.retry_count + 1)
        retry = item.next_attempt(reason or "retry requested")
        record.state = ItemState.RETRY_SCHEDULED
        record.retry_count = retry.retry_count
        record.retry_delays.append(delay)
        self._retries.schedule(retry, delay, self._requeue)
        self._metrics.record_retry(item.endpoint.name)
        logger.warning(
            "retry_scheduled",
            delay_s=delay,
            reason=reason,
            next_retry=retry.retry_count,
            **item.to_log_context(),
        )

    def _terminal(self, item: WorkItem, record: DispatchRecord, state: ItemState, reason: str | None) -> None:
        record.state = state
        record.updated_at = time.time()
        self._metrics.record_outcome(endpoint=item.endpoint.name, state=state, terminal_failure=True)
        logger.error(
            "dispatch_failed",
            state=state.value,
            reason=reason,
            **item.to_log_context(),
        )

    def _requeue(self, item: WorkItem) -> None:
        if self._stopping:
            return
        self._update_record(item, ItemState.QUEUED)
        self._queue.enqueue(item)
        self._drain()

    # ── Records ────────────────────────────────────────────────────

    def _store_record(self, record: DispatchRecord) -> None:
        self._records[record.item_id] = record
        while len(self._records) > self._max_records:
            evict = next((k for k, r in self._records.items() if r.state.is_terminal), None)
            if evict is None:
                break
            del self._records[evict]

    def _update_record(
        self,
        item: WorkItem,
        state: ItemState,
        *,
        attempted: bool = False,
        http_status: int | None = None,
    ) -> DispatchRecord:
        record = self._records.get(item.item_id)
        if record is None:
            record = DispatchRecord(
                item_id=item.item_id,
                customer_id=item.customer.customer_id,
                endpoint=item.endpoint.name,
                submission_id=item.submission.submission_id,
            )
            self._store_record(record)
        record.state = state
        record.retry_count = item.retry_count
        record.updated_at = time.time()
        if attempted:
            record.attempts += 1
        if http_status is not None:
            record.last_http_status = http_status
        return record

    def record(self, item_id: str) -> DispatchRecord | None:
        return self._records.get(item_id)

    def records(self) -> list[DispatchRecord]:
        return list(self._records.values())

    # ── Observability ──────────────────────────────────────────────

    def status(self) -> DispatchStatus:
        states: dict[str, int] = {}
        for record in self._records.values():
            states[record.state.value] = states.get(record.state.value, 0) + 1
        return DispatchStatus(
            queue_length=self._queue.length(),
            in_flight=self._queue.in_flight_count(),
            available_slots=self._pool.available_slots(),
            busy_slots=self._pool.busy_slots(),
            total_slots=self._pool.total_slots(),
            pending_retries=self._retries.pending_count(),
            states=states,
        )

    def _is_idle(self) -> bool:
        return (
            self._queue.length() == 0
            and self._queue.in_flight_count() == 0
            and self._retries.pending_count() == 0
        )

    def _update_idle(self) -> None:
        if self._is_idle():
            self._idle.set()
        else:
            self._idle.clear()

    async def wait_idle(self, timeout_s: float | None = None) -> bool:
        """Wait until nothing is queued, in flight or awaiting a retry."""
        self._update_idle()
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout_s)
        except TimeoutError:
            return False
        return True

    # ── Shutdown ───────────────────────────────────────────────────

    async def shutdown(self, *, flush_retries: bool = False, timeout_s: float | None = 30.0) -> None:
        """Stop accepting work and settle everything outstanding.

        With ``flush_retries`` pending retries fire immediately and the
        engine runs until idle (bounded by ``timeout_s``). Whatever is
        still queued or awaiting a retry afterwards is dropped and logged.
        In-flight deliveries get up to ``timeout_s`` to finish; any still
        running are cancelled and their records end ``failed``.
        """
        self._accepting = False

        if flush_retries:
            for item in self._retries.cancel_all():
                self._requeue(item)
            await self.wait_idle(timeout_s)

        self._stopping = True
        dropped = self._retries.cancel_all() + self._queue.drain_pending()
        for item in dropped:
            record = self._update_record(item, ItemState.FAILED)
            record.errors.append(SHUTDOWN_REASON)
            logger.warning("work_item_dropped", reason=SHUTDOWN_REASON, **item.to_log_context())

        if self._tasks:
            done, pending = await asyncio.wait(set(self._tasks), timeout=timeout_s)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("shutdown_cancelled_in_flight", remaining=len(pending))
                await asyncio.gather(*pending, return_exceptions=True)

        self._update_idle()
        logger.info("orchestrator_shutdown", dropped=len(dropped), in_flight=self._queue.in_flight_count())

    def get_stats(self) -> dict[str, Any]:
        return {
            "status": self.status().to_dict(),
            "queue": self._queue.get_stats(),
            "workers": self._pool.get_stats(),
            "config": {
                "max_concurrent": self._config.max_concurrent,
                "max_workers": self._config.max_workers,
                "max_retries": self._config.max_retries,
                "base_delay_s": self._config.base_delay_s,
            },
        }
