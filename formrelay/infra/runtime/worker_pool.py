"""
Worker Pool — Bounded Execution Slots
=======================================

A fixed set of worker slots. Each slot is a token in a bounded channel:
taking a token marks the slot busy, returning it marks it idle.

Design:
  - ``reserve()`` never waits; it raises NoAvailableWorker when every slot
    is taken. The orchestrator only reserves after checking availability,
    so that error means a caller bug
  - ``acquire()`` waits for a token, for callers that want backpressure
  - ``process()`` runs the delivery pipeline on a slot and always hands the
    slot back, whatever the pipeline raised
  - The pool never touches queue state
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

from formrelay.core.exceptions import (
    DispatchError,
    NoAvailableWorker,
    TransformationFailure,
    ValidationFailure,
)
from formrelay.core.types import DispatchOutcome, ItemState, WorkerSlot, WorkItem
from formrelay.infra.runtime.pipeline import DeliveryPipeline
from formrelay.infra.telemetry import get_logger
from formrelay.infra.telemetry.metrics import MetricsCollector

logger = get_logger(__name__)


class WorkerPool:
    """
    Fixed-size pool of worker slots running the delivery pipeline.

    Usage:
        pool = WorkerPool(pipeline, max_workers=5)
        slot = pool.reserve()
        outcome = await pool.process(item, slot)
    """

    def __init__(
        self,
        pipeline: DeliveryPipeline,
        max_workers: int = 5,
        metrics: MetricsCollector | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._pipeline = pipeline
        self._metrics = metrics
        self._slots: dict[int, WorkerSlot] = {i: WorkerSlot(slot_id=i) for i in range(max_workers)}
        self._tokens: asyncio.Queue[WorkerSlot] = asyncio.Queue(maxsize=max_workers)
        for slot in self._slots.values():
            self._tokens.put_nowait(slot)
        self._total_processed = 0
        self._total_succeeded = 0
        self._total_failed = 0

    # ── Slot tokens ────────────────────────────────────────────────

    def reserve(self) -> WorkerSlot:
        """Take an idle slot without waiting."""
        try:
            slot = self._tokens.get_nowait()
        except asyncio.QueueEmpty:
            raise NoAvailableWorker() from None
        slot.busy = True
        self._publish()
        return slot

    async def acquire(self) -> WorkerSlot:
        """Take an idle slot, waiting for one to be released."""
        slot = await self._tokens.get()
        slot.busy = True
        self._publish()
        return slot

    def release(self, slot: WorkerSlot) -> None:
        if self._slots.get(slot.slot_id) is not slot:
            raise ValueError(f"slot {slot.slot_id} does not belong to this pool")
        if not slot.busy:
            return
        slot.busy = False
        self._tokens.put_nowait(slot)
        self._publish()

    # ── Execution ──────────────────────────────────────────────────

    async def process(self, item: WorkItem, slot: WorkerSlot | None = None) -> DispatchOutcome:
        """Run the pipeline for ``item`` on ``slot`` (reserved here when omitted)."""
        if slot is None:
            slot = self.reserve()
        elif not slot.busy:
            raise ValueError(f"slot {slot.slot_id} was not reserved")

        start = time.monotonic()
        succeeded = False
        try:
            ctx = await self._pipeline.run(item)
            succeeded = True
            return DispatchOutcome(
                item=item,
                state=ItemState.SUCCEEDED,
                http_status=ctx.http_status,
                latency_s=time.monotonic() - start,
            )
        except ValidationFailure as e:
            return self._failed(item, ItemState.VALIDATION_FAILED, e, start)
        except TransformationFailure as e:
            return self._failed(item, ItemState.TRANSFORMATION_FAILED, e, start)
        except DispatchError as e:
            logger.warning(
                "dispatch_attempt_failed",
                stage=e.stage,
                retryable=e.retryable,
                reason=e.detail,
                **item.to_log_context(),
            )
            return self._failed(item, ItemState.FAILED, e, start)
        except Exception as e:
            logger.error("pipeline_crashed", exc=e, **item.to_log_context())
            error = DispatchError(f"Unexpected pipeline error: {e}", stage="worker", original_error=e, retryable=False)
            return self._failed(item, ItemState.FAILED, error, start)
        finally:
            latency = time.monotonic() - start
            slot.total_latency_s += latency
            slot.last_task_at = time.monotonic()
            self._total_processed += 1
            if succeeded:
                slot.tasks_completed += 1
                self._total_succeeded += 1
            else:
                slot.tasks_failed += 1
                self._total_failed += 1
            self.release(slot)

    def _failed(self, item: WorkItem, state: ItemState, error: DispatchError, start: float) -> DispatchOutcome:
        return DispatchOutcome(
            item=item,
            state=state,
            error=error,
            http_status=getattr(error, "http_status", None),
            latency_s=time.monotonic() - start,
        )

    # ── Introspection ──────────────────────────────────────────────

    def available_slots(self) -> int:
        return self._tokens.qsize()

    def busy_slots(self) -> int:
        return sum(1 for s in self._slots.values() if s.busy)

    def total_slots(self) -> int:
        return len(self._slots)

    def _publish(self) -> None:
        if self._metrics is not None:
            self._metrics.record_workers(self.busy_slots())

    def get_stats(self) -> dict[str, Any]:
        return {
            "max_workers": self.total_slots(),
            "busy": self.busy_slots(),
            "available": self.available_slots(),
            "total_processed": self._total_processed,
            "total_succeeded": self._total_succeeded,
            "total_failed": self._total_failed,
            "workers": {
                sid: {
                    "completed": s.tasks_completed,
                    "failed": s.tasks_failed,
                    "avg_latency_ms": round(s.avg_latency_s * 1000, 1),
                    "busy": s.busy,
                }
                for sid, s in self._slots.items()
            },
        }
