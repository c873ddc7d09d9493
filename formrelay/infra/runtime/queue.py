"""
Dispatch Queue — Priority-Ordered Pending Work
================================================

Holds work items waiting for a worker plus the set of items currently
claimed.

Ordering:
  - Higher priority first
  - FIFO among equal priorities (stable insert)
  - A retried item re-enters with priority + 1, so it overtakes fresh work
    of its original priority

Design:
  - One threading.Lock guards the pending list and the in-flight set
  - No operation suspends; callers on the event loop never wait on the lock
    for longer than a list insert
  - The queue does not cap parallelism; the orchestrator does
"""

from __future__ import annotations

import threading
from typing import Any

from formrelay.core.types import WorkItem
from formrelay.infra.telemetry import get_logger
from formrelay.infra.telemetry.metrics import MetricsCollector

logger = get_logger(__name__)


class DispatchQueue:
    """Priority queue of work items with an in-flight set keyed by attempt."""

    def __init__(self, metrics: MetricsCollector | None = None) -> None:
        self._pending: list[WorkItem] = []
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()
        self._metrics = metrics
        self._total_enqueued = 0
        self._total_claimed = 0
        self._total_completed = 0

    def enqueue(self, item: WorkItem) -> None:
        """Insert before the first item with strictly lower priority."""
        if item.priority < 0:
            raise ValueError(f"priority must be non-negative, got {item.priority}")
        with self._lock:
            index = next(
                (i for i, queued in enumerate(self._pending) if queued.priority < item.priority),
                len(self._pending),
            )
            self._pending.insert(index, item)
            self._total_enqueued += 1
            self._publish()
        logger.debug(
            "item_enqueued",
            item_id=item.item_id,
            endpoint=item.endpoint.name,
            priority=item.priority,
            retry_count=item.retry_count,
            position=index,
        )

    def claim_next(self) -> WorkItem | None:
        """Pop the head and mark it in flight. ``None`` when nothing is pending."""
        with self._lock:
            if not self._pending:
                return None
            item = self._pending.pop(0)
            self._in_flight.add(item.attempt_key)
            self._total_claimed += 1
            self._publish()
        if self._metrics is not None:
            self._metrics.record_queue_wait(item.wait_time_s)
        return item

    def complete(self, item: WorkItem) -> None:
        with self._lock:
            if item.attempt_key in self._in_flight:
                self._in_flight.discard(item.attempt_key)
                self._total_completed += 1
            self._publish()

    def drain_pending(self) -> list[WorkItem]:
        """Remove and return every pending item, head first."""
        with self._lock:
            drained, self._pending = self._pending, []
            self._publish()
        return drained

    def length(self) -> int:
        with self._lock:
            return len(self._pending)

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def is_in_flight(self, item: WorkItem) -> bool:
        with self._lock:
            return item.attempt_key in self._in_flight

    def snapshot(self) -> list[WorkItem]:
        """Pending items in dispatch order. The queue is not modified."""
        with self._lock:
            return list(self._pending)

    def __len__(self) -> int:
        return self.length()

    def _publish(self) -> None:
        # Caller holds the lock.
        if self._metrics is not None:
            self._metrics.record_queue(depth=len(self._pending), in_flight=len(self._in_flight))

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "depth": len(self._pending),
                "in_flight": len(self._in_flight),
                "total_enqueued": self._total_enqueued,
                "total_claimed": self._total_claimed,
                "total_completed": self._total_completed,
            }
