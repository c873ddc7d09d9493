"""
Dispatch Runtime — Work Item Lifecycle
=======================================

Provides:
  - Priority queue of pending work items with in-flight tracking
  - Bounded worker pool that runs one item at a time per slot
  - Delivery pipeline (validate → transform → enrich → deliver)
  - Orchestrator: concurrency ceiling, retry scheduling, shutdown

Depends on: telemetry, services
Depended on by: api, cli
"""

from formrelay.infra.runtime.orchestrator import (
    DispatchOrchestrator,
    DispatchStatus,
    RetryScheduler,
)
from formrelay.infra.runtime.pipeline import (
    DeliveryContext,
    DeliveryPipeline,
    PipelineStage,
    build_payload,
    validate_item,
)
from formrelay.infra.runtime.queue import DispatchQueue
from formrelay.infra.runtime.worker_pool import WorkerPool

__all__ = [
    "DeliveryContext",
    "DeliveryPipeline",
    "DispatchOrchestrator",
    "DispatchQueue",
    "DispatchStatus",
    "PipelineStage",
    "RetryScheduler",
    "WorkerPool",
    "build_payload",
    "validate_item",
]
