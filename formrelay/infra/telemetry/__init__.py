"""
Telemetry Layer — Unified Observability
========================================

All other layers depend on this.

Provides:
  - Structured logging with dispatch context and secret redaction
  - Metrics collection (Prometheus)

Usage:
    from formrelay.infra.telemetry import get_logger, get_metrics

    logger = get_logger(__name__)
    metrics = get_metrics()
    metrics.record_delivery(endpoint="AuditLogService", status="success", latency_s=0.04)
    logger.info("delivery_succeeded", endpoint="AuditLogService")
"""

from formrelay.infra.telemetry.logger import (
    REDACTED,
    StructuredFormatter,
    StructuredLogger,
    clear_dispatch_context,
    get_logger,
    redact,
    set_dispatch_context,
    setup_logging,
)
from formrelay.infra.telemetry.metrics import MetricsCollector, get_metrics

__all__ = [
    "REDACTED",
    "MetricsCollector",
    "StructuredFormatter",
    "StructuredLogger",
    "clear_dispatch_context",
    "get_logger",
    "get_metrics",
    "redact",
    "set_dispatch_context",
    "setup_logging",
]
