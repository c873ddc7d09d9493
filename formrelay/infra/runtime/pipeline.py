"""
Delivery Pipeline — Per-Item Stage Sequence
=============================================

Every work item runs the same stages:
  VALIDATE → TRANSFORM → ENRICH → DELIVER

Stage contracts:
  - VALIDATE collects every reason before failing (ValidationFailure)
  - TRANSFORM builds a new payload; the submission is never touched
    (TransformationFailure on any transformer error)
  - ENRICH runs only when an enricher is configured (EnrichmentFailure)
  - DELIVER posts to ``base_url + path``, or to the payload's webhook URL
    for webhook endpoints (DeliveryFailure on non-2xx, transport error or
    timeout)

The pipeline knows nothing about queues, slots or retries. It raises; the
worker pool turns the exception into an outcome.
"""

from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from formrelay.core.exceptions import (
    DeliveryFailure,
    DispatchError,
    EnrichmentFailure,
    TransformationFailure,
    ValidationFailure,
)
from formrelay.core.types import FieldOverride, WorkItem
from formrelay.infra.telemetry import get_logger
from formrelay.infra.telemetry.metrics import MetricsCollector
from formrelay.services import field_rules as fr
from formrelay.services.enrichment import Enricher
from formrelay.services.transport import DeliveryTransport

logger = get_logger(__name__)

WEBHOOK_URL_KEY = "webhookUrl"
WEBHOOK_SECRET_KEY = "secret"
WEBHOOK_SECRET_HEADER = "X-Webhook-Secret"


class PipelineStage(StrEnum):
    """Stages in the delivery lifecycle."""

    VALIDATE = "validate"
    TRANSFORM = "transform"
    ENRICH = "enrich"
    DELIVER = "deliver"
    DONE = "done"


@dataclass
class DeliveryContext:
    """
    Mutable per-attempt state.

    One instance per pipeline run. The work item it wraps is frozen; only
    the bookkeeping fields here change.
    """

    item: WorkItem
    started_at: float = field(default_factory=time.monotonic)
    stage_times: dict[str, float] = field(default_factory=dict)
    current_stage: PipelineStage = PipelineStage.VALIDATE
    payload: dict[str, Any] = field(default_factory=dict)
    url: str | None = None
    http_status: int | None = None
    response_body: Any = None

    @property
    def elapsed_s(self) -> float:
        return time.monotonic() - self.started_at

    def mark_stage(self, stage: PipelineStage) -> None:
        self.current_stage = stage
        self.stage_times[stage.value] = time.monotonic()

    def to_telemetry(self) -> dict[str, Any]:
        return {
            **self.item.to_log_context(),
            "stage": self.current_stage.value,
            "elapsed_ms": round(self.elapsed_s * 1000, 2),
            "http_status": self.http_status,
        }


# ── Validation ─────────────────────────────────────────────────────


def effective_required_fields(item: WorkItem) -> list[str]:
    """Endpoint required fields, then customer fields flagged ``required``."""
    fields = list(item.endpoint.required_fields)
    override = item.customer.override_for(item.endpoint.name)
    for source in (override.field_overrides, item.customer.default_field_overrides):
        for name, field_override in source.items():
            if field_override.required and name not in fields:
                fields.append(name)
    return fields


def _applicable(item: WorkItem, field_name: str) -> tuple[bool, FieldOverride | None]:
    field_override = item.customer.field_override(item.endpoint.name, field_name)
    if field_override is not None and field_override.depends_on is not None:
        if not field_override.depends_on.holds(item.submission):
            return False, field_override
    return True, field_override


def _value_for(item: WorkItem, field_name: str, field_override: FieldOverride | None) -> Any:
    value = item.submission.get(field_name)
    if fr.is_missing(value) and field_override is not None and field_override.value is not None:
        return field_override.value
    return value


def validation_reasons(item: WorkItem) -> list[str]:
    """Every reason the item would fail validation; empty when it passes."""
    reasons: list[str] = []
    endpoint_rules = item.endpoint.validation_rules
    customer_rules = item.customer.override_for(item.endpoint.name).validation_rules

    for name in effective_required_fields(item):
        applies, field_override = _applicable(item, name)
        if not applies:
            continue
        value = _value_for(item, name, field_override)
        if fr.is_missing(value):
            reasons.append(f"Field {name} is required")
            continue

        checks = [lambda v, n=name: fr.validate(n, v)]
        if name in endpoint_rules:
            checks.append(endpoint_rules[name])
        if field_override is not None and field_override.validation is not None:
            checks.append(field_override.validation)
        if name in customer_rules:
            checks.append(customer_rules[name])

        for check in checks:
            reason = check(value)
            if reason is not None:
                reasons.append(f"Field {name} is invalid: {reason}")
    return reasons


def validate_item(item: WorkItem) -> None:
    reasons = validation_reasons(item)
    if reasons:
        raise ValidationFailure(reasons, endpoint=item.endpoint.name)


# ── Transformation ─────────────────────────────────────────────────


def _spread(field_name: str, targets: Sequence[str], value: Any) -> dict[str, Any]:
    if isinstance(value, Mapping):
        parts = [value[t] for t in targets] if all(t in value for t in targets) else list(value.values())
    elif isinstance(value, (list, tuple)):
        parts = list(value)
    else:
        raise TransformationFailure(
            field_name, ValueError(f"cannot spread {type(value).__name__} across {len(targets)} fields")
        )
    if len(parts) != len(targets):
        raise TransformationFailure(
            field_name, ValueError(f"expected {len(targets)} parts, got {len(parts)}")
        )
    return dict(zip(targets, parts, strict=True))


def _transform_value(item: WorkItem, name: str, value: Any, field_override: FieldOverride | None) -> Any:
    if field_override is not None and field_override.transformation is not None:
        return field_override.transformation(value)
    return fr.transform(name, value, item.endpoint.field_transformations, item.endpoint.date_format)


def build_payload(item: WorkItem) -> dict[str, Any]:
    """Build the outgoing payload for one endpoint.

    Deterministic: the same item always yields an equal payload.
    """
    override = item.customer.override_for(item.endpoint.name)
    payload: dict[str, Any] = {}

    for name in effective_required_fields(item):
        applies, field_override = _applicable(item, name)
        if not applies:
            continue
        value = _value_for(item, name, field_override)
        try:
            transformed = _transform_value(item, name, value, field_override)
        except TransformationFailure:
            raise
        except Exception as e:
            raise TransformationFailure(name, e) from e

        target = override.field_mappings.get(name, name)
        if isinstance(target, str):
            payload[target] = transformed
        else:
            payload.update(_spread(name, target, transformed))

    payload.update(override.additional_fields)
    return payload


# ── Pipeline ───────────────────────────────────────────────────────


class DeliveryPipeline:
    """
    Runs one work item through validate → transform → enrich → deliver.

    Usage:
        pipeline = DeliveryPipeline(transport, base_url="http://localhost:3000/api")
        ctx = await pipeline.run(item)
    """

    def __init__(
        self,
        transport: DeliveryTransport,
        *,
        base_url: str,
        timeout_s: float = 30.0,
        enricher: Enricher | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._transport = transport
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._enricher = enricher
        self._metrics = metrics

    def url_for(self, path: str) -> str:
        return self._base_url + path

    async def run(self, item: WorkItem) -> DeliveryContext:
        ctx = DeliveryContext(item=item)

        ctx.mark_stage(PipelineStage.VALIDATE)
        validate_item(item)

        ctx.mark_stage(PipelineStage.TRANSFORM)
        ctx.payload = build_payload(item)

        if self._enricher is not None:
            ctx.mark_stage(PipelineStage.ENRICH)
            ctx.payload = await self._enrich(ctx)

        ctx.mark_stage(PipelineStage.DELIVER)
        await self._deliver(ctx)

        ctx.mark_stage(PipelineStage.DONE)
        logger.info("delivery_succeeded", **ctx.to_telemetry())
        return ctx

    async def _enrich(self, ctx: DeliveryContext) -> dict[str, Any]:
        assert self._enricher is not None
        try:
            return await self._enricher.enrich(ctx.payload, ctx.item.endpoint)
        except DispatchError:
            raise
        except Exception as e:
            raise EnrichmentFailure(f"Enrichment failed: {e}", original_error=e) from e

    async def _deliver(self, ctx: DeliveryContext) -> None:
        endpoint = ctx.item.endpoint
        payload = dict(ctx.payload)
        headers = {"Content-Type": "application/json"}

        if endpoint.is_webhook:
            url = payload.pop(WEBHOOK_URL_KEY, None)
            secret = payload.pop(WEBHOOK_SECRET_KEY, None)
            if not url:
                raise DispatchError(
                    f"Webhook endpoint {endpoint.name} has no {WEBHOOK_URL_KEY} configured",
                    stage="delivery",
                    retryable=False,
                )
            headers[WEBHOOK_SECRET_HEADER] = secret or ""
            kind = "Webhook"
        else:
            url = self.url_for(endpoint.path)
            kind = "API"
        ctx.url = url

        start = time.monotonic()
        try:
            response = await self._transport.post(url, payload, headers, self._timeout_s)
        except DeliveryFailure:
            self._record(endpoint.name, "error", time.monotonic() - start)
            raise
        latency = time.monotonic() - start

        ctx.http_status = response.status_code
        ctx.response_body = response.body
        if not response.ok:
            self._record(endpoint.name, "error", latency)
            raise DeliveryFailure(
                f"{kind} request failed with status {response.status_code}",
                status_code=response.status_code,
            )
        self._record(endpoint.name, "success", latency)

    def _record(self, endpoint: str, status: str, latency_s: float) -> None:
        if self._metrics is not None:
            self._metrics.record_delivery(endpoint=endpoint, status=status, latency_s=latency_s)
