"""
Canonical Type Definitions
===========================

Single source of truth for the dispatch data model.

This module defines:
- Submission: one immutable form instance
- EndpointConfig / CustomerConfig: static routing descriptors
- WorkItem: a submission plus routing/retry metadata
- ItemState: per-item lifecycle
- WorkerSlot, DispatchOutcome, DispatchRecord: runtime bookkeeping

Everything that crosses a stage boundary is frozen. Stages build new values
instead of mutating the ones they receive, so a retry always observes the
original input.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from formrelay.core.exceptions import DispatchError, RetryPolicy

__all__ = [
    "CustomerConfig",
    "DateFormat",
    "DispatchOutcome",
    "DispatchRecord",
    "EndpointConfig",
    "EndpointOverride",
    "FieldCondition",
    "FieldOverride",
    "ItemState",
    "Rule",
    "Submission",
    "Transformer",
    "WorkItem",
    "WorkerSlot",
]

# A rule returns None when the value passes, otherwise a human-readable reason.
Rule = Callable[[Any], str | None]
Transformer = Callable[[Any], Any]


def _frozen(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


class DateFormat(StrEnum):
    """Date rendering selected per endpoint."""

    ISO = "ISO"
    UNIX = "UNIX"
    US = "US"
    EU = "EU"


class ItemState(StrEnum):
    """Work item lifecycle.

    queued → claimed → {succeeded | validation_failed | transformation_failed
    | retry_scheduled → queued | retries_exhausted}
    """

    QUEUED = "queued"
    CLAIMED = "claimed"
    SUCCEEDED = "succeeded"
    VALIDATION_FAILED = "validation_failed"
    TRANSFORMATION_FAILED = "transformation_failed"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRIES_EXHAUSTED = "retries_exhausted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    @property
    def is_failure(self) -> bool:
        return self.is_terminal and self is not ItemState.SUCCEEDED


_TERMINAL_STATES = frozenset({
    ItemState.SUCCEEDED,
    ItemState.VALIDATION_FAILED,
    ItemState.TRANSFORMATION_FAILED,
    ItemState.RETRIES_EXHAUSTED,
    ItemState.FAILED,
})


# ── Submission ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Submission:
    """One form instance. Never mutated after creation."""

    customer_id: str
    fields: Mapping[str, Any]
    document_id: str | None = None
    submission_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", _frozen(self.fields))

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def __contains__(self, name: object) -> bool:
        return name in self.fields

    @classmethod
    def from_form(cls, form: Mapping[str, Any], customer_id: str | None = None) -> Submission:
        """Build a submission from a raw form; ids default to the form's own fields."""
        return cls(
            customer_id=customer_id or str(form.get("customerID", "")),
            fields=form,
            document_id=form.get("documentID"),
        )


# ── Static configuration ───────────────────────────────────────────


@dataclass(frozen=True)
class FieldCondition:
    """Predicate on another field of the same submission."""

    field: str
    predicate: Callable[[Any], bool]

    def holds(self, submission: Submission) -> bool:
        return bool(self.predicate(submission.get(self.field)))


@dataclass(frozen=True)
class FieldOverride:
    """Customer-specific tweak for one field."""

    value: Any = None
    transformation: Transformer | None = None
    validation: Rule | None = None
    required: bool = False
    depends_on: FieldCondition | None = None


@dataclass(frozen=True)
class EndpointConfig:
    """Static descriptor of one downstream destination."""

    name: str
    path: str
    required_fields: tuple[str, ...]
    field_transformations: Mapping[str, Transformer] = field(default_factory=dict)
    validation_rules: Mapping[str, Rule] = field(default_factory=dict)
    date_format: DateFormat | None = None
    retry_policy: RetryPolicy | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "required_fields", tuple(self.required_fields))
        object.__setattr__(self, "field_transformations", _frozen(self.field_transformations))
        object.__setattr__(self, "validation_rules", _frozen(self.validation_rules))

    @property
    def is_webhook(self) -> bool:
        return self.path == "/webhook"


@dataclass(frozen=True)
class EndpointOverride:
    """Per-customer settings for one endpoint."""

    enabled: bool = True
    enabled_when: FieldCondition | None = None
    field_mappings: Mapping[str, str | tuple[str, ...]] = field(default_factory=dict)
    field_overrides: Mapping[str, FieldOverride] = field(default_factory=dict)
    additional_fields: Mapping[str, Any] = field(default_factory=dict)
    validation_rules: Mapping[str, Rule] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "field_mappings", _frozen(self.field_mappings))
        object.__setattr__(self, "field_overrides", _frozen(self.field_overrides))
        object.__setattr__(self, "additional_fields", _frozen(self.additional_fields))
        object.__setattr__(self, "validation_rules", _frozen(self.validation_rules))

    def is_enabled_for(self, submission: Submission) -> bool:
        if not self.enabled:
            return False
        return self.enabled_when is None or self.enabled_when.holds(submission)


_NO_OVERRIDE = EndpointOverride()


@dataclass(frozen=True)
class CustomerConfig:
    """Static descriptor of which endpoints and overrides apply to one customer."""

    customer_id: str
    enabled_endpoints: tuple[str, ...]
    endpoint_overrides: Mapping[str, EndpointOverride] = field(default_factory=dict)
    default_field_overrides: Mapping[str, FieldOverride] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "enabled_endpoints", tuple(self.enabled_endpoints))
        object.__setattr__(self, "endpoint_overrides", _frozen(self.endpoint_overrides))
        object.__setattr__(self, "default_field_overrides", _frozen(self.default_field_overrides))

    def override_for(self, endpoint: str) -> EndpointOverride:
        return self.endpoint_overrides.get(endpoint, _NO_OVERRIDE)

    def field_override(self, endpoint: str, field_name: str) -> FieldOverride | None:
        """Endpoint-level override wins over the customer-wide default."""
        specific = self.override_for(endpoint).field_overrides.get(field_name)
        return specific or self.default_field_overrides.get(field_name)


# ── Runtime ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class WorkItem:
    """A submission bound to one endpoint, plus routing and retry metadata."""

    submission: Submission
    customer: CustomerConfig
    endpoint: EndpointConfig
    priority: int = 1
    retry_count: int = 0
    last_error: str | None = None
    item_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    enqueued_at: float = field(default_factory=time.monotonic)

    @property
    def attempt_key(self) -> str:
        return f"{self.item_id}#{self.retry_count}"

    @property
    def wait_time_s(self) -> float:
        return time.monotonic() - self.enqueued_at

    def next_attempt(self, reason: str, priority_boost: int = 1) -> WorkItem:
        """Return the follow-up item for a retry; the receiver is left untouched."""
        return replace(
            self,
            retry_count=self.retry_count + 1,
            priority=self.priority + priority_boost,
            last_error=reason,
            enqueued_at=time.monotonic(),
        )

    def to_log_context(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "customer_id": self.customer.customer_id,
            "endpoint": self.endpoint.name,
            "retry_count": self.retry_count,
            "priority": self.priority,
        }


@dataclass
class WorkerSlot:
    """One concurrent execution lane. The busy flag is set by the task using it."""

    slot_id: int
    busy: bool = False
    tasks_completed: int = 0
    tasks_failed: int = 0
    total_latency_s: float = 0.0
    last_task_at: float = 0.0

    @property
    def avg_latency_s(self) -> float:
        runs = self.tasks_completed + self.tasks_failed
        return self.total_latency_s / runs if runs else 0.0


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of running the pipeline once for one work item."""

    item: WorkItem
    state: ItemState
    error: DispatchError | None = None
    http_status: int | None = None
    latency_s: float = 0.0

    @property
    def retry_requested(self) -> bool:
        return self.error is not None and self.error.retryable


@dataclass
class DispatchRecord:
    """Observable history of one work item lineage across its retries."""

    item_id: str
    customer_id: str
    endpoint: str
    submission_id: str
    state: ItemState = ItemState.QUEUED
    attempts: int = 0
    retry_count: int = 0
    retry_delays: list[float] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    last_http_status: int | None = None
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "customer_id": self.customer_id,
            "endpoint": self.endpoint,
            "submission_id": self.submission_id,
            "state": self.state.value,
            "attempts": self.attempts,
            "retry_count": self.retry_count,
            "retry_delays": list(self.retry_delays),
            "errors": list(self.errors),
            "last_http_status": self.last_http_status,
            "updated_at": self.updated_at,
        }
