"""Exception classes and retry policy for formrelay.

Includes:
- Base exception carrying an error code and HTTP status for API responses
- Configuration errors (unknown customer, unknown endpoint, bad rule tables)
- Dispatch pipeline exceptions with retry metadata
- Retry policy and exponential backoff computation
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any


class FormRelayException(Exception):
    """Base exception for all formrelay errors."""

    def __init__(
        self, detail: str, status_code: int = 500, error_code: str = "INTERNAL_ERROR"
    ):
        self.detail = detail
        self.status_code = status_code
        self.error_code = error_code
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": self.error_code,
            "detail": self.detail,
            "status_code": self.status_code,
            "timestamp": self.timestamp,
        }


# =============================================================================
# CONFIGURATION EXCEPTIONS (fatal, never retried)
# =============================================================================


class ConfigurationError(FormRelayException):
    """Raised when customer, endpoint or rule configuration is missing or inconsistent."""

    def __init__(self, detail: str, status_code: int = 500, error_code: str = "CONFIGURATION_ERROR"):
        super().__init__(detail=detail, status_code=status_code, error_code=error_code)


class CustomerNotFound(ConfigurationError):
    """Raised when a customer id has no registered configuration."""

    def __init__(self, customer_id: str):
        super().__init__(
            detail=f"No configuration found for customer {customer_id}",
            status_code=404,
            error_code="CUSTOMER_NOT_FOUND",
        )
        self.customer_id = customer_id


class EndpointNotFound(ConfigurationError):
    """Raised when an endpoint name is not in the registry."""

    def __init__(self, endpoint: str):
        super().__init__(
            detail=f"No configuration found for endpoint {endpoint}",
            status_code=404,
            error_code="ENDPOINT_NOT_FOUND",
        )
        self.endpoint = endpoint


# =============================================================================
# DISPATCH EXCEPTIONS (with retry support)
# =============================================================================


class DispatchError(FormRelayException):
    """Base exception for pipeline errors with retry metadata."""

    def __init__(
        self,
        detail: str,
        stage: str = "unknown",
        original_error: Exception | None = None,
        context: dict[str, Any] | None = None,
        retryable: bool = True,
    ):
        super().__init__(
            detail=detail, status_code=500, error_code=f"DISPATCH_{stage.upper()}_ERROR"
        )
        self.stage = stage
        self.original_error = original_error
        self.context = context or {}
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        base = super().to_dict()
        base.update(
            {
                "stage": self.stage,
                "retryable": self.retryable,
                "context": self.context,
            }
        )
        return base


class ValidationFailure(DispatchError):
    """One or more field checks failed. Never retried: the input will not change."""

    def __init__(self, reasons: list[str], endpoint: str | None = None):
        super().__init__(
            detail="; ".join(reasons) or "validation failed",
            stage="validation",
            context={"endpoint": endpoint, "reasons": list(reasons)},
            retryable=False,
        )
        self.status_code = 422
        self.reasons = list(reasons)


class TransformationFailure(DispatchError):
    """A field transformer raised. Fatal for the work item, like validation."""

    def __init__(self, field: str, original_error: Exception | None = None):
        super().__init__(
            detail=f"Failed to transform field {field}: {original_error}",
            stage="transformation",
            original_error=original_error,
            context={"field": field},
            retryable=False,
        )
        self.field = field


class EnrichmentFailure(DispatchError):
    """The enrichment collaborator failed or returned an unusable payload."""

    def __init__(self, detail: str, original_error: Exception | None = None):
        super().__init__(
            detail=detail,
            stage="enrichment",
            original_error=original_error,
            retryable=True,
        )


class DeliveryFailure(DispatchError):
    """Non-2xx response, transport error or timeout while delivering a payload."""

    def __init__(
        self,
        detail: str,
        status_code: int | None = None,
        original_error: Exception | None = None,
    ):
        super().__init__(
            detail=detail,
            stage="delivery",
            original_error=original_error,
            context={"http_status": status_code} if status_code is not None else {},
            retryable=True,
        )
        self.http_status = status_code


class RetriesExhausted(DispatchError):
    """Terminal: a retryable failure persisted past the retry budget."""

    def __init__(self, detail: str, retry_count: int, last_error: str | None = None):
        super().__init__(
            detail=detail,
            stage="retry",
            context={"retry_count": retry_count, "last_error": last_error},
            retryable=False,
        )
        self.retry_count = retry_count
        self.last_error = last_error


class NoAvailableWorker(FormRelayException):
    """A pipeline was started with every worker slot busy.

    The orchestrator only claims work while a slot is idle, so reaching this
    is a defect in the caller, not a runtime condition.
    """

    def __init__(self, detail: str = "No available workers"):
        super().__init__(detail=detail, status_code=503, error_code="NO_AVAILABLE_WORKER")


# =============================================================================
# RETRY POLICY & BACKOFF
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff base for one endpoint (or the whole engine)."""

    max_retries: int = 3
    base_delay_s: float = 5.0
    exponential_base: float = 2.0
    max_delay_s: float | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_s < 0:
            raise ValueError("base_delay_s must be >= 0")

    def allows_retry(self, retry_count: int) -> bool:
        """True if an item that already used ``retry_count`` retries may retry again."""
        return retry_count < self.max_retries


def compute_backoff_delay(policy: RetryPolicy, retry_number: int) -> float:
    """Delay before retry ``retry_number`` (1-based): ``base * 2 ** n``.

    With base=1s the first three retries wait 2s, 4s and 8s.
    """
    if retry_number < 1:
        raise ValueError("retry_number is 1-based")
    delay = policy.base_delay_s * (policy.exponential_base ** retry_number)
    if policy.max_delay_s is not None:
        delay = min(delay, policy.max_delay_s)
    return delay
