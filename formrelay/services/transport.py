"""
Delivery Transport
===================

Outbound HTTP for the delivery stage.

Design:
- ``DeliveryTransport`` is the seam the pipeline depends on; tests substitute
  an in-process fake or an ``httpx.MockTransport``
- ``HttpTransport`` wraps one shared ``httpx.AsyncClient``
- Every attempt is bounded by its own timeout
- Transport errors and timeouts surface as ``DeliveryFailure``; status codes
  are returned as-is and judged by the pipeline
- ``RateLimiter`` spaces deliveries process-wide from one shared timestamp
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx

from formrelay.core.exceptions import DeliveryFailure
from formrelay.infra.telemetry import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeliveryResponse:
    status_code: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@runtime_checkable
class DeliveryTransport(Protocol):
    async def post(
        self,
        url: str,
        payload: Mapping[str, Any],
        headers: Mapping[str, str],
        timeout_s: float,
    ) -> DeliveryResponse: ...


# ── Rate limiting ──────────────────────────────────────────────────


class RateLimiter:
    """Minimum spacing of ``60 / requests_per_minute`` seconds between requests.

    ``None`` or ``0`` disables limiting.
    """

    def __init__(
        self,
        requests_per_minute: int | None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.interval_s = 60.0 / requests_per_minute if requests_per_minute else 0.0
        self._clock = clock
        self._sleep = sleep
        self._last_request: float | None = None
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.interval_s > 0

    async def wait(self) -> float:
        """Suspend until the next request may go out. Returns the time waited."""
        if not self.enabled:
            return 0.0
        async with self._lock:
            waited = 0.0
            if self._last_request is not None:
                remaining = self.interval_s - (self._clock() - self._last_request)
                if remaining > 0:
                    await self._sleep(remaining)
                    waited = remaining
            self._last_request = self._clock()
            return waited


# ── HTTP transport ─────────────────────────────────────────────────


class HttpTransport:
    """``DeliveryTransport`` over ``httpx.AsyncClient``."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._rate_limiter = rate_limiter

    async def post(
        self,
        url: str,
        payload: Mapping[str, Any],
        headers: Mapping[str, str],
        timeout_s: float,
    ) -> DeliveryResponse:
        if self._rate_limiter is not None:
            waited = await self._rate_limiter.wait()
            if waited:
                logger.debug("rate_limit_wait", waited_s=round(waited, 3))
        try:
            response = await asyncio.wait_for(
                self._client.post(url, json=dict(payload), headers=dict(headers), timeout=timeout_s),
                timeout=timeout_s,
            )
        except TimeoutError as e:
            raise DeliveryFailure(f"Delivery timed out after {timeout_s}s", original_error=e) from e
        except httpx.TimeoutException as e:
            raise DeliveryFailure(f"Delivery timed out after {timeout_s}s", original_error=e) from e
        except httpx.HTTPError as e:
            raise DeliveryFailure(f"Transport error: {e}", original_error=e) from e

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        return DeliveryResponse(status_code=response.status_code, body=body)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
