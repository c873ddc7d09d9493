"""
Shared API Dependencies
========================

Builds the dispatch runtime from settings and exposes it to route handlers.

Usage:
    runtime = build_runtime(settings)
    orchestrator = runtime.orchestrator
    ...
    await runtime.aclose()
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from fastapi import Request

from formrelay.core.config import DispatchConfig, Settings
from formrelay.infra.health import HealthChecker
from formrelay.infra.runtime.orchestrator import DispatchOrchestrator
from formrelay.infra.telemetry import get_logger
from formrelay.services.customers import default_store
from formrelay.services.endpoints import default_registry
from formrelay.services.enrichment import OpenAIEnricher
from formrelay.services.secrets import API_KEY_SECRET, SecretsService
from formrelay.services.transport import DeliveryTransport, HttpTransport, RateLimiter

logger = get_logger(__name__)

__all__ = [
    "DispatchRuntime",
    "build_runtime",
    "get_health_checker",
    "get_orchestrator",
]


@dataclass
class DispatchRuntime:
    """The orchestrator plus the I/O resources it was built on."""

    orchestrator: DispatchOrchestrator
    transport: DeliveryTransport
    enricher: OpenAIEnricher | None = None

    async def aclose(self, *, flush_retries: bool = False) -> None:
        await self.orchestrator.shutdown(flush_retries=flush_retries)
        if isinstance(self.transport, HttpTransport):
            await self.transport.aclose()
        if self.enricher is not None:
            await self.enricher.aclose()


def build_enricher(s: Settings) -> OpenAIEnricher | None:
    if not s.ENRICHMENT_ENABLED:
        return None
    secrets = SecretsService(s.ENCRYPTION_KEY, default_ttl_s=s.SECRET_TTL_S)
    if s.OPENAI_API_KEY:
        secrets.set(API_KEY_SECRET, s.OPENAI_API_KEY)
    else:
        logger.warning("enrichment_without_api_key")
    return OpenAIEnricher(
        secrets,
        model=s.OPENAI_MODEL,
        base_url=s.OPENAI_BASE_URL,
        max_tokens=s.ENRICHMENT_MAX_TOKENS,
        timeout_s=s.DELIVERY_TIMEOUT_S,
    )


def build_runtime(
    s: Settings,
    *,
    transport: DeliveryTransport | None = None,
    client: httpx.AsyncClient | None = None,
) -> DispatchRuntime:
    """Wire the default customers and endpoints to an HTTP transport."""
    if transport is None:
        transport = HttpTransport(client=client, rate_limiter=RateLimiter(s.RATE_LIMIT_PER_MINUTE))
    enricher = build_enricher(s)
    orchestrator = DispatchOrchestrator(
        default_store(),
        default_registry(),
        transport,
        enricher=enricher,
        config=DispatchConfig.from_settings(s),
    )
    return DispatchRuntime(orchestrator=orchestrator, transport=transport, enricher=enricher)


def get_orchestrator(request: Request) -> DispatchOrchestrator:
    return request.app.state.runtime.orchestrator


def get_health_checker(request: Request) -> HealthChecker:
    return request.app.state.health_checker
