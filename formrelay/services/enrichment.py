"""
Enrichment Collaborator
========================

Optional stage between transform and deliver that asks a chat-completions
model to add context to an outgoing payload.

Design:
- ``Enricher`` is a protocol; the pipeline skips the stage when none is set
- The reply may only add keys; every key of the input payload survives
  with its original value
- Secret-looking keys are masked before the payload leaves the process
- Any failure (missing key, HTTP error, non-JSON reply) is an
  ``EnrichmentFailure``, which the orchestrator retries
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

import httpx

from formrelay.core.exceptions import EnrichmentFailure
from formrelay.core.types import EndpointConfig
from formrelay.infra.telemetry import get_logger, redact
from formrelay.services.secrets import API_KEY_SECRET, SecretsService

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "You are a data enrichment expert. Add relevant additional information to the form data. "
    "Reply with a single JSON object."
)


@runtime_checkable
class Enricher(Protocol):
    async def enrich(self, payload: Mapping[str, Any], endpoint: EndpointConfig) -> dict[str, Any]: ...


def merge_enrichment(payload: Mapping[str, Any], reply: Mapping[str, Any]) -> dict[str, Any]:
    """Add reply keys that the payload does not already carry."""
    merged = dict(payload)
    for key, value in reply.items():
        merged.setdefault(key, value)
    return merged


class OpenAIEnricher:
    """Enricher backed by an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        secrets: SecretsService,
        *,
        model: str = "gpt-3.5-turbo",
        base_url: str = "https://api.openai.com/v1",
        max_tokens: int = 500,
        timeout_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._secrets = secrets
        self.model = model
        self._url = base_url.rstrip("/") + "/chat/completions"
        self._max_tokens = max_tokens
        self._timeout_s = timeout_s
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()

    def _prompt(self, payload: Mapping[str, Any], endpoint: EndpointConfig) -> str:
        return (
            f"Enrich the following form data for endpoint {endpoint.name}:\n"
            f"Data: {json.dumps(redact(dict(payload)), indent=2, sort_keys=True, default=str)}\n"
            "Add relevant additional information based on the data context.\n"
            "Return the enriched data as a JSON object"
        )

    async def enrich(self, payload: Mapping[str, Any], endpoint: EndpointConfig) -> dict[str, Any]:
        api_key = self._secrets.get(API_KEY_SECRET)
        if not api_key:
            raise EnrichmentFailure("Enrichment API key is not configured or has expired")

        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": self._prompt(payload, endpoint)},
            ],
            "temperature": 0.1,
            "max_tokens": self._max_tokens,
        }
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        try:
            resp = await self._client.post(self._url, json=body, headers=headers, timeout=self._timeout_s)
        except httpx.HTTPError as e:
            raise EnrichmentFailure(f"Enrichment request failed: {e}", original_error=e) from e
        if resp.status_code >= 400:
            raise EnrichmentFailure(f"Enrichment HTTP {resp.status_code}")

        try:
            content = resp.json()["choices"][0]["message"]["content"] or "{}"
            reply = json.loads(content)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise EnrichmentFailure(f"Unusable enrichment reply: {e}", original_error=e) from e
        if not isinstance(reply, dict):
            raise EnrichmentFailure("Enrichment reply is not a JSON object")

        enriched = merge_enrichment(payload, reply)
        logger.debug(
            "payload_enriched",
            endpoint=endpoint.name,
            added_keys=sorted(set(enriched) - set(payload)),
        )
        return enriched

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
