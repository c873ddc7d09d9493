"""
Mock Downstream Server
=======================

Stand-in for every default endpoint plus a webhook receiver, for local
runs and end-to-end tests.

  POST /api/<endpoint path>        200 {"status": "success", ...}
  POST /hooks/{hook_id}            webhook receiver (records the secret header)
  PUT  /_control/failure           force every call to answer with a status code
  DELETE /_control/failure         back to normal
  GET  /_control/received          requests seen so far

Run standalone with ``formrelay mock-server``; in-process with
``httpx.ASGITransport(app=create_mock_app())``.
"""

from __future__ import annotations

import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from formrelay.infra.telemetry import get_logger, redact
from formrelay.services.endpoints import DEFAULT_ENDPOINTS

logger = get_logger(__name__)

_MESSAGES = {
    "CustomerProfileAPI": "Customer profile updated",
    "AddressVerificationService": "Address verified",
    "CreditCheckSystem": "Credit check completed",
    "ProductCatalogService": "Product recommendations generated",
    "RequestProcessingQueue": "Request queued",
    "CommunicationPreferencesAPI": "Preferences updated",
    "DocumentStorageService": "Document processed",
}


class FailureMode(BaseModel):
    status_code: int = Field(default=500, ge=100, le=599)


def create_mock_app() -> FastAPI:
    app = FastAPI(title="formrelay mock downstream")
    app.state.fail_with = None
    app.state.received = []

    paths = {cfg.path: cfg.name for cfg in DEFAULT_ENDPOINTS if not cfg.is_webhook}

    def _record(kind: str, path: str, payload: Any, headers: dict[str, str]) -> JSONResponse | None:
        app.state.received.append(
            {"kind": kind, "path": path, "payload": payload, "headers": headers, "at": time.time()}
        )
        logger.info("mock_request", kind=kind, path=path, payload=redact(payload))
        if app.state.fail_with is not None:
            return JSONResponse(
                status_code=app.state.fail_with,
                content={"status": "error", "message": "Simulated failure"},
            )
        return None

    @app.post("/api/{path:path}")
    async def endpoint(path: str, request: Request) -> JSONResponse:
        name = paths.get("/" + path)
        if name is None:
            return JSONResponse(status_code=404, content={"status": "error", "message": f"Unknown path /{path}"})
        payload = await request.json()
        failed = _record("endpoint", "/" + path, payload, {})
        if failed is not None:
            return failed
        return JSONResponse(
            content={"status": "success", "message": _MESSAGES.get(name, f"{name} accepted")}
        )

    @app.post("/hooks/{hook_id}")
    async def webhook(hook_id: str, request: Request) -> JSONResponse:
        payload = await request.json()
        secret = request.headers.get("x-webhook-secret", "")
        failed = _record("webhook", f"/hooks/{hook_id}", payload, {"X-Webhook-Secret": secret})
        if failed is not None:
            return failed
        return JSONResponse(content={"status": "success", "message": "Webhook received"})

    @app.put("/_control/failure")
    async def set_failure(mode: FailureMode) -> dict[str, Any]:
        app.state.fail_with = mode.status_code
        return {"fail_with": mode.status_code}

    @app.delete("/_control/failure")
    async def clear_failure() -> dict[str, Any]:
        app.state.fail_with = None
        return {"fail_with": None}

    @app.get("/_control/received")
    async def received() -> list[dict[str, Any]]:
        return app.state.received

    return app
