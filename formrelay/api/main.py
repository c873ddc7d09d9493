"""
formrelay Application
======================

HTTP front door for the dispatch engine.

The lifespan builds the dispatch runtime (customers, endpoints, transport,
orchestrator) from settings and tears it down in reverse: stop accepting,
settle in-flight deliveries, close the HTTP clients.

Routes:
  POST /api/v1/submissions/{customer_id}           fan out to enabled endpoints
  POST /api/v1/submissions/{customer_id}/endpoints/{endpoint}
  GET  /api/v1/status                              queue / worker snapshot
  GET  /api/v1/records[/{item_id}]                 per-item dispatch history
  GET  /health                                     aggregated health checks
  GET  /metrics                                    Prometheus exposition
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from formrelay.core.config import Settings, settings
from formrelay.core.exceptions import FormRelayException
from formrelay.infra.health import HealthChecker, register_dispatch_checks
from formrelay.infra.telemetry import get_logger, get_metrics, setup_logging

from .deps import DispatchRuntime, build_runtime
from .routes import submissions

logger = get_logger(__name__)


async def exception_handler(request: Request, exc: FormRelayException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", exc=exc, path=request.url.path, error_code=exc.error_code)
    else:
        logger.warning("request_rejected", path=request.url.path, error_code=exc.error_code, detail=exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(
    s: Settings | None = None,
    *,
    runtime_factory: Callable[[Settings], DispatchRuntime] | None = None,
) -> FastAPI:
    """Build the API app. ``runtime_factory`` replaces the default wiring (tests)."""
    s = s or settings
    factory = runtime_factory or build_runtime

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        setup_logging(level=s.LOG_LEVEL, json_output=s.ENVIRONMENT != "development", log_dir=s.LOG_DIR)
        logger.info("app_starting", app=s.APP_NAME, version=s.APP_VERSION, environment=s.ENVIRONMENT)

        runtime = factory(s)
        checker = HealthChecker()
        register_dispatch_checks(checker, runtime.orchestrator)
        app.state.runtime = runtime
        app.state.health_checker = checker

        yield

        logger.info("app_stopping")
        await runtime.aclose()

    app = FastAPI(
        title=s.APP_NAME,
        description="Form submission dispatch engine",
        version=s.APP_VERSION,
        lifespan=lifespan,
    )
    app.add_exception_handler(FormRelayException, exception_handler)  # type: ignore[arg-type]
    app.include_router(submissions.router, prefix=s.API_V1_PREFIX, tags=["dispatch"])

    @app.get("/health", include_in_schema=False)
    async def health() -> JSONResponse:
        checker: HealthChecker = app.state.health_checker
        result = await checker.check(use_cache=False)
        code = 503 if result.status == "unhealthy" else 200
        return JSONResponse(status_code=code, content=result.to_dict())

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=get_metrics().export_prometheus(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
