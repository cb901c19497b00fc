"""Application factory shared by complianceOS services."""

import uuid
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from complianceos.common.config import PlatformSettings
from complianceos.common.errors import register_error_handlers
from complianceos.common.observability import (
    bind_request_context,
    clear_request_context,
    configure_logging,
    get_logger,
)

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


@dataclass(frozen=True)
class HealthCheck:
    """A named readiness check returning True when the dependency is usable."""

    name: str
    check_fn: Callable[[], Awaitable[bool]]


def create_app(
    service_name: str,
    version: str,
    settings: PlatformSettings,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[None]] | None = None,
    health_checks: list[HealthCheck] | None = None,
) -> FastAPI:
    """Build a FastAPI app with logging, error handlers and health routes.

    Args:
        service_name: Service identifier used in logs and the OpenAPI title.
        version: Service version string.
        settings: Loaded settings; stored on app.state.settings.
        lifespan: Optional lifespan context manager.
        health_checks: Checks evaluated by GET /ready.

    Returns:
        The configured FastAPI application.
    """
    configure_logging(settings.log_level, settings.log_json)

    app = FastAPI(title=service_name, version=version, lifespan=lifespan)
    app.state.settings = settings
    register_error_handlers(app)
    checks = health_checks or []

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        clear_request_context()
        bind_request_context(correlation_id=correlation_id)
        request.state.correlation_id = correlation_id
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @app.get("/live", tags=["health"])
    async def live() -> dict[str, str]:
        return {"status": "ok", "service": service_name, "version": version}

    @app.get("/ready", tags=["health"])
    async def ready() -> JSONResponse:
        results: dict[str, bool] = {}
        for check in checks:
            try:
                results[check.name] = await check.check_fn()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Health check failed", check=check.name, error=str(exc))
                results[check.name] = False
        healthy = all(results.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "ok" if healthy else "degraded", "checks": results},
        )

    logger.info("Application created", service=service_name, version=version, environment=settings.environment)
    return app
