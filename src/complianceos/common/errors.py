"""Error taxonomy shared by every complianceOS module.

Services raise these exceptions; routes never catch them. The handlers
registered by register_error_handlers() translate them to JSON responses:

    {"error": "not_found", "message": "...", "details": {...}}

Anything that is not a PlatformError is logged and returned as a generic 500.
"""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from complianceos.common.observability import get_logger

logger = get_logger(__name__)


class PlatformError(Exception):
    """Base class for all expected, client-visible errors.

    Args:
        message: Human-readable message returned to the client.
        status_code: HTTP status code for the response.
        error_code: Stable machine-readable code.
        details: Optional structured details.
    """

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}


class ValidationError(PlatformError):
    """A request field is missing, malformed, or violates a business rule."""

    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message, details={"field": field} if field else None)
        self.field = field


class AuthenticationError(PlatformError):
    """No credentials, or the bearer token could not be verified."""

    status_code = 401
    error_code = "unauthorized"


class AuthorizationError(PlatformError):
    """The caller is authenticated but lacks the required role."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(PlatformError):
    """A tenant-scoped resource does not exist."""

    status_code = 404
    error_code = "not_found"

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(
            f"{resource} {resource_id} not found",
            details={"resource": resource, "resource_id": resource_id},
        )
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(PlatformError):
    """The request conflicts with current state (duplicates, lost races)."""

    status_code = 409
    error_code = "conflict"


class ExternalServiceError(PlatformError):
    """A downstream HTTP service (AI provider, IdP, SCIM server) failed."""

    status_code = 502
    error_code = "external_service_error"

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}", details={"service": service})
        self.service = service


async def _platform_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, PlatformError)
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error_code=exc.error_code, message=exc.message)
    else:
        logger.info("Request rejected", path=request.url.path, error_code=exc.error_code, status=exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error_code, "message": exc.message, "details": exc.details},
    )


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", path=request.url.path, error_type=type(exc).__name__)
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "message": "Internal server error", "details": {}},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install the PlatformError and catch-all handlers on an application.

    Args:
        app: The FastAPI application.
    """
    app.add_exception_handler(PlatformError, _platform_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
