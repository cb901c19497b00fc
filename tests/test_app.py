"""Tests for the application factory, error handlers and bearer-token auth."""

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import jwt
import pytest
from fastapi import FastAPI

from complianceos.common.app import CORRELATION_HEADER, HealthCheck, create_app
from complianceos.common.auth import OrgRole, PlatformRole, decode_token
from complianceos.common.config import AuthSettings, PlatformSettings
from complianceos.common.errors import (
    AuthenticationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

SECRET = "test-secret-with-enough-length-for-hs256"


def _token(claims: dict[str, Any], secret: str = SECRET) -> str:
    base = {"exp": datetime.now(UTC) + timedelta(minutes=5)}
    return jwt.encode({**base, **claims}, secret, algorithm="HS256")


def _client(app: FastAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app, raise_app_exceptions=False), base_url="http://test")


async def _healthy() -> bool:
    return True


async def _broken() -> bool:
    raise ConnectionError("db down")


def _app(health_checks: list[HealthCheck] | None = None) -> FastAPI:
    settings = PlatformSettings(log_json=False, log_level="WARNING")
    app = create_app("complianceos", "0.1.0", settings, health_checks=health_checks)

    @app.get("/boom/{kind}")
    async def boom(kind: str) -> dict[str, str]:
        errors: dict[str, Exception] = {
            "validation": ValidationError("bad name", field="name"),
            "missing": NotFoundError(resource="Policy", resource_id="p-1"),
            "conflict": ConflictError("already locked"),
            "upstream": ExternalServiceError(service="okta", message="status 500"),
            "bug": RuntimeError("unexpected"),
        }
        raise errors[kind]

    return app


class TestHealthRoutes:
    @pytest.mark.asyncio()
    async def test_live(self) -> None:
        async with _client(_app()) as client:
            response = await client.get("/live")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "complianceos", "version": "0.1.0"}

    @pytest.mark.asyncio()
    async def test_ready_all_healthy(self) -> None:
        async with _client(_app([HealthCheck("database", _healthy)])) as client:
            response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "checks": {"database": True}}

    @pytest.mark.asyncio()
    async def test_ready_degraded_when_a_check_raises(self) -> None:
        app = _app([HealthCheck("database", _healthy), HealthCheck("activity_db", _broken)])
        async with _client(app) as client:
            response = await client.get("/ready")
        assert response.status_code == 503
        assert response.json()["checks"] == {"database": True, "activity_db": False}


class TestCorrelation:
    @pytest.mark.asyncio()
    async def test_echoes_incoming_id(self) -> None:
        async with _client(_app()) as client:
            response = await client.get("/live", headers={CORRELATION_HEADER: "abc-123"})
        assert response.headers[CORRELATION_HEADER] == "abc-123"

    @pytest.mark.asyncio()
    async def test_generates_id(self) -> None:
        async with _client(_app()) as client:
            response = await client.get("/live")
        uuid.UUID(response.headers[CORRELATION_HEADER])


class TestErrorHandlers:
    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        ("kind", "status", "code"),
        [
            ("validation", 400, "validation_error"),
            ("missing", 404, "not_found"),
            ("conflict", 409, "conflict"),
            ("upstream", 502, "external_service_error"),
        ],
    )
    async def test_platform_errors(self, kind: str, status: int, code: str) -> None:
        async with _client(_app()) as client:
            response = await client.get(f"/boom/{kind}")
        assert response.status_code == status
        assert response.json()["error"] == code

    @pytest.mark.asyncio()
    async def test_error_body_shape(self) -> None:
        async with _client(_app()) as client:
            body = (await client.get("/boom/validation")).json()
        assert body == {"error": "validation_error", "message": "bad name", "details": {"field": "name"}}

    @pytest.mark.asyncio()
    async def test_unexpected_error_is_hidden(self) -> None:
        async with _client(_app()) as client:
            response = await client.get("/boom/bug")
        assert response.status_code == 500
        assert response.json() == {"error": "internal_error", "message": "Internal server error", "details": {}}

    def test_external_error_message(self) -> None:
        exc = ExternalServiceError(service="ai_provider", message="Request timed out")
        assert exc.message == "ai_provider: Request timed out"
        assert exc.details == {"service": "ai_provider"}


class TestDecodeToken:
    settings = AuthSettings(jwt_secret=SECRET)

    def test_builds_tenant_context(self) -> None:
        org_id, user_id = uuid.uuid4(), uuid.uuid4()
        tenant = decode_token(
            _token(
                {
                    "sub": str(user_id),
                    "org_id": str(org_id),
                    "org_role": "AUDIT_MANAGER",
                    "email": "auditor@example.com",
                }
            ),
            self.settings,
        )
        assert tenant.tenant_id == org_id
        assert tenant.user_id == user_id
        assert tenant.platform_role == PlatformRole.USER
        assert tenant.org_role == OrgRole.AUDIT_MANAGER
        assert tenant.has_audit_permission is True

    def test_expired(self) -> None:
        token = jwt.encode(
            {"sub": str(uuid.uuid4()), "org_id": str(uuid.uuid4()), "exp": datetime.now(UTC) - timedelta(minutes=1)},
            SECRET,
            algorithm="HS256",
        )
        with pytest.raises(AuthenticationError, match="expired"):
            decode_token(token, self.settings)

    def test_wrong_secret(self) -> None:
        claims = {"sub": str(uuid.uuid4()), "org_id": str(uuid.uuid4())}
        token = _token(claims, secret="another-secret-entirely-different")
        with pytest.raises(AuthenticationError, match="Invalid"):
            decode_token(token, self.settings)

    @pytest.mark.parametrize(
        "claims",
        [
            {"sub": str(uuid.uuid4())},
            {"sub": "not-a-uuid", "org_id": str(uuid.uuid4())},
            {"sub": str(uuid.uuid4()), "org_id": str(uuid.uuid4()), "platform_role": "GOD"},
        ],
    )
    def test_missing_or_bad_claims(self, claims: dict[str, Any]) -> None:
        with pytest.raises(AuthenticationError):
            decode_token(_token(claims), self.settings)

    def test_super_admin_has_audit_permission(self) -> None:
        tenant = decode_token(
            _token({"sub": str(uuid.uuid4()), "org_id": str(uuid.uuid4()), "platform_role": "SUPER_ADMIN"}),
            self.settings,
        )
        assert tenant.is_super_admin is True
        assert tenant.has_audit_permission is True
