"""Bearer-token authentication and role checks.

Tokens are issued by the identity provider, not by this service. We only
verify them (PyJWT) and turn the claims into a TenantContext:

    sub            -> user_id
    org_id         -> tenant_id (the organization is the tenant)
    platform_role  -> PlatformRole (defaults to USER)
    org_role       -> OrgRole within the organization (defaults to USER)
    email          -> email

Routes depend on get_current_user; role gates are built with
require_platform_role(...) and require_audit_permission.
"""

import uuid
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated, Any

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from complianceos.common.config import AuthSettings
from complianceos.common.errors import AuthenticationError, AuthorizationError
from complianceos.common.observability import bind_request_context, get_logger

logger = get_logger(__name__)

_bearer = HTTPBearer(auto_error=False)


class PlatformRole(StrEnum):
    """Platform-wide role carried on every user."""

    SUPER_ADMIN = "SUPER_ADMIN"
    PLATFORM_ADMIN = "PLATFORM_ADMIN"
    PLATFORM_DEVELOPER = "PLATFORM_DEVELOPER"
    PLATFORM_SUPPORT = "PLATFORM_SUPPORT"
    USER = "USER"


class OrgRole(StrEnum):
    """Role of a user inside one organization."""

    ORG_ADMIN = "ORG_ADMIN"
    COMPLIANCE_OFFICER = "COMPLIANCE_OFFICER"
    AUDIT_MANAGER = "AUDIT_MANAGER"
    RISK_MANAGER = "RISK_MANAGER"
    CONTRIBUTOR = "CONTRIBUTOR"
    VIEWER = "VIEWER"
    USER = "USER"


ADMIN_ROLES: frozenset[PlatformRole] = frozenset({PlatformRole.SUPER_ADMIN, PlatformRole.PLATFORM_ADMIN})
AUDIT_ORG_ROLES: frozenset[OrgRole] = frozenset({OrgRole.AUDIT_MANAGER, OrgRole.COMPLIANCE_OFFICER})


@dataclass(frozen=True)
class TenantContext:
    """Identity of the caller for one request.

    Attributes:
        tenant_id: Organization UUID; scopes every query.
        user_id: Authenticated user UUID.
        platform_role: Platform-wide role.
        org_role: Role within the organization.
        email: User email, when present in the token.
    """

    tenant_id: uuid.UUID
    user_id: uuid.UUID
    platform_role: PlatformRole = PlatformRole.USER
    org_role: OrgRole = OrgRole.USER
    email: str | None = None

    @property
    def is_super_admin(self) -> bool:
        return self.platform_role == PlatformRole.SUPER_ADMIN

    @property
    def has_audit_permission(self) -> bool:
        """Super admins, audit managers and compliance officers may run audits."""
        return self.is_super_admin or self.org_role in AUDIT_ORG_ROLES


def decode_token(token: str, settings: AuthSettings) -> TenantContext:
    """Verify a bearer token and build the TenantContext from its claims.

    Args:
        token: Raw JWT.
        settings: Verification settings.

    Returns:
        The caller's TenantContext.

    Raises:
        AuthenticationError: If the token is expired, invalid, or missing claims.
    """
    options = {"require": ["exp", "sub"]}
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options=options,
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError("Invalid token") from exc

    try:
        return TenantContext(
            tenant_id=uuid.UUID(str(claims["org_id"])),
            user_id=uuid.UUID(str(claims["sub"])),
            platform_role=PlatformRole(claims.get("platform_role", PlatformRole.USER)),
            org_role=OrgRole(claims.get("org_role", OrgRole.USER)),
            email=claims.get("email"),
        )
    except (KeyError, ValueError) as exc:
        raise AuthenticationError("Token is missing required claims") from exc


async def get_current_user(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer)],
) -> TenantContext:
    """FastAPI dependency resolving the authenticated caller.

    Args:
        request: Current request; settings are read from app.state.settings.
        credentials: Parsed Authorization header, if any.

    Returns:
        The caller's TenantContext.

    Raises:
        AuthenticationError: If no bearer token was sent or it fails verification.
    """
    if credentials is None:
        raise AuthenticationError("Authentication required")

    settings = getattr(request.app.state, "settings", None)
    auth_settings = settings.auth if settings is not None else AuthSettings()
    tenant = decode_token(credentials.credentials, auth_settings)
    bind_request_context(tenant_id=str(tenant.tenant_id), user_id=str(tenant.user_id))
    return tenant


def require_platform_role(
    *roles: PlatformRole,
) -> Callable[[TenantContext], Coroutine[Any, Any, TenantContext]]:
    """Build a dependency that admits only the listed platform roles.

    Args:
        *roles: Allowed platform roles.

    Returns:
        An async dependency returning the TenantContext when allowed.
    """
    allowed = frozenset(roles)

    async def _check(tenant: Annotated[TenantContext, Depends(get_current_user)]) -> TenantContext:
        if tenant.platform_role not in allowed:
            logger.info("Platform role rejected", platform_role=tenant.platform_role, allowed=sorted(allowed))
            raise AuthorizationError("Insufficient platform role")
        return tenant

    return _check


async def require_audit_permission(
    tenant: Annotated[TenantContext, Depends(get_current_user)],
) -> TenantContext:
    """Dependency admitting only callers with audit permission."""
    if not tenant.has_audit_permission:
        raise AuthorizationError("Insufficient permissions")
    return tenant
