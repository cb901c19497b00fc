"""FastAPI routes for identity integrations.

Routes:
    POST   /identity/providers - register an SSO provider (admin)
    GET    /identity/providers - list providers
    GET    /identity/providers/{id} - get a provider
    PATCH  /identity/providers/{id} - update a provider (admin)
    DELETE /identity/providers/{id} - delete a provider (admin)
    GET    /identity/providers/{id}/metadata - service provider metadata

    POST   /identity/scim - register a SCIM endpoint (admin)
    GET    /identity/scim - list SCIM endpoints
    GET    /identity/scim/{id} - get a SCIM endpoint
    DELETE /identity/scim/{id} - delete a SCIM endpoint (admin)
    POST   /identity/scim/{id}/test - test SCIM connectivity (admin)
    POST   /identity/scim/{id}/sync - pull users from SCIM (admin)

    POST   /identity/connectors/test - test directory credentials (admin)
    POST   /identity/connectors/sync - pull users from a directory (admin)
    GET    /identity/users - list directory users
"""

import uuid
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from complianceos.adapters.identity_connectors import (
    EntraConnector,
    GoogleWorkspaceConnector,
    OktaConnector,
    SCIMClient,
)
from complianceos.adapters.repositories import DirectoryUserRepository
from complianceos.api.dependencies import (
    get_activity_service,
    get_correlation_id,
    get_event_publisher,
    get_settings,
)
from complianceos.common.auth import ADMIN_ROLES, TenantContext, get_current_user, require_platform_role
from complianceos.common.database import BaseRepository, get_db_session
from complianceos.common.errors import ValidationError
from complianceos.core.interfaces import IDirectoryConnector, IEventPublisher
from complianceos.core.models import IdentityProvider, SCIMEndpoint, SSOProtocol
from complianceos.core.services import ActivityService
from complianceos.enterprise.encryption import EncryptionService
from complianceos.enterprise.routes import get_encryption_service
from complianceos.identity.service import IdentityService
from complianceos.settings import Settings

router = APIRouter(prefix="/identity", tags=["Identity"])


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def get_identity_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    encryption: Annotated[EncryptionService, Depends(get_encryption_service)],
    settings: Annotated[Settings, Depends(get_settings)],
    activity: Annotated[ActivityService, Depends(get_activity_service)],
    publisher: Annotated[IEventPublisher, Depends(get_event_publisher)],
) -> IdentityService:
    def scim_client_factory(base_url: str, bearer_token: str) -> SCIMClient:
        return SCIMClient(
            base_url=base_url,
            bearer_token=bearer_token,
            page_size=settings.scim_page_size,
            timeout_seconds=settings.identity_http_timeout_seconds,
        )

    return IdentityService(
        provider_repo=BaseRepository(session, IdentityProvider),
        scim_repo=BaseRepository(session, SCIMEndpoint),
        directory_repo=DirectoryUserRepository(session),
        encryption=encryption,
        scim_client_factory=scim_client_factory,
        public_base_url=settings.public_base_url,
        activity=activity,
        event_publisher=publisher,
    )


Tenant = Annotated[TenantContext, Depends(get_current_user)]
Admin = Annotated[TenantContext, Depends(require_platform_role(*ADMIN_ROLES))]
Service = Annotated[IdentityService, Depends(get_identity_service)]
AppSettings = Annotated[Settings, Depends(get_settings)]
CorrelationId = Annotated[str | None, Depends(get_correlation_id)]


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------


class ProviderCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    protocol: str = SSOProtocol.SAML
    entity_id: str = Field(min_length=1, max_length=1024)
    sso_url: str = Field(min_length=1, max_length=2048)
    certificate: str | None = None
    attribute_mapping: dict[str, str] = Field(default_factory=dict)


class ProviderUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    protocol: str | None = None
    entity_id: str | None = None
    sso_url: str | None = None
    certificate: str | None = None
    attribute_mapping: dict[str, str] | None = None
    is_active: bool | None = None


class ProviderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    protocol: str
    entity_id: str
    sso_url: str
    attribute_mapping: dict[str, str]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class SCIMEndpointCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    base_url: str = Field(min_length=1, max_length=2048)
    bearer_token: str = Field(min_length=1)
    sync_frequency_minutes: int = Field(default=60, ge=5, le=10080)


class SCIMEndpointResponse(BaseModel):
    """SCIM endpoint state. The sealed bearer token is never returned."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    base_url: str
    sync_frequency_minutes: int
    sync_status: str
    last_sync_at: datetime | None
    last_sync_result: dict[str, Any]
    is_active: bool
    created_at: datetime


class ConnectorRequest(BaseModel):
    """Directory connector credentials. They are used for the call and not stored."""

    source: str = Field(description="microsoft_entra, google_workspace or okta")
    credentials: dict[str, str]


class DirectoryUserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    email: str
    display_name: str | None
    external_id: str | None
    source: str
    is_active: bool


class ConnectionTestResponse(BaseModel):
    connected: bool


class SyncResponse(BaseModel):
    created: int
    updated: int
    errors: list[str]
    status: str
    source: str | None = None


# ---------------------------------------------------------------------------
# Connector construction
# ---------------------------------------------------------------------------

_CONNECTOR_CREDENTIALS: dict[str, tuple[type, tuple[str, ...]]] = {
    EntraConnector.source: (EntraConnector, ("directory_tenant_id", "client_id", "client_secret")),
    GoogleWorkspaceConnector.source: (GoogleWorkspaceConnector, ("access_token", "domain")),
    OktaConnector.source: (OktaConnector, ("org_url", "api_token")),
}


def build_connector(request: ConnectorRequest, settings: Settings) -> IDirectoryConnector:
    """Instantiate the directory connector named by `request.source`.

    Raises:
        ValidationError: On an unknown source or missing credential fields.
    """
    entry = _CONNECTOR_CREDENTIALS.get(request.source)
    if entry is None:
        raise ValidationError(message=f"Unknown directory source '{request.source}'", field="source")
    connector_cls, required = entry
    missing = [name for name in required if not request.credentials.get(name)]
    if missing:
        raise ValidationError(message=f"Missing credentials: {', '.join(missing)}", field="credentials")
    kwargs = {name: request.credentials[name] for name in required}
    return connector_cls(timeout_seconds=settings.identity_http_timeout_seconds, **kwargs)


# ---------------------------------------------------------------------------
# SSO providers
# ---------------------------------------------------------------------------


@router.post("/providers", response_model=ProviderResponse, status_code=status.HTTP_201_CREATED)
async def create_provider(
    request: ProviderCreateRequest, tenant: Admin, service: Service, correlation_id: CorrelationId
) -> Any:
    return await service.create_provider(
        tenant=tenant,
        name=request.name,
        protocol=request.protocol,
        entity_id=request.entity_id,
        sso_url=request.sso_url,
        certificate=request.certificate,
        attribute_mapping=request.attribute_mapping,
        correlation_id=correlation_id,
    )


@router.get("/providers", response_model=list[ProviderResponse])
async def list_providers(tenant: Tenant, service: Service) -> Any:
    return await service.list_providers(tenant)


@router.get("/providers/{provider_id}", response_model=ProviderResponse)
async def get_provider(provider_id: uuid.UUID, tenant: Tenant, service: Service) -> Any:
    return await service.get_provider(provider_id, tenant)


@router.patch("/providers/{provider_id}", response_model=ProviderResponse)
async def update_provider(
    provider_id: uuid.UUID,
    request: ProviderUpdateRequest,
    tenant: Admin,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.update_provider(
        provider_id, tenant, request.model_dump(exclude_unset=True), correlation_id
    )


@router.delete("/providers/{provider_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_provider(
    provider_id: uuid.UUID, tenant: Admin, service: Service, correlation_id: CorrelationId
) -> None:
    await service.delete_provider(provider_id, tenant, correlation_id)


@router.get("/providers/{provider_id}/metadata")
async def provider_metadata(provider_id: uuid.UUID, tenant: Tenant, service: Service) -> dict[str, Any]:
    return await service.metadata(provider_id, tenant)


# ---------------------------------------------------------------------------
# SCIM endpoints
# ---------------------------------------------------------------------------


@router.post("/scim", response_model=SCIMEndpointResponse, status_code=status.HTTP_201_CREATED)
async def create_scim_endpoint(
    request: SCIMEndpointCreateRequest, tenant: Admin, service: Service, correlation_id: CorrelationId
) -> Any:
    return await service.create_scim_endpoint(
        tenant=tenant,
        name=request.name,
        base_url=request.base_url,
        bearer_token=request.bearer_token,
        sync_frequency_minutes=request.sync_frequency_minutes,
        correlation_id=correlation_id,
    )


@router.get("/scim", response_model=list[SCIMEndpointResponse])
async def list_scim_endpoints(tenant: Tenant, service: Service) -> Any:
    return await service.list_scim_endpoints(tenant)


@router.get("/scim/{endpoint_id}", response_model=SCIMEndpointResponse)
async def get_scim_endpoint(endpoint_id: uuid.UUID, tenant: Tenant, service: Service) -> Any:
    return await service.get_scim_endpoint(endpoint_id, tenant)


@router.delete("/scim/{endpoint_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_scim_endpoint(
    endpoint_id: uuid.UUID, tenant: Admin, service: Service, correlation_id: CorrelationId
) -> None:
    await service.delete_scim_endpoint(endpoint_id, tenant, correlation_id)


@router.post("/scim/{endpoint_id}/test", response_model=ConnectionTestResponse)
async def test_scim_endpoint(endpoint_id: uuid.UUID, tenant: Admin, service: Service) -> Any:
    return {"connected": await service.test_scim_endpoint(endpoint_id, tenant)}


@router.post("/scim/{endpoint_id}/sync", response_model=SyncResponse)
async def sync_scim_endpoint(
    endpoint_id: uuid.UUID, tenant: Admin, service: Service, correlation_id: CorrelationId
) -> Any:
    return await service.sync_scim_endpoint(endpoint_id, tenant, correlation_id)


# ---------------------------------------------------------------------------
# Directory connectors and users
# ---------------------------------------------------------------------------


@router.post("/connectors/test", response_model=ConnectionTestResponse)
async def test_connector(
    request: ConnectorRequest, tenant: Admin, service: Service, settings: AppSettings
) -> Any:
    return {"connected": await service.test_connector(build_connector(request, settings))}


@router.post("/connectors/sync", response_model=SyncResponse)
async def sync_connector(
    request: ConnectorRequest,
    tenant: Admin,
    service: Service,
    settings: AppSettings,
    correlation_id: CorrelationId,
) -> Any:
    return await service.sync_directory(tenant, build_connector(request, settings), correlation_id)


@router.get("/users")
async def list_directory_users(
    tenant: Tenant,
    service: Service,
    source: str | None = Query(default=None),
    active_only: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
) -> dict[str, Any]:
    result = await service.list_directory_users(tenant, source, active_only, page, page_size)
    result["items"] = [DirectoryUserResponse.model_validate(u).model_dump(mode="json") for u in result["items"]]
    return result
