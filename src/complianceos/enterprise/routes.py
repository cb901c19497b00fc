"""FastAPI routes for enterprise encryption and data residency.

Routes:
    POST   /enterprise/encryption - initialize (admin)
    PATCH  /enterprise/encryption - update config (admin)
    GET    /enterprise/encryption/status - key status
    GET    /enterprise/encryption/keys - key versions
    POST   /enterprise/encryption/rotate - rotate the data key (admin)
    POST   /enterprise/encryption/keys/{version}/revoke - revoke a retired key (admin)
    GET    /enterprise/encryption/compliance - compliance validation
    POST   /enterprise/encryption/encrypt - seal a value
    POST   /enterprise/encryption/decrypt - open a token

    GET    /enterprise/residency/regions - region catalog
    PUT    /enterprise/residency - configure (admin)
    GET    /enterprise/residency - residency status
    GET    /enterprise/residency/compliance - compliance validation
    GET    /enterprise/residency/certificate - residency certificate
    POST   /enterprise/residency/transfers - request a transfer
    POST   /enterprise/residency/transfers/{id}/approve - approve (admin)
    POST   /enterprise/residency/transfers/{id}/reject - reject (admin)
    POST   /enterprise/residency/transfers/{id}/complete - complete (admin)
"""

import uuid
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from complianceos.adapters.repositories import EncryptionKeyRepository
from complianceos.api.dependencies import (
    get_activity_service,
    get_correlation_id,
    get_event_publisher,
    get_key_provider,
)
from complianceos.common.auth import ADMIN_ROLES, TenantContext, get_current_user, require_platform_role
from complianceos.common.database import BaseRepository, get_db_session
from complianceos.core.interfaces import IEventPublisher, IKeyProvider
from complianceos.core.models import DataResidencyConfig, DataTransfer, EncryptionConfig, KeyManagementType
from complianceos.core.services import ActivityService
from complianceos.enterprise.encryption import EncryptionService
from complianceos.enterprise.residency import DataResidencyService

router = APIRouter(prefix="/enterprise", tags=["Enterprise"])


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def get_encryption_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    key_provider: Annotated[IKeyProvider, Depends(get_key_provider)],
    activity: Annotated[ActivityService, Depends(get_activity_service)],
    publisher: Annotated[IEventPublisher, Depends(get_event_publisher)],
) -> EncryptionService:
    return EncryptionService(
        config_repo=BaseRepository(session, EncryptionConfig),
        key_repo=EncryptionKeyRepository(session),
        key_provider=key_provider,
        activity=activity,
        event_publisher=publisher,
    )


def get_residency_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    activity: Annotated[ActivityService, Depends(get_activity_service)],
    publisher: Annotated[IEventPublisher, Depends(get_event_publisher)],
) -> DataResidencyService:
    return DataResidencyService(
        config_repo=BaseRepository(session, DataResidencyConfig),
        transfer_repo=BaseRepository(session, DataTransfer),
        activity=activity,
        event_publisher=publisher,
    )


Tenant = Annotated[TenantContext, Depends(get_current_user)]
Admin = Annotated[TenantContext, Depends(require_platform_role(*ADMIN_ROLES))]
Encryption = Annotated[EncryptionService, Depends(get_encryption_service)]
Residency = Annotated[DataResidencyService, Depends(get_residency_service)]
CorrelationId = Annotated[str | None, Depends(get_correlation_id)]


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------


class EncryptionInitRequest(BaseModel):
    key_management_type: str = KeyManagementType.SOFTWARE
    rotation_interval_days: int = Field(default=90, ge=1, le=3650)
    auto_rotation: bool = False
    notification_days: int = Field(default=7, ge=0, le=365)
    client_side_encryption: bool = False
    compliance_requirements: list[str] = Field(default_factory=list)


class EncryptionUpdateRequest(BaseModel):
    key_management_type: str | None = None
    rotation_interval_days: int | None = Field(default=None, ge=1, le=3650)
    auto_rotation: bool | None = None
    notification_days: int | None = Field(default=None, ge=0, le=365)
    client_side_encryption: bool | None = None
    compliance_requirements: list[str] | None = None


class EncryptionConfigResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    key_management_type: str
    algorithm: str
    rotation_interval_days: int
    auto_rotation: bool
    notification_days: int
    client_side_encryption: bool
    compliance_requirements: list[str]
    created_at: datetime
    updated_at: datetime


class EncryptionKeyResponse(BaseModel):
    """Key version metadata. Wrapped key material is never returned."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    version: int
    status: str
    provider_key_id: str
    activated_at: datetime
    retired_at: datetime | None


class EncryptionStatusResponse(BaseModel):
    has_active_key: bool
    key_count: int
    active_version: int | None = None
    last_rotation: datetime | None
    next_rotation: datetime | None
    rotation_needed: bool
    encryption_enabled: bool


class ComplianceResponse(BaseModel):
    is_compliant: bool
    violations: list[str]
    recommendations: list[str]
    compliance_score: int


class EncryptRequest(BaseModel):
    plaintext: str
    associated_data: str | None = None


class EncryptResponse(BaseModel):
    token: str


class DecryptRequest(BaseModel):
    token: str = Field(..., min_length=1)
    associated_data: str | None = None


class DecryptResponse(BaseModel):
    plaintext: str


class ResidencyConfigRequest(BaseModel):
    primary_region: str
    backup_regions: list[str] = Field(default_factory=list)
    residency_requirements: dict[str, Any] = Field(default_factory=dict)
    compliance_certifications: list[str] = Field(default_factory=list)


class ResidencyConfigResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    primary_region: str
    backup_regions: list[str]
    residency_requirements: dict[str, Any]
    compliance_certifications: list[str]
    last_validated_at: datetime | None
    updated_at: datetime


class TransferRequest(BaseModel):
    source_region: str
    destination_region: str
    data_type: str = Field(..., min_length=1, max_length=100)
    transfer_reason: str = Field(..., min_length=1)
    legal_basis: str = Field(..., min_length=1, max_length=255)


class TransferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    source_region: str
    destination_region: str
    data_type: str
    transfer_reason: str
    legal_basis: str
    requested_by: uuid.UUID
    authorized_by: uuid.UUID | None
    status: str
    transferred_at: datetime | None
    created_at: datetime


class ResidencyStatusResponse(BaseModel):
    status: str
    config: ResidencyConfigResponse | None
    data_locations: list[dict[str, Any]]
    transfer_history: list[TransferResponse]


def _aad(value: str | None) -> bytes | None:
    return value.encode("utf-8") if value is not None else None


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------


@router.post("/encryption", response_model=EncryptionConfigResponse, status_code=status.HTTP_201_CREATED)
async def initialize_encryption(
    body: EncryptionInitRequest,
    tenant: Admin,
    service: Encryption,
    correlation_id: CorrelationId,
) -> Any:
    return await service.initialize(tenant, body.model_dump(), correlation_id)


@router.patch("/encryption", response_model=EncryptionConfigResponse)
async def update_encryption(
    body: EncryptionUpdateRequest,
    tenant: Admin,
    service: Encryption,
    correlation_id: CorrelationId,
) -> Any:
    return await service.update_config(tenant, body.model_dump(exclude_unset=True), correlation_id)


@router.get("/encryption/status", response_model=EncryptionStatusResponse)
async def encryption_status(tenant: Tenant, service: Encryption) -> Any:
    return await service.status(tenant)


@router.get("/encryption/keys", response_model=list[EncryptionKeyResponse])
async def list_keys(tenant: Tenant, service: Encryption) -> Any:
    return await service.list_keys(tenant)


@router.post("/encryption/rotate", response_model=EncryptionKeyResponse)
async def rotate_key(tenant: Admin, service: Encryption, correlation_id: CorrelationId) -> Any:
    return await service.rotate(tenant, correlation_id)


@router.post("/encryption/keys/{version}/revoke", response_model=EncryptionKeyResponse)
async def revoke_key(version: int, tenant: Admin, service: Encryption, correlation_id: CorrelationId) -> Any:
    return await service.revoke(tenant, version, correlation_id)


@router.get("/encryption/compliance", response_model=ComplianceResponse)
async def encryption_compliance(tenant: Tenant, service: Encryption) -> Any:
    return await service.validate_compliance(tenant)


@router.post("/encryption/encrypt", response_model=EncryptResponse)
async def encrypt_value(body: EncryptRequest, tenant: Tenant, service: Encryption) -> Any:
    return {"token": await service.encrypt(tenant, body.plaintext, _aad(body.associated_data))}


@router.post("/encryption/decrypt", response_model=DecryptResponse)
async def decrypt_value(body: DecryptRequest, tenant: Tenant, service: Encryption) -> Any:
    return {"plaintext": await service.decrypt(tenant, body.token, _aad(body.associated_data))}


# ---------------------------------------------------------------------------
# Data residency
# ---------------------------------------------------------------------------


@router.get("/residency/regions")
async def list_regions(tenant: Tenant) -> list[dict[str, Any]]:
    return DataResidencyService.list_regions()


@router.put("/residency", response_model=ResidencyConfigResponse)
async def configure_residency(
    body: ResidencyConfigRequest,
    tenant: Admin,
    service: Residency,
    correlation_id: CorrelationId,
) -> Any:
    return await service.configure(
        tenant,
        primary_region=body.primary_region,
        backup_regions=body.backup_regions,
        residency_requirements=body.residency_requirements,
        compliance_certifications=body.compliance_certifications,
        correlation_id=correlation_id,
    )


@router.get("/residency", response_model=ResidencyStatusResponse)
async def residency_status(tenant: Tenant, service: Residency) -> Any:
    return await service.get_status(tenant)


@router.get("/residency/compliance", response_model=ComplianceResponse)
async def residency_compliance(tenant: Tenant, service: Residency) -> Any:
    return await service.validate_compliance(tenant)


@router.get("/residency/certificate")
async def residency_certificate(tenant: Tenant, service: Residency) -> dict[str, Any]:
    return await service.certificate(tenant)


@router.post("/residency/transfers", response_model=TransferResponse, status_code=status.HTTP_201_CREATED)
async def request_transfer(
    body: TransferRequest,
    tenant: Tenant,
    service: Residency,
    correlation_id: CorrelationId,
) -> Any:
    return await service.request_transfer(
        tenant,
        source_region=body.source_region,
        destination_region=body.destination_region,
        data_type=body.data_type,
        transfer_reason=body.transfer_reason,
        legal_basis=body.legal_basis,
        correlation_id=correlation_id,
    )


@router.post("/residency/transfers/{transfer_id}/approve", response_model=TransferResponse)
async def approve_transfer(
    transfer_id: uuid.UUID,
    tenant: Admin,
    service: Residency,
    correlation_id: CorrelationId,
) -> Any:
    return await service.approve_transfer(transfer_id, tenant, correlation_id)


@router.post("/residency/transfers/{transfer_id}/reject", response_model=TransferResponse)
async def reject_transfer(
    transfer_id: uuid.UUID,
    tenant: Admin,
    service: Residency,
    correlation_id: CorrelationId,
) -> Any:
    return await service.reject_transfer(transfer_id, tenant, correlation_id)


@router.post("/residency/transfers/{transfer_id}/complete", response_model=TransferResponse)
async def complete_transfer(
    transfer_id: uuid.UUID,
    tenant: Admin,
    service: Residency,
    correlation_id: CorrelationId,
) -> Any:
    return await service.complete_transfer(transfer_id, tenant, correlation_id)
