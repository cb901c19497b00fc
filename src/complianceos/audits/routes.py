"""FastAPI routes for audit runs, audit control review, findings and exports.

Tenant context always comes from the bearer token. Permission rules are
enforced in AuditService; these handlers only parse input and shape output.

Routes:
    POST   /audits/runs - create a DRAFT run with its audit controls
    GET    /audits/runs - list runs (filter by status)
    GET    /audits/runs/{run_id} - get a run
    PATCH  /audits/runs/{run_id} - update run metadata
    DELETE /audits/runs/{run_id} - delete an unlocked run
    POST   /audits/runs/{run_id}/transition - move along the status machine
    GET    /audits/runs/{run_id}/controls - audit controls of a run
    POST   /audits/controls/{audit_control_id}/review - reviewer assessment
    POST   /audits/controls/{audit_control_id}/approve - approver decision
    POST   /audits/runs/{run_id}/findings - raise a finding
    GET    /audits/findings - list findings
    GET    /audits/findings/{finding_id} - get a finding
    PATCH  /audits/findings/{finding_id} - update a finding
    GET    /audits/runs/{run_id}/activities - per-run activity log
    POST   /audits/runs/{run_id}/export - generate an audit package
    GET    /audits/analytics - run/control/finding breakdowns
"""

import uuid
from datetime import date, datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from complianceos.adapters.repositories import (
    AuditControlRepository,
    AuditRunRepository,
    ControlRepository,
    EvidenceRepository,
    TaskRepository,
)
from complianceos.api.dependencies import get_activity_service, get_correlation_id, get_event_publisher
from complianceos.audits.packager import AuditPackager, ExportFormat, ExportScope
from complianceos.audits.service import AuditService
from complianceos.common.auth import TenantContext, get_current_user
from complianceos.common.database import BaseRepository, get_db_session
from complianceos.core.interfaces import IEventPublisher
from complianceos.core.models import AuditFinding, AuditPackExport, AuditRunActivity, AuditType
from complianceos.core.services import ActivityService

router = APIRouter(prefix="/audits", tags=["Audits"])


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def get_audit_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    activity: Annotated[ActivityService, Depends(get_activity_service)],
    publisher: Annotated[IEventPublisher, Depends(get_event_publisher)],
) -> AuditService:
    return AuditService(
        run_repo=AuditRunRepository(session),
        audit_control_repo=AuditControlRepository(session),
        finding_repo=BaseRepository(session, AuditFinding),
        run_activity_repo=BaseRepository(session, AuditRunActivity),
        control_repo=ControlRepository(session),
        task_repo=TaskRepository(session),
        activity=activity,
        event_publisher=publisher,
    )


def get_audit_packager(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    activity: Annotated[ActivityService, Depends(get_activity_service)],
    publisher: Annotated[IEventPublisher, Depends(get_event_publisher)],
) -> AuditPackager:
    return AuditPackager(
        run_repo=AuditRunRepository(session),
        audit_control_repo=AuditControlRepository(session),
        finding_repo=BaseRepository(session, AuditFinding),
        export_repo=BaseRepository(session, AuditPackExport),
        run_activity_repo=BaseRepository(session, AuditRunActivity),
        control_repo=ControlRepository(session),
        evidence_repo=EvidenceRepository(session),
        activity=activity,
        event_publisher=publisher,
    )


Tenant = Annotated[TenantContext, Depends(get_current_user)]
Service = Annotated[AuditService, Depends(get_audit_service)]
CorrelationId = Annotated[str | None, Depends(get_correlation_id)]


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------


class ControlAssignment(BaseModel):
    reviewer_id: uuid.UUID | None = None
    approver_id: uuid.UUID | None = None


class AuditRunCreateRequest(BaseModel):
    """Request body for creating an audit run.

    Attributes:
        control_ids: Controls under test; one audit control is created per id.
        assignments: Optional reviewer/approver per control id.
    """

    name: str = Field(..., min_length=1, max_length=500)
    description: str | None = None
    framework_id: uuid.UUID | None = None
    audit_type: str = AuditType.INTERNAL
    start_date: date
    end_date: date
    control_ids: list[uuid.UUID] = Field(default_factory=list)
    assignments: dict[uuid.UUID, ControlAssignment] = Field(default_factory=dict)


class AuditRunUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=500)
    description: str | None = None
    framework_id: uuid.UUID | None = None
    audit_type: str | None = None
    start_date: date | None = None
    end_date: date | None = None


class AuditRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: str | None
    framework_id: uuid.UUID | None
    audit_type: str
    status: str
    start_date: date
    end_date: date
    created_by: uuid.UUID
    locked_at: datetime | None
    locked_by: uuid.UUID | None
    created_at: datetime
    updated_at: datetime


class AuditRunPage(BaseModel):
    items: list[AuditRunResponse]
    page: int
    limit: int
    total: int
    pages: int


class TransitionRequest(BaseModel):
    status: str


class AuditControlResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    audit_run_id: uuid.UUID
    control_id: uuid.UUID
    status: str
    reviewer_id: uuid.UUID | None
    approver_id: uuid.UUID | None
    notes: str | None
    submitted_at: datetime | None
    approved_at: datetime | None
    rejection_reason: str | None


class ReviewRequest(BaseModel):
    status: str
    notes: str | None = None
    evidence_ids: list[uuid.UUID] | None = None


class ApproveRequest(BaseModel):
    approve: bool
    rejection_reason: str | None = None


class FindingCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    severity: str
    description: str | None = None
    audit_control_id: uuid.UUID | None = None
    control_id: uuid.UUID | None = None
    owner_id: uuid.UUID | None = None
    due_date: datetime | None = None
    remediation_plan: str | None = None


class FindingUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=500)
    description: str | None = None
    severity: str | None = None
    status: str | None = None
    owner_id: uuid.UUID | None = None
    due_date: datetime | None = None
    remediation_plan: str | None = None
    resolution_evidence_id: uuid.UUID | None = None


class FindingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    audit_run_id: uuid.UUID
    audit_control_id: uuid.UUID | None
    control_id: uuid.UUID | None
    title: str
    description: str | None
    severity: str
    status: str
    owner_id: uuid.UUID | None
    due_date: datetime | None
    remediation_plan: str | None
    resolution_evidence_id: uuid.UUID | None
    resolved_at: datetime | None
    created_by: uuid.UUID
    created_at: datetime


class FindingPage(BaseModel):
    items: list[FindingResponse]
    page: int
    limit: int
    total: int
    pages: int


class RunActivityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    audit_run_id: uuid.UUID
    activity_type: str
    performed_by: uuid.UUID
    target_entity: str
    target_id: uuid.UUID | None
    old_value: dict[str, Any] | None
    new_value: dict[str, Any] | None
    created_at: datetime


class RunActivityPage(BaseModel):
    items: list[RunActivityResponse]
    page: int
    limit: int
    total: int
    pages: int


class ExportRequest(BaseModel):
    format: ExportFormat = ExportFormat.JSON
    scope: ExportScope = ExportScope.FULL


class ExportResponse(BaseModel):
    """A generated audit package.

    Attributes:
        checksum: SHA-256 of the canonical JSON package.
        immutable: True when the run was LOCKED at export time.
        content: The rendered package (JSON or CSV text).
    """

    model_config = ConfigDict(frozen=True)

    export_id: uuid.UUID
    file_name: str
    mime_type: str
    checksum: str
    immutable: bool
    content: str


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


@router.post("/runs", response_model=AuditRunResponse, status_code=status.HTTP_201_CREATED)
async def create_audit_run(
    body: AuditRunCreateRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.create_audit_run(
        tenant=tenant,
        name=body.name,
        start_date=body.start_date,
        end_date=body.end_date,
        control_ids=body.control_ids,
        description=body.description,
        framework_id=body.framework_id,
        audit_type=body.audit_type,
        assignments={cid: a.model_dump() for cid, a in body.assignments.items()},
        correlation_id=correlation_id,
    )


@router.get("/runs", response_model=AuditRunPage)
async def list_audit_runs(
    tenant: Tenant,
    service: Service,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
) -> Any:
    return await service.list_audit_runs(tenant, status=status_filter, page=page, page_size=page_size)


@router.get("/runs/{run_id}", response_model=AuditRunResponse)
async def get_audit_run(run_id: uuid.UUID, tenant: Tenant, service: Service) -> Any:
    return await service.get_audit_run(run_id, tenant)


@router.patch("/runs/{run_id}", response_model=AuditRunResponse)
async def update_audit_run(
    run_id: uuid.UUID,
    body: AuditRunUpdateRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.update_audit_run(
        run_id, tenant, body.model_dump(exclude_unset=True), correlation_id=correlation_id
    )


@router.delete("/runs/{run_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_audit_run(
    run_id: uuid.UUID,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> None:
    await service.delete_audit_run(run_id, tenant, correlation_id=correlation_id)


@router.post("/runs/{run_id}/transition", response_model=AuditRunResponse)
async def transition_audit_run(
    run_id: uuid.UUID,
    body: TransitionRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.transition_status(run_id, tenant, body.status, correlation_id=correlation_id)


@router.get("/runs/{run_id}/controls", response_model=list[AuditControlResponse])
async def list_audit_controls(run_id: uuid.UUID, tenant: Tenant, service: Service) -> Any:
    return await service.list_audit_controls(run_id, tenant)


# ---------------------------------------------------------------------------
# Control review
# ---------------------------------------------------------------------------


@router.post("/controls/{audit_control_id}/review", response_model=AuditControlResponse)
async def review_audit_control(
    audit_control_id: uuid.UUID,
    body: ReviewRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.review_control(
        audit_control_id,
        tenant,
        status=body.status,
        notes=body.notes,
        evidence_ids=body.evidence_ids,
        correlation_id=correlation_id,
    )


@router.post("/controls/{audit_control_id}/approve", response_model=AuditControlResponse)
async def approve_audit_control(
    audit_control_id: uuid.UUID,
    body: ApproveRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.approve_control(
        audit_control_id,
        tenant,
        approve=body.approve,
        rejection_reason=body.rejection_reason,
        correlation_id=correlation_id,
    )


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


@router.post("/runs/{run_id}/findings", response_model=FindingResponse, status_code=status.HTTP_201_CREATED)
async def create_finding(
    run_id: uuid.UUID,
    body: FindingCreateRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.create_finding(run_id, tenant, correlation_id=correlation_id, **body.model_dump())


@router.get("/findings", response_model=FindingPage)
async def list_findings(
    tenant: Tenant,
    service: Service,
    audit_run_id: uuid.UUID | None = None,
    severity: str | None = None,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    owner_id: uuid.UUID | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
) -> Any:
    return await service.list_findings(
        tenant,
        audit_run_id=audit_run_id,
        severity=severity,
        status=status_filter,
        owner_id=owner_id,
        page=page,
        page_size=page_size,
    )


@router.get("/findings/{finding_id}", response_model=FindingResponse)
async def get_finding(finding_id: uuid.UUID, tenant: Tenant, service: Service) -> Any:
    return await service.get_finding(finding_id, tenant)


@router.patch("/findings/{finding_id}", response_model=FindingResponse)
async def update_finding(
    finding_id: uuid.UUID,
    body: FindingUpdateRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.update_finding(
        finding_id, tenant, body.model_dump(exclude_unset=True), correlation_id=correlation_id
    )


# ---------------------------------------------------------------------------
# Activity, export, analytics
# ---------------------------------------------------------------------------


@router.get("/runs/{run_id}/activities", response_model=RunActivityPage)
async def list_run_activities(
    run_id: uuid.UUID,
    tenant: Tenant,
    service: Service,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=200)] = 50,
) -> Any:
    return await service.list_activities(run_id, tenant, page=page, page_size=page_size)


@router.post("/runs/{run_id}/export", response_model=ExportResponse)
async def export_audit_package(
    run_id: uuid.UUID,
    body: ExportRequest,
    tenant: Tenant,
    packager: Annotated[AuditPackager, Depends(get_audit_packager)],
    correlation_id: CorrelationId,
) -> Any:
    return await packager.export_package(
        run_id, tenant, export_format=body.format, scope=body.scope, correlation_id=correlation_id
    )


@router.get("/analytics")
async def audit_analytics(tenant: Tenant, service: Service) -> dict[str, Any]:
    return await service.audit_analytics(tenant)
