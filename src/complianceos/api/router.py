"""API router for the core complianceOS resources.

Core endpoints are registered here and included in main.py under the
/api/v1 prefix next to the module routers. Routes are thin: all business
logic lives in the service layer.

Endpoints:
- POST/GET    /frameworks - create / list frameworks
- GET         /frameworks/{id} - get framework
- POST        /frameworks/{id}/controls - create control
- GET         /controls - list controls (framework/status/criticality)
- GET         /controls/{id} - get control
- PATCH       /controls/{id}/status - change control status
- GET         /catalog/frameworks - list framework templates
- GET         /catalog/frameworks/{code} - template detail
- POST        /catalog/frameworks/{code}/import - import template as framework
- POST/GET    /evidence - create / list evidence
- GET         /evidence/expiring - evidence expiring within N days
- GET         /evidence/{id} - get evidence
- POST/GET    /evidence/{id}/versions - add / list versions
- POST        /evidence/{id}/links - link a control
- POST        /evidence/{id}/review - review decision
- POST/GET    /policies - create / list policies
- GET         /policies/search - search policies
- GET         /policies/analytics - policy analytics
- GET/PATCH   /policies/{id} - get / update policy
- POST        /policies/{id}/publish - publish
- POST        /policies/{id}/archive - archive
- POST/GET    /policies/{id}/versions - new version / list versions
- POST        /policies/{id}/versions/{v}/approve - approve a version
- POST        /policies/{id}/acknowledgments - assign acknowledgments
- POST        /acknowledgments/{id}/acknowledge - acknowledge as the assigned user
- POST/GET    /risks - create / list risks
- GET         /risks/search - search risks
- GET         /risks/analytics - risk analytics
- GET         /risks/treatment-effectiveness - treatment effectiveness
- GET/PATCH   /risks/{id} - get / update risk
- POST/GET    /risks/{id}/assessments - add / list assessments
- POST        /risk-assessments/{id}/approve - approve assessment
- POST        /risks/{id}/treatments - add treatment
- POST        /risk-treatments/{id}/complete - complete treatment
- POST        /risks/{id}/controls - map control
- POST        /risks/{id}/policies - map policy
- POST/GET    /tasks - create / list tasks
- PATCH       /tasks/{id}/status - change task status
- POST        /tasks/automation/run - run the task automation rules
- GET         /activity - query the activity trail
"""

import uuid
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from complianceos.adapters.repositories import (
    AcknowledgmentRepository,
    ControlRepository,
    EvidenceRepository,
    FrameworkRepository,
    PolicyRepository,
    RiskRepository,
    TaskRepository,
)
from complianceos.api.dependencies import (
    get_activity_service,
    get_correlation_id,
    get_event_publisher,
    get_settings,
)
from complianceos.api.schemas import (
    AcknowledgeRequest,
    AcknowledgmentAssignRequest,
    AcknowledgmentResponse,
    ActivityEntryResponse,
    AssessmentCreateRequest,
    AssessmentResponse,
    ControlCreateRequest,
    ControlMappingRequest,
    ControlMappingResponse,
    ControlResponse,
    ControlStatusUpdateRequest,
    EvidenceCreateRequest,
    EvidenceLinkRequest,
    EvidenceLinkResponse,
    EvidenceResponse,
    EvidenceReviewRequest,
    EvidenceVersionCreateRequest,
    EvidenceVersionResponse,
    FrameworkCreateRequest,
    FrameworkResponse,
    Page,
    PolicyAnalyticsResponse,
    PolicyCreateRequest,
    PolicyMappingRequest,
    PolicyMappingResponse,
    PolicyResponse,
    PolicyUpdateRequest,
    PolicyVersionCreateRequest,
    PolicyVersionResponse,
    RiskCreateRequest,
    RiskResponse,
    RiskUpdateRequest,
    TaskCreateRequest,
    TaskResponse,
    TaskStatusUpdateRequest,
    TemplateDetailResponse,
    TemplateSummaryResponse,
    TreatmentCompleteRequest,
    TreatmentCreateRequest,
    TreatmentResponse,
)
from complianceos.common.auth import TenantContext, get_current_user
from complianceos.common.database import BaseRepository, get_db_session
from complianceos.common.observability import get_logger
from complianceos.core.catalog import FrameworkCatalogService
from complianceos.core.interfaces import IEventPublisher
from complianceos.core.models import RiskAssessment, RiskControlMapping, RiskPolicyMapping, RiskTreatment
from complianceos.core.risk_service import RiskService
from complianceos.core.services import (
    ActivityService,
    EvidenceService,
    FrameworkService,
    PolicyService,
    TaskService,
)
from complianceos.core.task_automation import TaskAutomationEngine
from complianceos.settings import Settings

logger = get_logger(__name__)

router = APIRouter(tags=["compliance"])


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------

Session = Annotated[AsyncSession, Depends(get_db_session)]
Activity = Annotated[ActivityService, Depends(get_activity_service)]
Publisher = Annotated[IEventPublisher, Depends(get_event_publisher)]


def get_framework_service(session: Session, activity: Activity, publisher: Publisher) -> FrameworkService:
    return FrameworkService(
        framework_repo=FrameworkRepository(session),
        control_repo=ControlRepository(session),
        task_repo=TaskRepository(session),
        activity=activity,
        event_publisher=publisher,
    )


def get_catalog_service(
    session: Session,
    activity: Activity,
    publisher: Publisher,
    settings: Annotated[Settings, Depends(get_settings)],
) -> FrameworkCatalogService:
    """Catalog service reading templates from the configured YAML directory."""
    return FrameworkCatalogService(
        framework_repo=FrameworkRepository(session),
        control_repo=ControlRepository(session),
        activity=activity,
        event_publisher=publisher,
        template_dir=settings.framework_template_dir,
    )


def get_evidence_service(session: Session, activity: Activity, publisher: Publisher) -> EvidenceService:
    return EvidenceService(
        evidence_repo=EvidenceRepository(session),
        control_repo=ControlRepository(session),
        activity=activity,
        event_publisher=publisher,
    )


def get_policy_service(session: Session, activity: Activity, publisher: Publisher) -> PolicyService:
    return PolicyService(
        policy_repo=PolicyRepository(session),
        ack_repo=AcknowledgmentRepository(session),
        activity=activity,
        event_publisher=publisher,
    )


def get_risk_service(session: Session, activity: Activity, publisher: Publisher) -> RiskService:
    return RiskService(
        risk_repo=RiskRepository(session),
        assessment_repo=BaseRepository(session, RiskAssessment),
        treatment_repo=BaseRepository(session, RiskTreatment),
        control_mapping_repo=BaseRepository(session, RiskControlMapping),
        policy_mapping_repo=BaseRepository(session, RiskPolicyMapping),
        control_repo=ControlRepository(session),
        policy_repo=PolicyRepository(session),
        activity=activity,
        event_publisher=publisher,
    )


def get_task_service(session: Session, activity: Activity, publisher: Publisher) -> TaskService:
    return TaskService(task_repo=TaskRepository(session), activity=activity, event_publisher=publisher)


def get_task_automation(session: Session, activity: Activity, publisher: Publisher) -> TaskAutomationEngine:
    return TaskAutomationEngine(
        task_repo=TaskRepository(session),
        evidence_repo=EvidenceRepository(session),
        control_repo=ControlRepository(session),
        activity=activity,
        event_publisher=publisher,
    )


Tenant = Annotated[TenantContext, Depends(get_current_user)]
CorrelationId = Annotated[str | None, Depends(get_correlation_id)]
Frameworks = Annotated[FrameworkService, Depends(get_framework_service)]
Catalog = Annotated[FrameworkCatalogService, Depends(get_catalog_service)]
Evidences = Annotated[EvidenceService, Depends(get_evidence_service)]
Policies = Annotated[PolicyService, Depends(get_policy_service)]
Risks = Annotated[RiskService, Depends(get_risk_service)]
Tasks = Annotated[TaskService, Depends(get_task_service)]
Automation = Annotated[TaskAutomationEngine, Depends(get_task_automation)]


def _page(result: dict[str, Any], schema: type[BaseModel]) -> dict[str, Any]:
    """Serialize the ORM rows of a to_page() payload through `schema`."""
    return {**result, "items": [schema.model_validate(row) for row in result["items"]]}


# ---------------------------------------------------------------------------
# Framework and control endpoints
# ---------------------------------------------------------------------------


@router.post("/frameworks", response_model=FrameworkResponse, status_code=status.HTTP_201_CREATED)
async def create_framework(
    request: FrameworkCreateRequest, tenant: Tenant, service: Frameworks, correlation_id: CorrelationId
) -> Any:
    logger.info("POST /frameworks", tenant_id=str(tenant.tenant_id), framework_name=request.name)
    return await service.create_framework(
        tenant=tenant,
        name=request.name,
        framework_type=request.framework_type,
        version=request.version,
        description=request.description,
        correlation_id=correlation_id,
    )


@router.get("/frameworks", response_model=Page)
async def list_frameworks(
    tenant: Tenant,
    service: Frameworks,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> Any:
    return _page(await service.list_frameworks(tenant, page, page_size), FrameworkResponse)


@router.get("/frameworks/{framework_id}", response_model=FrameworkResponse)
async def get_framework(framework_id: uuid.UUID, tenant: Tenant, service: Frameworks) -> Any:
    return await service.get_framework(framework_id, tenant)


@router.post(
    "/frameworks/{framework_id}/controls", response_model=ControlResponse, status_code=status.HTTP_201_CREATED
)
async def create_control(
    framework_id: uuid.UUID,
    request: ControlCreateRequest,
    tenant: Tenant,
    service: Frameworks,
    correlation_id: CorrelationId,
) -> Any:
    """Create a control inside a framework.

    Returns 404 when the framework is unknown and 409 when the framework
    already has a control with the same code.
    """
    return await service.create_control(
        tenant=tenant,
        framework_id=framework_id,
        code=request.code,
        name=request.name,
        description=request.description,
        category=request.category,
        criticality=request.criticality,
        owner_id=request.owner_id,
        review_frequency_days=request.review_frequency_days,
        correlation_id=correlation_id,
    )


@router.get("/controls", response_model=Page)
async def list_controls(
    tenant: Tenant,
    service: Frameworks,
    framework_id: uuid.UUID | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    criticality: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
) -> Any:
    result = await service.list_controls(tenant, framework_id, status_filter, criticality, page, page_size)
    return _page(result, ControlResponse)


@router.get("/controls/{control_id}", response_model=ControlResponse)
async def get_control(control_id: uuid.UUID, tenant: Tenant, service: Frameworks) -> Any:
    return await service.get_control(control_id, tenant)


@router.patch("/controls/{control_id}/status", response_model=ControlResponse)
async def update_control_status(
    control_id: uuid.UUID,
    request: ControlStatusUpdateRequest,
    tenant: Tenant,
    service: Frameworks,
    correlation_id: CorrelationId,
) -> Any:
    """Change a control's status.

    Moving a control to MET completes its open evidence collection and gap
    remediation tasks.

    Args:
        control_id: The control UUID.
        request: New status.
        tenant: Tenant context from auth middleware.
        service: Injected FrameworkService.
        correlation_id: Request correlation ID.

    Returns:
        The updated control.
    """
    return await service.update_control_status(control_id, request.status, tenant, correlation_id)


# ---------------------------------------------------------------------------
# Framework catalog endpoints
# ---------------------------------------------------------------------------


@router.get("/catalog/frameworks", response_model=list[TemplateSummaryResponse])
async def list_templates(tenant: Tenant, service: Catalog) -> Any:
    return service.list_templates()


@router.get("/catalog/frameworks/{code}", response_model=TemplateDetailResponse)
async def get_template(code: str, tenant: Tenant, service: Catalog) -> Any:
    return service.get_template(code).to_detail_dict()


@router.post(
    "/catalog/frameworks/{code}/import", response_model=FrameworkResponse, status_code=status.HTTP_201_CREATED
)
async def import_template(code: str, tenant: Tenant, service: Catalog, correlation_id: CorrelationId) -> Any:
    """Create a framework and all of its controls from a catalog template."""
    logger.info("POST /catalog/frameworks/import", tenant_id=str(tenant.tenant_id), template_code=code)
    return await service.import_template(tenant, code, correlation_id)


# ---------------------------------------------------------------------------
# Evidence endpoints
# ---------------------------------------------------------------------------


@router.post("/evidence", response_model=EvidenceResponse, status_code=status.HTTP_201_CREATED)
async def create_evidence(
    request: EvidenceCreateRequest, tenant: Tenant, service: Evidences, correlation_id: CorrelationId
) -> Any:
    """Register an evidence item.

    Creates version 1 and links any `control_ids` given. Every linked
    control must exist for the tenant.

    Args:
        request: Evidence metadata.
        tenant: Tenant context from auth middleware.
        service: Injected EvidenceService.
        correlation_id: Request correlation ID.

    Returns:
        The created evidence in DRAFT status.
    """
    return await service.create_evidence(
        tenant=tenant,
        title=request.title,
        evidence_type=request.evidence_type,
        description=request.description,
        file_name=request.file_name,
        file_url=request.file_url,
        content_hash=request.content_hash,
        expiry_date=request.expiry_date,
        control_ids=request.control_ids,
        correlation_id=correlation_id,
    )


@router.get("/evidence", response_model=Page)
async def list_evidence(
    tenant: Tenant,
    service: Evidences,
    status_filter: str | None = Query(default=None, alias="status"),
    evidence_type: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> Any:
    result = await service.list_evidence(tenant, status_filter, evidence_type, page, page_size)
    return _page(result, EvidenceResponse)


@router.get("/evidence/expiring", response_model=list[EvidenceResponse])
async def list_expiring_evidence(
    tenant: Tenant, service: Evidences, days: int = Query(default=30, ge=1, le=365)
) -> Any:
    return await service.list_expiring(tenant, days)


@router.get("/evidence/{evidence_id}", response_model=EvidenceResponse)
async def get_evidence(evidence_id: uuid.UUID, tenant: Tenant, service: Evidences) -> Any:
    return await service.get_evidence(evidence_id, tenant)


@router.post("/evidence/{evidence_id}/versions", response_model=EvidenceResponse)
async def add_evidence_version(
    evidence_id: uuid.UUID,
    request: EvidenceVersionCreateRequest,
    tenant: Tenant,
    service: Evidences,
    correlation_id: CorrelationId,
) -> Any:
    return await service.add_version(
        evidence_id,
        tenant,
        file_name=request.file_name,
        file_url=request.file_url,
        content_hash=request.content_hash,
        change_notes=request.change_notes,
        correlation_id=correlation_id,
    )


@router.get("/evidence/{evidence_id}/versions", response_model=list[EvidenceVersionResponse])
async def list_evidence_versions(evidence_id: uuid.UUID, tenant: Tenant, service: Evidences) -> Any:
    return await service.list_versions(evidence_id, tenant)


@router.post(
    "/evidence/{evidence_id}/links", response_model=EvidenceLinkResponse, status_code=status.HTTP_201_CREATED
)
async def link_evidence_control(
    evidence_id: uuid.UUID,
    request: EvidenceLinkRequest,
    tenant: Tenant,
    service: Evidences,
    correlation_id: CorrelationId,
) -> Any:
    return await service.link_control(evidence_id, request.control_id, tenant, correlation_id)


@router.post("/evidence/{evidence_id}/review", response_model=EvidenceResponse)
async def review_evidence(
    evidence_id: uuid.UUID,
    request: EvidenceReviewRequest,
    tenant: Tenant,
    service: Evidences,
    correlation_id: CorrelationId,
) -> Any:
    return await service.review_evidence(evidence_id, request.decision, tenant, request.notes, correlation_id)


# ---------------------------------------------------------------------------
# Policy endpoints
# ---------------------------------------------------------------------------


@router.post("/policies", response_model=PolicyResponse, status_code=status.HTTP_201_CREATED)
async def create_policy(
    request: PolicyCreateRequest, tenant: Tenant, service: Policies, correlation_id: CorrelationId
) -> Any:
    """Create a policy in DRAFT at version 1.0.0."""
    logger.info("POST /policies", tenant_id=str(tenant.tenant_id), title=request.title)
    return await service.create_policy(
        tenant=tenant,
        title=request.title,
        content=request.content,
        description=request.description,
        category=request.category,
        owner_id=request.owner_id,
        effective_date=request.effective_date,
        review_date=request.review_date,
        requires_acknowledgment=request.requires_acknowledgment,
        correlation_id=correlation_id,
    )


@router.get("/policies", response_model=Page)
async def list_policies(
    tenant: Tenant,
    service: Policies,
    status_filter: str | None = Query(default=None, alias="status"),
    category: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> Any:
    return _page(await service.list_policies(tenant, status_filter, category, page, page_size), PolicyResponse)


@router.get("/policies/search", response_model=list[PolicyResponse])
async def search_policies(tenant: Tenant, service: Policies, q: str = Query(min_length=1)) -> Any:
    return await service.search_policies(tenant, q)


@router.get("/policies/analytics", response_model=PolicyAnalyticsResponse)
async def policy_analytics(tenant: Tenant, service: Policies) -> Any:
    return await service.policy_analytics(tenant)


@router.get("/policies/{policy_id}", response_model=PolicyResponse)
async def get_policy(policy_id: uuid.UUID, tenant: Tenant, service: Policies) -> Any:
    return await service.get_policy(policy_id, tenant)


@router.patch("/policies/{policy_id}", response_model=PolicyResponse)
async def update_policy(
    policy_id: uuid.UUID,
    request: PolicyUpdateRequest,
    tenant: Tenant,
    service: Policies,
    correlation_id: CorrelationId,
) -> Any:
    return await service.update_policy(policy_id, tenant, request.model_dump(exclude_unset=True), correlation_id)


@router.post("/policies/{policy_id}/publish", response_model=PolicyResponse)
async def publish_policy(
    policy_id: uuid.UUID, tenant: Tenant, service: Policies, correlation_id: CorrelationId
) -> Any:
    return await service.publish_policy(policy_id, tenant, correlation_id)


@router.post("/policies/{policy_id}/archive", response_model=PolicyResponse)
async def archive_policy(
    policy_id: uuid.UUID, tenant: Tenant, service: Policies, correlation_id: CorrelationId
) -> Any:
    return await service.archive_policy(policy_id, tenant, correlation_id)


@router.post(
    "/policies/{policy_id}/versions", response_model=PolicyVersionResponse, status_code=status.HTTP_201_CREATED
)
async def create_policy_version(
    policy_id: uuid.UUID,
    request: PolicyVersionCreateRequest,
    tenant: Tenant,
    service: Policies,
    correlation_id: CorrelationId,
) -> Any:
    """Record new policy content under the next minor version.

    The policy moves back to DRAFT and must be published again.
    """
    return await service.create_version(policy_id, tenant, request.content, request.change_summary, correlation_id)


@router.get("/policies/{policy_id}/versions", response_model=list[PolicyVersionResponse])
async def list_policy_versions(policy_id: uuid.UUID, tenant: Tenant, service: Policies) -> Any:
    return await service.list_versions(policy_id, tenant)


@router.post("/policies/{policy_id}/versions/{version}/approve", response_model=PolicyVersionResponse)
async def approve_policy_version(
    policy_id: uuid.UUID,
    version: str,
    tenant: Tenant,
    service: Policies,
    correlation_id: CorrelationId,
) -> Any:
    return await service.approve_version(policy_id, version, tenant, correlation_id)


@router.post(
    "/policies/{policy_id}/acknowledgments",
    response_model=list[AcknowledgmentResponse],
    status_code=status.HTTP_201_CREATED,
)
async def assign_acknowledgments(
    policy_id: uuid.UUID,
    request: AcknowledgmentAssignRequest,
    tenant: Tenant,
    service: Policies,
    correlation_id: CorrelationId,
) -> Any:
    """Assign the policy to users for acknowledgment.

    Users who already have a PENDING or ACKNOWLEDGED row are skipped, so the
    response only lists newly created assignments.
    """
    return await service.assign_acknowledgments(policy_id, request.user_ids, tenant, request.due_date, correlation_id)


@router.post("/acknowledgments/{acknowledgment_id}/acknowledge", response_model=AcknowledgmentResponse)
async def acknowledge_policy(
    acknowledgment_id: uuid.UUID,
    request: AcknowledgeRequest,
    http_request: Request,
    tenant: Tenant,
    service: Policies,
    correlation_id: CorrelationId,
) -> Any:
    return await service.acknowledge(
        acknowledgment_id,
        tenant,
        method=request.method,
        ip_address=http_request.client.host if http_request.client else None,
        user_agent=http_request.headers.get("user-agent"),
        correlation_id=correlation_id,
    )


# ---------------------------------------------------------------------------
# Risk endpoints
# ---------------------------------------------------------------------------


@router.post("/risks", response_model=RiskResponse, status_code=status.HTTP_201_CREATED)
async def create_risk(
    request: RiskCreateRequest, tenant: Tenant, service: Risks, correlation_id: CorrelationId
) -> Any:
    """Register a risk. Score and severity are derived from likelihood and impact."""
    return await service.create_risk(
        tenant=tenant,
        title=request.title,
        category=request.category,
        likelihood=request.likelihood,
        impact=request.impact,
        description=request.description,
        subcategory=request.subcategory,
        owner_id=request.owner_id,
        business_unit=request.business_unit,
        correlation_id=correlation_id,
    )


@router.get("/risks", response_model=Page)
async def list_risks(
    tenant: Tenant,
    service: Risks,
    category: str | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    severity: str | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> Any:
    return _page(await service.list_risks(tenant, category, status_filter, severity, page, page_size), RiskResponse)


@router.get("/risks/search", response_model=list[RiskResponse])
async def search_risks(tenant: Tenant, service: Risks, q: str = Query(min_length=1)) -> Any:
    return await service.search_risks(tenant, q)


@router.get("/risks/analytics")
async def risk_analytics(tenant: Tenant, service: Risks) -> dict[str, Any]:
    return await service.risk_analytics(tenant)


@router.get("/risks/treatment-effectiveness")
async def treatment_effectiveness(tenant: Tenant, service: Risks) -> dict[str, Any]:
    return await service.treatment_effectiveness(tenant)


@router.get("/risks/{risk_id}", response_model=RiskResponse)
async def get_risk(risk_id: uuid.UUID, tenant: Tenant, service: Risks) -> Any:
    return await service.get_risk(risk_id, tenant)


@router.patch("/risks/{risk_id}", response_model=RiskResponse)
async def update_risk(
    risk_id: uuid.UUID,
    request: RiskUpdateRequest,
    tenant: Tenant,
    service: Risks,
    correlation_id: CorrelationId,
) -> Any:
    return await service.update_risk(risk_id, tenant, request.model_dump(exclude_unset=True), correlation_id)


@router.post(
    "/risks/{risk_id}/assessments", response_model=AssessmentResponse, status_code=status.HTTP_201_CREATED
)
async def add_risk_assessment(
    risk_id: uuid.UUID,
    request: AssessmentCreateRequest,
    tenant: Tenant,
    service: Risks,
    correlation_id: CorrelationId,
) -> Any:
    return await service.add_assessment(
        risk_id,
        tenant,
        likelihood=request.likelihood,
        impact=request.impact,
        methodology=request.methodology,
        notes=request.notes,
        correlation_id=correlation_id,
    )


@router.get("/risks/{risk_id}/assessments", response_model=list[AssessmentResponse])
async def list_risk_assessments(risk_id: uuid.UUID, tenant: Tenant, service: Risks) -> Any:
    return await service.list_assessments(risk_id, tenant)


@router.post("/risk-assessments/{assessment_id}/approve", response_model=AssessmentResponse)
async def approve_risk_assessment(
    assessment_id: uuid.UUID, tenant: Tenant, service: Risks, correlation_id: CorrelationId
) -> Any:
    return await service.approve_assessment(assessment_id, tenant, correlation_id)


@router.post("/risks/{risk_id}/treatments", response_model=TreatmentResponse, status_code=status.HTTP_201_CREATED)
async def add_risk_treatment(
    risk_id: uuid.UUID,
    request: TreatmentCreateRequest,
    tenant: Tenant,
    service: Risks,
    correlation_id: CorrelationId,
) -> Any:
    return await service.add_treatment(
        risk_id,
        tenant,
        title=request.title,
        strategy=request.strategy,
        description=request.description,
        owner_id=request.owner_id,
        estimated_cost=request.estimated_cost,
        target_date=request.target_date,
        correlation_id=correlation_id,
    )


@router.post("/risk-treatments/{treatment_id}/complete", response_model=TreatmentResponse)
async def complete_risk_treatment(
    treatment_id: uuid.UUID,
    request: TreatmentCompleteRequest,
    tenant: Tenant,
    service: Risks,
    correlation_id: CorrelationId,
) -> Any:
    return await service.complete_treatment(
        treatment_id, tenant, request.actual_cost, request.effectiveness, correlation_id
    )


@router.post(
    "/risks/{risk_id}/controls", response_model=ControlMappingResponse, status_code=status.HTTP_201_CREATED
)
async def map_risk_control(
    risk_id: uuid.UUID,
    request: ControlMappingRequest,
    tenant: Tenant,
    service: Risks,
    correlation_id: CorrelationId,
) -> Any:
    return await service.map_control(
        risk_id,
        request.control_id,
        tenant,
        mapping_type=request.mapping_type,
        effectiveness=request.effectiveness,
        notes=request.notes,
        correlation_id=correlation_id,
    )


@router.post(
    "/risks/{risk_id}/policies", response_model=PolicyMappingResponse, status_code=status.HTTP_201_CREATED
)
async def map_risk_policy(
    risk_id: uuid.UUID,
    request: PolicyMappingRequest,
    tenant: Tenant,
    service: Risks,
    correlation_id: CorrelationId,
) -> Any:
    return await service.map_policy(risk_id, request.policy_id, tenant, request.notes, correlation_id)


# ---------------------------------------------------------------------------
# Task endpoints
# ---------------------------------------------------------------------------


@router.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    request: TaskCreateRequest, tenant: Tenant, service: Tasks, correlation_id: CorrelationId
) -> Any:
    return await service.create_task(
        tenant=tenant,
        title=request.title,
        task_type=request.task_type,
        description=request.description,
        priority=request.priority,
        due_date=request.due_date,
        assignee_id=request.assignee_id,
        control_id=request.control_id,
        evidence_id=request.evidence_id,
        correlation_id=correlation_id,
    )


@router.get("/tasks", response_model=Page)
async def list_tasks(
    tenant: Tenant,
    service: Tasks,
    status_filter: str | None = Query(default=None, alias="status"),
    task_type: str | None = Query(default=None),
    assignee_id: uuid.UUID | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> Any:
    return _page(await service.list_tasks(tenant, status_filter, task_type, assignee_id, page, page_size), TaskResponse)


@router.patch("/tasks/{task_id}/status", response_model=TaskResponse)
async def update_task_status(
    task_id: uuid.UUID,
    request: TaskStatusUpdateRequest,
    tenant: Tenant,
    service: Tasks,
    correlation_id: CorrelationId,
) -> Any:
    return await service.update_task_status(task_id, request.status, tenant, correlation_id)


@router.post("/tasks/automation/run")
async def run_task_automation(tenant: Tenant, engine: Automation) -> dict[str, int]:
    """Run every automation rule for the tenant.

    Returns:
        Tasks created per task type, plus "total".
    """
    logger.info("POST /tasks/automation/run", tenant_id=str(tenant.tenant_id))
    return await engine.generate_all_tasks(tenant)


# ---------------------------------------------------------------------------
# Activity trail endpoint
# ---------------------------------------------------------------------------


@router.get("/activity", response_model=Page)
async def query_activity(
    tenant: Tenant,
    activity: Activity,
    event_type: str | None = Query(default=None, description="Event type prefix, e.g. compliance.audit_run"),
    resource_type: str | None = Query(default=None),
    resource_id: uuid.UUID | None = Query(default=None),
    actor_id: uuid.UUID | None = Query(default=None),
    start_time: datetime | None = Query(default=None),
    end_time: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
) -> Any:
    """Query the append-only activity trail for the caller's organization.

    Args:
        tenant: Tenant context from auth middleware.
        activity: Injected ActivityService.
        event_type: Event type prefix filter.
        resource_type: Exact resource type filter.
        resource_id: Specific resource filter.
        actor_id: Specific actor filter.
        start_time: Inclusive lower timestamp bound.
        end_time: Inclusive upper timestamp bound.
        page: Page number.
        page_size: Entries per page.

    Returns:
        Paginated activity entries, newest first.
    """
    result = await activity.query_trail(
        tenant,
        event_type_filter=event_type,
        resource_type_filter=resource_type,
        resource_id_filter=resource_id,
        actor_id_filter=actor_id,
        start_time=start_time,
        end_time=end_time,
        page=page,
        page_size=page_size,
    )
    return _page(result, ActivityEntryResponse)
