"""Pydantic request and response schemas for the core complianceOS API.

Module routers (audits, questionnaires, ai, governance, enterprise, identity)
keep their schemas beside their routes. This module covers the core
resources mounted by api/router.py.

Resources:
- Framework / Control - frameworks, controls and the template catalog
- Evidence - evidence items, versions, control links and review
- Policy - policies, versions and acknowledgments
- Risk - risks, assessments, treatments and mappings
- Task - manual tasks and automation runs
- ActivityEntry - activity trail query
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from complianceos.core.models import (
    AssessmentMethodology,
    ControlMappingType,
    Criticality,
    EvidenceType,
    FrameworkType,
    TaskPriority,
    TaskType,
)


class Page(BaseModel):
    """Pagination envelope returned by every list endpoint."""

    items: list[Any] = Field(description="Items on this page")
    page: int = Field(description="1-based page number")
    limit: int = Field(description="Page size")
    total: int = Field(description="Total matching items")
    pages: int = Field(description="Total number of pages")


# ---------------------------------------------------------------------------
# Framework and Control schemas
# ---------------------------------------------------------------------------


class FrameworkCreateRequest(BaseModel):
    """Request body for creating a framework."""

    name: str = Field(min_length=1, max_length=255, description="Framework name")
    framework_type: str = Field(default=FrameworkType.CUSTOM, description="SOC2 | ISO27001 | PCI_DSS | ... | CUSTOM")
    version: str | None = Field(default=None, max_length=50, description="Framework edition, e.g. 2017")
    description: str | None = Field(default=None)


class FrameworkResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    name: str
    framework_type: str
    version: str | None
    description: str | None
    template_code: str | None = Field(description="Catalog template this framework was imported from")
    is_active: bool
    created_at: datetime
    updated_at: datetime


class ControlCreateRequest(BaseModel):
    """Request body for creating a control within a framework."""

    code: str = Field(min_length=1, max_length=100, description="Control code, unique within the framework")
    name: str = Field(min_length=1, max_length=500)
    description: str | None = None
    category: str | None = Field(default=None, max_length=255)
    criticality: str = Field(default=Criticality.MEDIUM, description="LOW | MEDIUM | HIGH | CRITICAL")
    owner_id: uuid.UUID | None = None
    review_frequency_days: int = Field(default=365, ge=1, le=3650)


class ControlStatusUpdateRequest(BaseModel):
    status: str = Field(description="NOT_STARTED | IN_PROGRESS | MET | PARTIAL | GAP | NOT_APPLICABLE")


class ControlResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    framework_id: uuid.UUID
    code: str
    name: str
    description: str | None
    category: str | None
    criticality: str
    status: str
    owner_id: uuid.UUID | None
    next_review_date: datetime | None
    review_frequency_days: int
    created_at: datetime
    updated_at: datetime


class TemplateSummaryResponse(BaseModel):
    code: str
    name: str
    framework_type: str
    version: str
    issuing_body: str
    description: str
    control_count: int


class TemplateDetailResponse(TemplateSummaryResponse):
    controls: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# Evidence schemas
# ---------------------------------------------------------------------------


class EvidenceCreateRequest(BaseModel):
    """Request body for registering an evidence item.

    The file itself lives in external object storage; only its location and
    SHA-256 digest are recorded here.
    """

    title: str = Field(min_length=1, max_length=500)
    evidence_type: str = Field(default=EvidenceType.DOCUMENT, description="DOCUMENT | SCREENSHOT | LOG | ...")
    description: str | None = None
    file_name: str | None = Field(default=None, max_length=500)
    file_url: str | None = Field(default=None, max_length=2048)
    content_hash: str | None = Field(default=None, pattern=r"^[0-9a-f]{64}$", description="SHA-256 hex digest")
    expiry_date: datetime | None = None
    control_ids: list[uuid.UUID] = Field(default_factory=list, description="Controls to link on creation")


class EvidenceVersionCreateRequest(BaseModel):
    file_name: str | None = Field(default=None, max_length=500)
    file_url: str | None = Field(default=None, max_length=2048)
    content_hash: str | None = Field(default=None, pattern=r"^[0-9a-f]{64}$")
    change_notes: str | None = None


class EvidenceReviewRequest(BaseModel):
    decision: str = Field(description="APPROVED | REJECTED | UNDER_REVIEW")
    notes: str | None = None


class EvidenceLinkRequest(BaseModel):
    control_id: uuid.UUID


class EvidenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    description: str | None
    evidence_type: str
    status: str
    file_name: str | None
    file_url: str | None
    content_hash: str | None
    current_version: int
    expiry_date: datetime | None
    uploaded_by: uuid.UUID
    reviewed_by: uuid.UUID | None
    reviewed_at: datetime | None
    review_notes: str | None
    created_at: datetime
    updated_at: datetime


class EvidenceVersionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    evidence_id: uuid.UUID
    version: int
    file_name: str | None
    file_url: str | None
    content_hash: str | None
    change_notes: str | None
    created_by: uuid.UUID
    created_at: datetime


class EvidenceLinkResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    evidence_id: uuid.UUID
    control_id: uuid.UUID
    linked_by: uuid.UUID
    created_at: datetime


# ---------------------------------------------------------------------------
# Policy schemas
# ---------------------------------------------------------------------------


class PolicyCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    content: str = Field(default="", description="Policy body (markdown)")
    description: str | None = None
    category: str | None = Field(default=None, max_length=255)
    owner_id: uuid.UUID | None = None
    effective_date: datetime | None = None
    review_date: datetime | None = None
    requires_acknowledgment: bool = True


class PolicyUpdateRequest(BaseModel):
    """Partial update. Content changes go through a new version instead."""

    title: str | None = Field(default=None, min_length=1, max_length=500)
    description: str | None = None
    category: str | None = None
    owner_id: uuid.UUID | None = None
    effective_date: datetime | None = None
    review_date: datetime | None = None
    requires_acknowledgment: bool | None = None


class PolicyVersionCreateRequest(BaseModel):
    content: str = Field(min_length=1)
    change_summary: str | None = None


class AcknowledgmentAssignRequest(BaseModel):
    user_ids: list[uuid.UUID] = Field(min_length=1)
    due_date: datetime | None = None


class AcknowledgeRequest(BaseModel):
    method: str = Field(default="WEB", max_length=50)


class PolicyResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    description: str | None
    content: str
    category: str | None
    status: str
    version: str
    effective_date: datetime | None
    review_date: datetime | None
    owner_id: uuid.UUID | None
    created_by: uuid.UUID
    published_by: uuid.UUID | None
    published_at: datetime | None
    requires_acknowledgment: bool
    created_at: datetime
    updated_at: datetime


class PolicyVersionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    policy_id: uuid.UUID
    version: str
    content: str
    change_summary: str | None
    created_by: uuid.UUID
    approved_by: uuid.UUID | None
    approved_at: datetime | None
    created_at: datetime


class AcknowledgmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    policy_id: uuid.UUID
    user_id: uuid.UUID
    status: str
    due_date: datetime | None
    acknowledged_at: datetime | None
    method: str | None


class PolicyAnalyticsResponse(BaseModel):
    total_policies: int
    by_status: dict[str, int]
    total_acknowledgments: int
    acknowledged: int
    acknowledgment_rate: float = Field(description="Percent, rounded to 2 decimal places")
    overdue_acknowledgments: int


# ---------------------------------------------------------------------------
# Risk schemas
# ---------------------------------------------------------------------------


class RiskCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    category: str = Field(description="STRATEGIC | OPERATIONAL | ... | CUSTOM")
    likelihood: int = Field(ge=1, le=6, description="VERY_UNLIKELY=1 .. CERTAIN=6")
    impact: int = Field(ge=1, le=6, description="VERY_LOW=1 .. CRITICAL=6")
    description: str | None = None
    subcategory: str | None = Field(default=None, max_length=255)
    owner_id: uuid.UUID | None = None
    business_unit: str | None = Field(default=None, max_length=255)


class RiskUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=500)
    description: str | None = None
    category: str | None = None
    subcategory: str | None = None
    likelihood: int | None = Field(default=None, ge=1, le=6)
    impact: int | None = Field(default=None, ge=1, le=6)
    status: str | None = None
    owner_id: uuid.UUID | None = None
    business_unit: str | None = None
    residual_likelihood: int | None = Field(default=None, ge=1, le=6)
    residual_impact: int | None = Field(default=None, ge=1, le=6)


class RiskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    description: str | None
    category: str
    subcategory: str | None
    likelihood: int
    impact: int
    risk_score: int = Field(description="likelihood x impact")
    severity: str
    status: str
    owner_id: uuid.UUID | None
    business_unit: str | None
    residual_likelihood: int | None
    residual_impact: int | None
    residual_score: int | None
    identified_by: uuid.UUID
    created_at: datetime
    updated_at: datetime


class AssessmentCreateRequest(BaseModel):
    likelihood: int = Field(ge=1, le=6)
    impact: int = Field(ge=1, le=6)
    methodology: str = AssessmentMethodology.QUALITATIVE
    notes: str | None = None


class AssessmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    risk_id: uuid.UUID
    methodology: str
    likelihood: int
    impact: int
    risk_score: int
    notes: str | None
    assessed_by: uuid.UUID
    approved_by: uuid.UUID | None
    approved_at: datetime | None
    created_at: datetime


class TreatmentCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    strategy: str = Field(description="AVOID | TRANSFER | MITIGATE | ACCEPT | EXPLOIT | COMBINATION")
    description: str | None = None
    owner_id: uuid.UUID | None = None
    estimated_cost: float | None = Field(default=None, ge=0)
    target_date: datetime | None = None


class TreatmentCompleteRequest(BaseModel):
    actual_cost: float | None = Field(default=None, ge=0)
    effectiveness: int | None = Field(default=None, ge=0, le=100)


class TreatmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    risk_id: uuid.UUID
    title: str
    description: str | None
    strategy: str
    status: str
    owner_id: uuid.UUID | None
    estimated_cost: float | None
    actual_cost: float | None
    target_date: datetime | None
    actual_completion_date: datetime | None
    effectiveness: int | None


class ControlMappingRequest(BaseModel):
    control_id: uuid.UUID
    mapping_type: str = ControlMappingType.DIRECT
    effectiveness: int | None = Field(default=None, ge=0, le=100)
    notes: str | None = None


class PolicyMappingRequest(BaseModel):
    policy_id: uuid.UUID
    notes: str | None = None


class ControlMappingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    risk_id: uuid.UUID
    control_id: uuid.UUID
    mapping_type: str
    effectiveness: int | None
    notes: str | None


class PolicyMappingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    risk_id: uuid.UUID
    policy_id: uuid.UUID
    notes: str | None


# ---------------------------------------------------------------------------
# Task schemas
# ---------------------------------------------------------------------------


class TaskCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    task_type: str = TaskType.GENERAL
    description: str | None = None
    priority: str = TaskPriority.MEDIUM
    due_date: datetime | None = None
    assignee_id: uuid.UUID | None = None
    control_id: uuid.UUID | None = None
    evidence_id: uuid.UUID | None = None


class TaskStatusUpdateRequest(BaseModel):
    status: str = Field(description="OPEN | IN_PROGRESS | COMPLETED | CANCELLED")


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str
    description: str | None
    task_type: str
    status: str
    priority: str
    due_date: datetime | None
    assignee_id: uuid.UUID | None
    control_id: uuid.UUID | None
    evidence_id: uuid.UUID | None
    audit_run_id: uuid.UUID | None
    created_by: uuid.UUID | None = Field(description="None for tasks generated by automation")
    completed_at: datetime | None
    metadata: dict[str, Any] = Field(validation_alias="meta")
    created_at: datetime


# ---------------------------------------------------------------------------
# Activity trail schemas
# ---------------------------------------------------------------------------


class ActivityEntryResponse(BaseModel):
    """One immutable activity trail record."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    event_type: str = Field(description="Dot-notation event type, e.g. compliance.audit_run.locked")
    actor_id: uuid.UUID
    resource_type: str
    resource_id: uuid.UUID
    action: str
    details: dict[str, Any]
    timestamp: datetime
    source_service: str
    correlation_id: str | None
