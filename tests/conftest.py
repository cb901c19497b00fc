"""Test fixtures for complianceOS.

Provides:
- tenant_id / actor_id: deterministic UUIDs
- mock_tenant: a regular organization user
- admin_tenant / auditor_tenant: platform admin and audit manager contexts
- mock_activity_repo / activity_service: activity trail with a mock repository
- mock_event_publisher: AsyncMock publisher capturing publish_event() calls
- make_repo(): an AsyncMock repository whose add()/save() echo the entity
- make_fake_*: ORM-like MagicMock factories
"""

import uuid
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from complianceos.common.auth import OrgRole, PlatformRole, TenantContext
from complianceos.core.services import ActivityService


@pytest.fixture()
def tenant_id() -> uuid.UUID:
    """Return a fixed tenant UUID for consistent test assertions."""
    return uuid.UUID("00000000-0000-0000-0000-000000000001")


@pytest.fixture()
def actor_id() -> uuid.UUID:
    """Return a fixed actor UUID for consistent test assertions."""
    return uuid.UUID("00000000-0000-0000-0000-000000000002")


@pytest.fixture()
def mock_tenant(tenant_id: uuid.UUID, actor_id: uuid.UUID) -> TenantContext:
    return TenantContext(tenant_id=tenant_id, user_id=actor_id, email="user@example.com")


@pytest.fixture()
def admin_tenant(tenant_id: uuid.UUID, actor_id: uuid.UUID) -> TenantContext:
    return TenantContext(
        tenant_id=tenant_id,
        user_id=actor_id,
        platform_role=PlatformRole.PLATFORM_ADMIN,
        org_role=OrgRole.ORG_ADMIN,
    )


@pytest.fixture()
def auditor_tenant(tenant_id: uuid.UUID, actor_id: uuid.UUID) -> TenantContext:
    return TenantContext(tenant_id=tenant_id, user_id=actor_id, org_role=OrgRole.AUDIT_MANAGER)


@pytest.fixture()
def mock_activity_repo() -> AsyncMock:
    """Create a mock ActivityTrailRepository.

    Returns:
        AsyncMock with append() returning a fake ActivityEntry and query()
        returning an empty page.
    """
    repo = AsyncMock()
    fake_entry = MagicMock()
    fake_entry.id = uuid.uuid4()
    fake_entry.timestamp = datetime.now(UTC)
    repo.append.return_value = fake_entry
    repo.query.return_value = ([], 0)
    return repo


@pytest.fixture()
def activity_service(mock_activity_repo: AsyncMock) -> ActivityService:
    return ActivityService(mock_activity_repo)


@pytest.fixture()
def mock_event_publisher() -> AsyncMock:
    """Create a mock event publisher that captures all publish_event() calls."""
    publisher = AsyncMock()
    publisher.publish_event.return_value = None
    return publisher


def persist(entity: Any) -> Any:
    if getattr(entity, "id", None) is None:
        entity.id = uuid.uuid4()
    now = datetime.now(UTC)
    if getattr(entity, "created_at", None) is None:
        entity.created_at = now
    if getattr(entity, "updated_at", None) is None:
        entity.updated_at = now
    return entity


def make_repo() -> AsyncMock:
    """An AsyncMock repository whose add() and save() return the entity given.

    add() assigns an id and timestamps, as a flush would.
    """
    repo = AsyncMock()
    repo.add.side_effect = persist
    repo.save.side_effect = persist
    repo.list_where.return_value = []
    repo.list_page.return_value = ([], 0)
    repo.count.return_value = 0
    repo.count_by.return_value = {}
    return repo


def event_types(publisher: AsyncMock) -> list[str]:
    """Event types published so far, in order."""
    return [c.kwargs["event_type"] for c in publisher.publish_event.call_args_list]


def make_fake_framework(tenant_id: uuid.UUID, name: str = "SOC 2") -> MagicMock:
    framework = MagicMock()
    framework.id = uuid.uuid4()
    framework.tenant_id = tenant_id
    framework.name = name
    framework.framework_type = "SOC2"
    framework.version = "2017"
    framework.description = None
    framework.template_code = None
    framework.is_active = True
    framework.created_at = datetime.now(UTC)
    framework.updated_at = datetime.now(UTC)
    return framework


def make_fake_control(
    tenant_id: uuid.UUID,
    code: str = "CC6.1",
    status: str = "NOT_STARTED",
    criticality: str = "MEDIUM",
    framework_id: uuid.UUID | None = None,
) -> MagicMock:
    """Create a fake Control ORM object for tests.

    Args:
        tenant_id: Owning tenant UUID.
        code: Control code.
        status: Control status.
        criticality: Control criticality.
        framework_id: Parent framework, random when omitted.

    Returns:
        MagicMock with control-like attributes.
    """
    control = MagicMock()
    control.id = uuid.uuid4()
    control.tenant_id = tenant_id
    control.framework_id = framework_id or uuid.uuid4()
    control.code = code
    control.name = f"Control {code}"
    control.description = None
    control.category = "Access Control"
    control.criticality = criticality
    control.status = status
    control.owner_id = None
    control.next_review_date = None
    control.review_frequency_days = 365
    control.created_at = datetime.now(UTC)
    control.updated_at = datetime.now(UTC)
    return control


def make_fake_evidence(
    tenant_id: uuid.UUID,
    status: str = "APPROVED",
    expiry_date: datetime | None = None,
    current_version: int = 1,
) -> MagicMock:
    evidence = MagicMock()
    evidence.id = uuid.uuid4()
    evidence.tenant_id = tenant_id
    evidence.title = "Access review export"
    evidence.description = None
    evidence.evidence_type = "REPORT"
    evidence.status = status
    evidence.file_name = "review.csv"
    evidence.file_url = "s3://evidence/review.csv"
    evidence.content_hash = "a" * 64
    evidence.current_version = current_version
    evidence.expiry_date = expiry_date
    evidence.uploaded_by = uuid.uuid4()
    evidence.reviewed_by = None
    evidence.reviewed_at = None
    evidence.review_notes = None
    evidence.created_at = datetime.now(UTC)
    evidence.updated_at = datetime.now(UTC)
    return evidence


def make_fake_policy(tenant_id: uuid.UUID, status: str = "DRAFT", version: str = "1.0.0") -> MagicMock:
    """Create a fake Policy ORM object for tests."""
    policy = MagicMock()
    policy.id = uuid.uuid4()
    policy.tenant_id = tenant_id
    policy.title = "Acceptable Use Policy"
    policy.description = "Rules for company systems"
    policy.content = "# Acceptable Use"
    policy.category = "Security"
    policy.status = status
    policy.version = version
    policy.effective_date = None
    policy.review_date = None
    policy.owner_id = None
    policy.created_by = uuid.uuid4()
    policy.published_by = None
    policy.published_at = None
    policy.requires_acknowledgment = True
    policy.created_at = datetime.now(UTC)
    policy.updated_at = datetime.now(UTC)
    return policy


def make_fake_risk(
    tenant_id: uuid.UUID,
    likelihood: int = 3,
    impact: int = 3,
    status: str = "IDENTIFIED",
    severity: str = "MEDIUM",
) -> MagicMock:
    risk = MagicMock()
    risk.id = uuid.uuid4()
    risk.tenant_id = tenant_id
    risk.title = "Vendor data breach"
    risk.description = None
    risk.category = "THIRD_PARTY"
    risk.subcategory = None
    risk.likelihood = likelihood
    risk.impact = impact
    risk.risk_score = likelihood * impact
    risk.severity = severity
    risk.status = status
    risk.owner_id = None
    risk.business_unit = "Engineering"
    risk.residual_likelihood = None
    risk.residual_impact = None
    risk.residual_score = None
    risk.identified_by = uuid.uuid4()
    risk.created_at = datetime.now(UTC)
    risk.updated_at = datetime.now(UTC)
    return risk


def make_fake_task(tenant_id: uuid.UUID, status: str = "OPEN", task_type: str = "GENERAL") -> MagicMock:
    task = MagicMock()
    task.id = uuid.uuid4()
    task.tenant_id = tenant_id
    task.title = "Collect evidence"
    task.description = None
    task.task_type = task_type
    task.status = status
    task.priority = "MEDIUM"
    task.due_date = None
    task.assignee_id = None
    task.control_id = None
    task.evidence_id = None
    task.audit_run_id = None
    task.created_by = None
    task.completed_at = None
    task.meta = {}
    task.created_at = datetime.now(UTC)
    task.updated_at = datetime.now(UTC)
    return task
