"""Core business logic services for complianceOS.

Service classes:
- ActivityService: Append-only activity trail write orchestration
- FrameworkService: Frameworks and their controls
- EvidenceService: Evidence upload, versioning, control links and review
- PolicyService: Policy lifecycle, versions and acknowledgments
- TaskService: Manual task management

Risk, task automation, catalog, audit, questionnaire, AI, governance,
enterprise and identity services live in their own modules and reuse
ActivityService and TrackedService from here.

All services are async-first. They accept injected repositories and adapters
through their constructors, contain no framework code, and write an activity
entry plus publish a Kafka event after every state-changing operation.
"""

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from complianceos.common.auth import TenantContext
from complianceos.common.database import to_page
from complianceos.common.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from complianceos.common.observability import get_logger
from complianceos.core.interfaces import IActivityRepository, IEventPublisher
from complianceos.core.models import (
    AcknowledgmentStatus,
    ActivityEntry,
    Control,
    ControlStatus,
    Evidence,
    EvidenceControlLink,
    EvidenceStatus,
    EvidenceType,
    EvidenceVersion,
    Framework,
    Policy,
    PolicyAcknowledgment,
    PolicyStatus,
    PolicyVersion,
    Task,
    TaskStatus,
    TaskType,
)

logger = get_logger(__name__)

SYSTEM_ACTOR_ID = uuid.UUID(int=0)

# Tasks closed automatically when their control reaches MET.
_TASK_TYPES_CLOSED_ON_MET: tuple[str, ...] = (TaskType.EVIDENCE_COLLECTION, TaskType.GAP_REMEDIATION)

_EVIDENCE_REVIEW_DECISIONS: frozenset[str] = frozenset(
    {EvidenceStatus.APPROVED, EvidenceStatus.REJECTED, EvidenceStatus.UNDER_REVIEW}
)

_POLICY_NON_NULLABLE: frozenset[str] = frozenset({"title", "requires_acknowledgment"})


def utcnow() -> datetime:
    return datetime.now(UTC)


def next_minor_version(version: str) -> str:
    """Bump the minor part of a semantic version and reset the patch.

    Args:
        version: A "major.minor.patch" string, e.g. "1.0.0".

    Returns:
        The next minor version, e.g. "1.1.0".

    Raises:
        ValidationError: If `version` is not a three-part numeric version.
    """
    parts = version.split(".")
    if len(parts) != 3 or not all(part.isdigit() for part in parts):
        raise ValidationError(message=f"Invalid policy version '{version}'", field="version")
    major, minor, _ = (int(part) for part in parts)
    return f"{major}.{minor + 1}.0"


def reject_nulls(changes: dict[str, Any], fields: frozenset[str]) -> None:
    """Raise ValidationError when a partial update sets a non-nullable field to None."""
    for field_name in sorted(fields & changes.keys()):
        if changes[field_name] is None:
            raise ValidationError(message=f"{field_name} cannot be null", field=field_name)


# ---------------------------------------------------------------------------
# Activity trail
# ---------------------------------------------------------------------------


class ActivityService:
    """Append-only activity trail write orchestration.

    The single point of entry for all activity trail writes. There is no
    update or delete: a wrong entry is corrected with a compensating entry.

    Args:
        activity_repo: Repository for ActivityEntry persistence (activity DB).
    """

    def __init__(self, activity_repo: IActivityRepository) -> None:
        self._activity_repo = activity_repo

    async def record(
        self,
        tenant_id: uuid.UUID,
        event_type: str,
        actor_id: uuid.UUID,
        resource_type: str,
        resource_id: uuid.UUID,
        action: str,
        details: dict[str, Any],
        correlation_id: str | None = None,
    ) -> ActivityEntry:
        """Append an immutable activity entry.

        Args:
            tenant_id: Owning organization.
            event_type: Dot-notation event type.
            actor_id: Acting user.
            resource_type: Affected resource kind.
            resource_id: Affected resource UUID.
            action: Short action verb.
            details: Event-specific payload.
            correlation_id: Optional request correlation ID.

        Returns:
            The persisted ActivityEntry.
        """
        return await self._activity_repo.append(
            tenant_id=tenant_id,
            event_type=event_type,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            details=details,
            timestamp=utcnow(),
            correlation_id=correlation_id,
        )

    async def query_trail(
        self,
        tenant: TenantContext,
        event_type_filter: str | None = None,
        resource_type_filter: str | None = None,
        resource_id_filter: uuid.UUID | None = None,
        actor_id_filter: uuid.UUID | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> dict[str, Any]:
        """Query the activity trail.

        Returns:
            Paginated payload of ActivityEntry rows, newest first.
        """
        entries, total = await self._activity_repo.query(
            tenant=tenant,
            event_type_filter=event_type_filter,
            resource_type_filter=resource_type_filter,
            resource_id_filter=resource_id_filter,
            actor_id_filter=actor_id_filter,
            start_time=start_time,
            end_time=end_time,
            page=page,
            page_size=page_size,
        )
        return to_page(entries, total, page, page_size)


class TrackedService:
    """Base for services that record activity and publish an event per mutation.

    Args:
        activity: ActivityService for the activity trail.
        event_publisher: Domain event publisher.
    """

    def __init__(self, activity: ActivityService, event_publisher: IEventPublisher) -> None:
        self._activity = activity
        self._event_publisher = event_publisher

    async def _track(
        self,
        tenant: TenantContext,
        event_type: str,
        resource_type: str,
        resource_id: uuid.UUID,
        action: str,
        details: dict[str, Any],
        correlation_id: str | None = None,
        actor_id: uuid.UUID | None = None,
    ) -> None:
        """Write the activity entry, then publish the matching domain event."""
        await self._activity.record(
            tenant_id=tenant.tenant_id,
            event_type=event_type,
            actor_id=actor_id or tenant.user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            details=details,
            correlation_id=correlation_id,
        )
        await self._event_publisher.publish_event(
            event_type=event_type,
            tenant_id=tenant.tenant_id,
            resource_id=resource_id,
            payload={"resource_type": resource_type, "resource_id": str(resource_id), **details},
            correlation_id=correlation_id,
        )


# ---------------------------------------------------------------------------
# Frameworks & controls
# ---------------------------------------------------------------------------


class FrameworkService(TrackedService):
    """Frameworks and the controls within them.

    Args:
        framework_repo: Framework repository.
        control_repo: Control repository.
        task_repo: Task repository (tasks are closed when a control is MET).
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(
        self,
        framework_repo: Any,
        control_repo: Any,
        task_repo: Any,
        activity: ActivityService,
        event_publisher: IEventPublisher,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._framework_repo = framework_repo
        self._control_repo = control_repo
        self._task_repo = task_repo

    async def create_framework(
        self,
        tenant: TenantContext,
        name: str,
        framework_type: str,
        version: str | None = None,
        description: str | None = None,
        template_code: str | None = None,
        correlation_id: str | None = None,
    ) -> Framework:
        """Create a framework for the tenant."""
        if not name.strip():
            raise ValidationError(message="Framework name is required", field="name")

        framework = await self._framework_repo.add(
            Framework(
                tenant_id=tenant.tenant_id,
                name=name,
                framework_type=framework_type,
                version=version,
                description=description,
                template_code=template_code,
                is_active=True,
            )
        )
        await self._track(
            tenant,
            "compliance.framework.created",
            "framework",
            framework.id,
            "create",
            {"name": name, "framework_type": framework_type},
            correlation_id,
        )
        logger.info("Framework created", framework_id=str(framework.id), tenant_id=str(tenant.tenant_id))
        return framework

    async def list_frameworks(self, tenant: TenantContext, page: int = 1, page_size: int = 20) -> dict[str, Any]:
        rows, total = await self._framework_repo.list_page(
            tenant.tenant_id, page=page, page_size=page_size, order_by=[Framework.name.asc()]
        )
        return to_page(rows, total, page, page_size)

    async def get_framework(self, framework_id: uuid.UUID, tenant: TenantContext) -> Framework:
        return await self._framework_repo.get_by_id(framework_id, tenant.tenant_id)

    async def create_control(
        self,
        tenant: TenantContext,
        framework_id: uuid.UUID,
        code: str,
        name: str,
        description: str | None = None,
        category: str | None = None,
        criticality: str = "MEDIUM",
        owner_id: uuid.UUID | None = None,
        review_frequency_days: int = 365,
        correlation_id: str | None = None,
    ) -> Control:
        """Create a control inside a framework.

        Raises:
            NotFoundError: If the framework does not exist for the tenant.
            ConflictError: If the framework already has a control with `code`.
        """
        await self._framework_repo.get_by_id(framework_id, tenant.tenant_id)
        if await self._control_repo.find_by_code(tenant.tenant_id, framework_id, code) is not None:
            raise ConflictError(message=f"Control '{code}' already exists in this framework")

        control = await self._control_repo.add(
            Control(
                tenant_id=tenant.tenant_id,
                framework_id=framework_id,
                code=code,
                name=name,
                description=description,
                category=category,
                criticality=criticality,
                status=ControlStatus.NOT_STARTED,
                owner_id=owner_id,
                review_frequency_days=review_frequency_days,
                next_review_date=utcnow() + timedelta(days=review_frequency_days),
            )
        )
        await self._track(
            tenant,
            "compliance.control.created",
            "control",
            control.id,
            "create",
            {"code": code, "framework_id": str(framework_id)},
            correlation_id,
        )
        logger.info("Control created", control_id=str(control.id), code=code, tenant_id=str(tenant.tenant_id))
        return control

    async def list_controls(
        self,
        tenant: TenantContext,
        framework_id: uuid.UUID | None = None,
        status_filter: str | None = None,
        criticality: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> dict[str, Any]:
        filters = []
        if framework_id is not None:
            filters.append(Control.framework_id == framework_id)
        if status_filter:
            filters.append(Control.status == status_filter)
        if criticality:
            filters.append(Control.criticality == criticality)
        rows, total = await self._control_repo.list_page(
            tenant.tenant_id, filters, page, page_size, order_by=[Control.code.asc()]
        )
        return to_page(rows, total, page, page_size)

    async def get_control(self, control_id: uuid.UUID, tenant: TenantContext) -> Control:
        return await self._control_repo.get_by_id(control_id, tenant.tenant_id)

    async def update_control_status(
        self,
        control_id: uuid.UUID,
        new_status: str,
        tenant: TenantContext,
        correlation_id: str | None = None,
    ) -> Control:
        """Change a control's implementation status.

        When the control reaches MET, its open EVIDENCE_COLLECTION and
        GAP_REMEDIATION tasks are completed.

        Args:
            control_id: The control UUID.
            new_status: One of ControlStatus.
            tenant: The tenant context.
            correlation_id: Optional request correlation ID.

        Returns:
            The updated Control.

        Raises:
            ValidationError: If `new_status` is not a ControlStatus.
        """
        if new_status not in ControlStatus.__members__:
            raise ValidationError(message=f"Unknown control status '{new_status}'", field="status")

        control = await self._control_repo.get_by_id(control_id, tenant.tenant_id)
        old_status = control.status
        control.status = new_status
        control = await self._control_repo.save(control)

        completed = 0
        if new_status == ControlStatus.MET:
            completed = await self._task_repo.complete_open_tasks(
                tenant.tenant_id, control_id, _TASK_TYPES_CLOSED_ON_MET, utcnow()
            )

        await self._track(
            tenant,
            "compliance.control.status_changed",
            "control",
            control_id,
            "update_status",
            {"old_status": old_status, "new_status": new_status, "tasks_completed": completed},
            correlation_id,
        )
        logger.info(
            "Control status changed",
            control_id=str(control_id),
            old_status=old_status,
            new_status=new_status,
            tasks_completed=completed,
        )
        return control


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------


class EvidenceService(TrackedService):
    """Evidence upload, versioning, control links and review.

    Args:
        evidence_repo: EvidenceRepository.
        control_repo: ControlRepository, used to validate links.
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(
        self,
        evidence_repo: Any,
        control_repo: Any,
        activity: ActivityService,
        event_publisher: IEventPublisher,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._evidence_repo = evidence_repo
        self._control_repo = control_repo

    async def create_evidence(
        self,
        tenant: TenantContext,
        title: str,
        evidence_type: str,
        description: str | None = None,
        file_name: str | None = None,
        file_url: str | None = None,
        content_hash: str | None = None,
        expiry_date: datetime | None = None,
        control_ids: list[uuid.UUID] | None = None,
        correlation_id: str | None = None,
    ) -> Evidence:
        """Upload a new evidence item as version 1 and link it to controls.

        Raises:
            ValidationError: If the title is blank or the evidence type is unknown.
            NotFoundError: If a control id does not belong to the tenant.
        """
        if not title or not title.strip():
            raise ValidationError(message="Evidence title is required", field="title")
        if evidence_type not in EvidenceType.__members__:
            raise ValidationError(message=f"Unknown evidence type '{evidence_type}'", field="evidence_type")

        evidence = await self._evidence_repo.add(
            Evidence(
                tenant_id=tenant.tenant_id,
                title=title.strip(),
                description=description,
                evidence_type=evidence_type,
                status=EvidenceStatus.DRAFT,
                file_name=file_name,
                file_url=file_url,
                content_hash=content_hash,
                current_version=1,
                expiry_date=expiry_date,
                uploaded_by=tenant.user_id,
            )
        )
        await self._evidence_repo.add_version(
            EvidenceVersion(
                tenant_id=tenant.tenant_id,
                evidence_id=evidence.id,
                version=1,
                file_name=file_name,
                file_url=file_url,
                content_hash=content_hash,
                change_notes="Initial upload",
                created_by=tenant.user_id,
            )
        )
        for control_id in control_ids or []:
            await self._link(tenant, evidence.id, control_id)

        await self._track(
            tenant,
            "compliance.evidence.uploaded",
            "evidence",
            evidence.id,
            "create",
            {
                "title": evidence.title,
                "evidence_type": evidence_type,
                "control_ids": [str(c) for c in control_ids or []],
            },
            correlation_id,
        )
        logger.info("Evidence uploaded", evidence_id=str(evidence.id), tenant_id=str(tenant.tenant_id))
        return evidence

    async def list_evidence(
        self,
        tenant: TenantContext,
        status_filter: str | None = None,
        evidence_type: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        filters = []
        if status_filter:
            filters.append(Evidence.status == status_filter)
        if evidence_type:
            filters.append(Evidence.evidence_type == evidence_type)
        rows, total = await self._evidence_repo.list_page(tenant.tenant_id, filters, page, page_size)
        return to_page(rows, total, page, page_size)

    async def get_evidence(self, evidence_id: uuid.UUID, tenant: TenantContext) -> Evidence:
        return await self._evidence_repo.get_by_id(evidence_id, tenant.tenant_id)

    async def list_versions(self, evidence_id: uuid.UUID, tenant: TenantContext) -> list[EvidenceVersion]:
        await self._evidence_repo.get_by_id(evidence_id, tenant.tenant_id)
        return await self._evidence_repo.list_versions(tenant.tenant_id, evidence_id)

    async def add_version(
        self,
        evidence_id: uuid.UUID,
        tenant: TenantContext,
        file_name: str | None,
        file_url: str | None,
        content_hash: str | None,
        change_notes: str | None = None,
        correlation_id: str | None = None,
    ) -> Evidence:
        """Upload a new revision. The evidence returns to SUBMITTED for review."""
        evidence = await self._evidence_repo.get_by_id(evidence_id, tenant.tenant_id)
        next_version = evidence.current_version + 1

        await self._evidence_repo.add_version(
            EvidenceVersion(
                tenant_id=tenant.tenant_id,
                evidence_id=evidence_id,
                version=next_version,
                file_name=file_name,
                file_url=file_url,
                content_hash=content_hash,
                change_notes=change_notes,
                created_by=tenant.user_id,
            )
        )
        evidence.current_version = next_version
        evidence.file_name = file_name
        evidence.file_url = file_url
        evidence.content_hash = content_hash
        evidence.status = EvidenceStatus.SUBMITTED
        evidence = await self._evidence_repo.save(evidence)

        await self._track(
            tenant,
            "compliance.evidence.versioned",
            "evidence",
            evidence_id,
            "add_version",
            {"version": next_version},
            correlation_id,
        )
        logger.info("Evidence version added", evidence_id=str(evidence_id), version=next_version)
        return evidence

    async def link_control(
        self,
        evidence_id: uuid.UUID,
        control_id: uuid.UUID,
        tenant: TenantContext,
        correlation_id: str | None = None,
    ) -> EvidenceControlLink:
        """Link evidence to a control.

        Raises:
            NotFoundError: If the evidence or control does not exist.
            ConflictError: If the link already exists.
        """
        await self._evidence_repo.get_by_id(evidence_id, tenant.tenant_id)
        link = await self._link(tenant, evidence_id, control_id)
        await self._track(
            tenant,
            "compliance.evidence.linked",
            "evidence",
            evidence_id,
            "link_control",
            {"control_id": str(control_id)},
            correlation_id,
        )
        return link

    async def _link(self, tenant: TenantContext, evidence_id: uuid.UUID, control_id: uuid.UUID) -> EvidenceControlLink:
        await self._control_repo.get_by_id(control_id, tenant.tenant_id)
        if await self._evidence_repo.link_exists(tenant.tenant_id, evidence_id, control_id):
            raise ConflictError(message="Evidence is already linked to this control")
        return await self._evidence_repo.add_link(
            EvidenceControlLink(
                tenant_id=tenant.tenant_id,
                evidence_id=evidence_id,
                control_id=control_id,
                linked_by=tenant.user_id,
            )
        )

    async def review_evidence(
        self,
        evidence_id: uuid.UUID,
        decision: str,
        tenant: TenantContext,
        notes: str | None = None,
        correlation_id: str | None = None,
    ) -> Evidence:
        """Record a review decision (APPROVED, REJECTED or UNDER_REVIEW).

        Raises:
            ValidationError: If `decision` is not a review outcome.
        """
        if decision not in _EVIDENCE_REVIEW_DECISIONS:
            raise ValidationError(
                message=f"Invalid review decision '{decision}'. Expected one of {sorted(_EVIDENCE_REVIEW_DECISIONS)}.",
                field="decision",
            )

        evidence = await self._evidence_repo.get_by_id(evidence_id, tenant.tenant_id)
        old_status = evidence.status
        evidence.status = decision
        evidence.reviewed_by = tenant.user_id
        evidence.reviewed_at = utcnow()
        evidence.review_notes = notes
        evidence = await self._evidence_repo.save(evidence)

        await self._track(
            tenant,
            "compliance.evidence.reviewed",
            "evidence",
            evidence_id,
            "review",
            {"old_status": old_status, "decision": decision},
            correlation_id,
        )
        logger.info("Evidence reviewed", evidence_id=str(evidence_id), decision=decision)
        return evidence

    async def list_expiring(self, tenant: TenantContext, days: int = 30) -> list[Evidence]:
        """APPROVED or SUBMITTED evidence expiring within the next `days` days."""
        if days < 1:
            raise ValidationError(message="days must be at least 1", field="days")
        now = utcnow()
        return await self._evidence_repo.list_expiring(tenant.tenant_id, now, now + timedelta(days=days))


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class PolicyService(TrackedService):
    """Policy lifecycle, versions and acknowledgments.

    Args:
        policy_repo: PolicyRepository.
        ack_repo: AcknowledgmentRepository.
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(
        self,
        policy_repo: Any,
        ack_repo: Any,
        activity: ActivityService,
        event_publisher: IEventPublisher,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._policy_repo = policy_repo
        self._ack_repo = ack_repo

    async def create_policy(
        self,
        tenant: TenantContext,
        title: str,
        content: str,
        description: str | None = None,
        category: str | None = None,
        owner_id: uuid.UUID | None = None,
        effective_date: datetime | None = None,
        review_date: datetime | None = None,
        requires_acknowledgment: bool = True,
        correlation_id: str | None = None,
    ) -> Policy:
        """Create a DRAFT policy at version 1.0.0 with its first version row."""
        if not title or not title.strip():
            raise ValidationError(message="Policy title is required", field="title")

        policy = await self._policy_repo.add(
            Policy(
                tenant_id=tenant.tenant_id,
                title=title.strip(),
                description=description,
                content=content,
                category=category,
                status=PolicyStatus.DRAFT,
                version="1.0.0",
                owner_id=owner_id or tenant.user_id,
                effective_date=effective_date,
                review_date=review_date,
                created_by=tenant.user_id,
                requires_acknowledgment=requires_acknowledgment,
            )
        )
        await self._policy_repo.add_version(
            PolicyVersion(
                tenant_id=tenant.tenant_id,
                policy_id=policy.id,
                version="1.0.0",
                content=content,
                change_summary="Initial version",
                created_by=tenant.user_id,
            )
        )
        await self._track(
            tenant, "compliance.policy.created", "policy", policy.id, "create", {"title": policy.title}, correlation_id
        )
        logger.info("Policy created", policy_id=str(policy.id), tenant_id=str(tenant.tenant_id))
        return policy

    async def get_policy(self, policy_id: uuid.UUID, tenant: TenantContext) -> Policy:
        return await self._policy_repo.get_by_id(policy_id, tenant.tenant_id)

    async def list_policies(
        self,
        tenant: TenantContext,
        status_filter: str | None = None,
        category: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        filters = []
        if status_filter:
            filters.append(Policy.status == status_filter)
        if category:
            filters.append(Policy.category == category)
        rows, total = await self._policy_repo.list_page(tenant.tenant_id, filters, page, page_size)
        return to_page(rows, total, page, page_size)

    async def search_policies(self, tenant: TenantContext, query: str) -> list[Policy]:
        if not query.strip():
            raise ValidationError(message="Search query is required", field="q")
        return await self._policy_repo.search(tenant.tenant_id, query.strip())

    async def update_policy(
        self,
        policy_id: uuid.UUID,
        tenant: TenantContext,
        changes: dict[str, Any],
        correlation_id: str | None = None,
    ) -> Policy:
        """Apply field changes to a policy that is not ARCHIVED.

        Raises:
            ValidationError: If the policy is ARCHIVED, or a required field is null or blank.
        """
        reject_nulls(changes, _POLICY_NON_NULLABLE)
        if "title" in changes and not changes["title"].strip():
            raise ValidationError(message="Policy title is required", field="title")
        policy = await self._policy_repo.get_by_id(policy_id, tenant.tenant_id)
        if policy.status == PolicyStatus.ARCHIVED:
            raise ValidationError(message="Archived policies cannot be modified", field="status")

        for field_name, value in changes.items():
            setattr(policy, field_name, value)
        policy = await self._policy_repo.save(policy)

        await self._track(
            tenant,
            "compliance.policy.updated",
            "policy",
            policy_id,
            "update",
            {"fields": sorted(changes)},
            correlation_id,
        )
        return policy

    async def publish_policy(
        self, policy_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> Policy:
        """Publish a policy.

        Raises:
            ValidationError: If the policy is ARCHIVED.
        """
        policy = await self._policy_repo.get_by_id(policy_id, tenant.tenant_id)
        if policy.status == PolicyStatus.ARCHIVED:
            raise ValidationError(message="Archived policies cannot be published", field="status")

        policy.status = PolicyStatus.PUBLISHED
        policy.published_by = tenant.user_id
        policy.published_at = utcnow()
        policy = await self._policy_repo.save(policy)

        await self._track(
            tenant,
            "compliance.policy.published",
            "policy",
            policy_id,
            "publish",
            {"version": policy.version},
            correlation_id,
        )
        logger.info("Policy published", policy_id=str(policy_id), version=policy.version)
        return policy

    async def archive_policy(
        self, policy_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> Policy:
        policy = await self._policy_repo.get_by_id(policy_id, tenant.tenant_id)
        old_status = policy.status
        policy.status = PolicyStatus.ARCHIVED
        policy = await self._policy_repo.save(policy)
        await self._track(
            tenant,
            "compliance.policy.archived",
            "policy",
            policy_id,
            "archive",
            {"old_status": old_status},
            correlation_id,
        )
        return policy

    async def create_version(
        self,
        policy_id: uuid.UUID,
        tenant: TenantContext,
        content: str,
        change_summary: str | None = None,
        correlation_id: str | None = None,
    ) -> PolicyVersion:
        """Create the next minor version and return the policy to DRAFT.

        Raises:
            ValidationError: If the policy is ARCHIVED.
        """
        policy = await self._policy_repo.get_by_id(policy_id, tenant.tenant_id)
        if policy.status == PolicyStatus.ARCHIVED:
            raise ValidationError(message="Archived policies cannot be versioned", field="status")

        new_version = next_minor_version(policy.version)
        version = await self._policy_repo.add_version(
            PolicyVersion(
                tenant_id=tenant.tenant_id,
                policy_id=policy_id,
                version=new_version,
                content=content,
                change_summary=change_summary,
                created_by=tenant.user_id,
            )
        )
        policy.content = content
        policy.version = new_version
        policy.status = PolicyStatus.DRAFT
        await self._policy_repo.save(policy)

        await self._track(
            tenant,
            "compliance.policy.versioned",
            "policy",
            policy_id,
            "create_version",
            {"version": new_version},
            correlation_id,
        )
        logger.info("Policy version created", policy_id=str(policy_id), version=new_version)
        return version

    async def list_versions(self, policy_id: uuid.UUID, tenant: TenantContext) -> list[PolicyVersion]:
        await self._policy_repo.get_by_id(policy_id, tenant.tenant_id)
        return await self._policy_repo.list_versions(tenant.tenant_id, policy_id)

    async def approve_version(
        self,
        policy_id: uuid.UUID,
        version: str,
        tenant: TenantContext,
        correlation_id: str | None = None,
    ) -> PolicyVersion:
        """Approve one version of a policy.

        Raises:
            NotFoundError: If the version does not exist.
        """
        policy = await self._policy_repo.get_by_id(policy_id, tenant.tenant_id)
        policy_version = await self._policy_repo.get_version(tenant.tenant_id, policy_id, version)
        if policy_version is None:
            raise NotFoundError(resource="PolicyVersion", resource_id=f"{policy_id}@{version}")

        policy_version.approved_by = tenant.user_id
        policy_version.approved_at = utcnow()
        if policy.version == version and policy.status in (PolicyStatus.DRAFT, PolicyStatus.UNDER_REVIEW):
            policy.status = PolicyStatus.APPROVED
        await self._policy_repo.save(policy)

        await self._track(
            tenant,
            "compliance.policy.version_approved",
            "policy",
            policy_id,
            "approve_version",
            {"version": version},
            correlation_id,
        )
        return policy_version

    async def assign_acknowledgments(
        self,
        policy_id: uuid.UUID,
        user_ids: list[uuid.UUID],
        tenant: TenantContext,
        due_date: datetime | None = None,
        correlation_id: str | None = None,
    ) -> list[PolicyAcknowledgment]:
        """Create PENDING acknowledgments for users that do not already have one.

        Users with a PENDING or ACKNOWLEDGED acknowledgment are skipped.

        Returns:
            The newly created acknowledgments.
        """
        if not user_ids:
            raise ValidationError(message="At least one user is required", field="user_ids")

        await self._policy_repo.get_by_id(policy_id, tenant.tenant_id)
        already = await self._ack_repo.users_with_status(
            tenant.tenant_id, policy_id, (AcknowledgmentStatus.PENDING, AcknowledgmentStatus.ACKNOWLEDGED)
        )

        created: list[PolicyAcknowledgment] = []
        for user_id in dict.fromkeys(user_ids):
            if user_id in already:
                continue
            created.append(
                await self._ack_repo.add(
                    PolicyAcknowledgment(
                        tenant_id=tenant.tenant_id,
                        policy_id=policy_id,
                        user_id=user_id,
                        status=AcknowledgmentStatus.PENDING,
                        due_date=due_date,
                    )
                )
            )

        await self._track(
            tenant,
            "compliance.policy.acknowledgments_assigned",
            "policy",
            policy_id,
            "assign_acknowledgments",
            {"assigned": len(created), "skipped": len(user_ids) - len(created)},
            correlation_id,
        )
        return created

    async def acknowledge(
        self,
        acknowledgment_id: uuid.UUID,
        tenant: TenantContext,
        method: str = "WEB",
        ip_address: str | None = None,
        user_agent: str | None = None,
        correlation_id: str | None = None,
    ) -> PolicyAcknowledgment:
        """Acknowledge a policy on behalf of the assigned user.

        Raises:
            AuthorizationError: If the caller is not the assigned user.
            ValidationError: If the acknowledgment is not PENDING or OVERDUE.
        """
        ack = await self._ack_repo.get_by_id(acknowledgment_id, tenant.tenant_id)
        if ack.user_id != tenant.user_id:
            raise AuthorizationError("Only the assigned user can acknowledge this policy")
        if ack.status not in (AcknowledgmentStatus.PENDING, AcknowledgmentStatus.OVERDUE):
            raise ValidationError(message=f"Acknowledgment is already {ack.status}", field="status")

        ack.status = AcknowledgmentStatus.ACKNOWLEDGED
        ack.acknowledged_at = utcnow()
        ack.method = method
        ack.ip_address = ip_address
        ack.user_agent = user_agent
        ack = await self._ack_repo.save(ack)

        await self._track(
            tenant,
            "compliance.policy.acknowledged",
            "policy",
            ack.policy_id,
            "acknowledge",
            {"acknowledgment_id": str(acknowledgment_id), "method": method},
            correlation_id,
        )
        return ack

    async def policy_analytics(self, tenant: TenantContext) -> dict[str, Any]:
        """Totals by status, acknowledgment rate and overdue acknowledgments."""
        by_status = await self._policy_repo.count_by(tenant.tenant_id, Policy.status)
        ack_by_status = await self._ack_repo.count_by(tenant.tenant_id, PolicyAcknowledgment.status)
        overdue = await self._ack_repo.count(
            tenant.tenant_id,
            [
                PolicyAcknowledgment.status.in_([AcknowledgmentStatus.PENDING, AcknowledgmentStatus.OVERDUE]),
                PolicyAcknowledgment.due_date < utcnow(),
            ],
        )
        total_acks = sum(ack_by_status.values())
        acknowledged = ack_by_status.get(AcknowledgmentStatus.ACKNOWLEDGED, 0)
        return {
            "total_policies": sum(by_status.values()),
            "by_status": by_status,
            "total_acknowledgments": total_acks,
            "acknowledged": acknowledged,
            "overdue_acknowledgments": overdue,
            "acknowledgment_rate": round(acknowledged / total_acks * 100, 2) if total_acks else 0.0,
        }


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class TaskService(TrackedService):
    """Manual task management.

    Args:
        task_repo: TaskRepository.
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(self, task_repo: Any, activity: ActivityService, event_publisher: IEventPublisher) -> None:
        super().__init__(activity, event_publisher)
        self._task_repo = task_repo

    async def create_task(
        self,
        tenant: TenantContext,
        title: str,
        task_type: str = TaskType.GENERAL,
        description: str | None = None,
        priority: str = "MEDIUM",
        due_date: datetime | None = None,
        assignee_id: uuid.UUID | None = None,
        control_id: uuid.UUID | None = None,
        evidence_id: uuid.UUID | None = None,
        correlation_id: str | None = None,
    ) -> Task:
        if not title or not title.strip():
            raise ValidationError(message="Task title is required", field="title")

        task = await self._task_repo.add(
            Task(
                tenant_id=tenant.tenant_id,
                title=title.strip(),
                description=description,
                task_type=task_type,
                status=TaskStatus.OPEN,
                priority=priority,
                due_date=due_date,
                assignee_id=assignee_id,
                control_id=control_id,
                evidence_id=evidence_id,
                created_by=tenant.user_id,
                meta={},
            )
        )
        await self._track(
            tenant, "compliance.task.created", "task", task.id, "create", {"task_type": task_type}, correlation_id
        )
        return task

    async def list_tasks(
        self,
        tenant: TenantContext,
        status_filter: str | None = None,
        task_type: str | None = None,
        assignee_id: uuid.UUID | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        filters = []
        if status_filter:
            filters.append(Task.status == status_filter)
        if task_type:
            filters.append(Task.task_type == task_type)
        if assignee_id:
            filters.append(Task.assignee_id == assignee_id)
        rows, total = await self._task_repo.list_page(
            tenant.tenant_id, filters, page, page_size, order_by=[Task.due_date.asc().nulls_last()]
        )
        return to_page(rows, total, page, page_size)

    async def update_task_status(
        self,
        task_id: uuid.UUID,
        new_status: str,
        tenant: TenantContext,
        correlation_id: str | None = None,
    ) -> Task:
        """Change a task's status; COMPLETED stamps completed_at."""
        if new_status not in TaskStatus.__members__:
            raise ValidationError(message=f"Unknown task status '{new_status}'", field="status")

        task = await self._task_repo.get_by_id(task_id, tenant.tenant_id)
        old_status = task.status
        task.status = new_status
        task.completed_at = utcnow() if new_status == TaskStatus.COMPLETED else None
        task = await self._task_repo.save(task)

        await self._track(
            tenant,
            "compliance.task.status_changed",
            "task",
            task_id,
            "update_status",
            {"old_status": old_status, "new_status": new_status},
            correlation_id,
        )
        return task
