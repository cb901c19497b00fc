"""Audit run lifecycle, control review and findings.

An audit run moves through a fixed state machine:

    DRAFT -> IN_PROGRESS -> UNDER_REVIEW -> COMPLETED -> LOCKED
    IN_PROGRESS -> DRAFT, UNDER_REVIEW -> IN_PROGRESS

LOCKED is terminal. A locked run rejects every mutation (update, delete,
control review, findings). The move to LOCKED is a conditional UPDATE on the
COMPLETED row so two concurrent lock requests cannot both win.

Permission rules:
- audit permission (SUPER_ADMIN, AUDIT_MANAGER, COMPLIANCE_OFFICER) to create,
  read and export runs and to manage findings
- SUPER_ADMIN or the run's creator to modify, transition or delete a run
- the assigned reviewer or approver to review an audit control
- the assigned approver to approve or reject it

Every state change appends an AuditRunActivity row (per-run history shown to
auditors) and an activity trail entry with a Kafka event.
"""

import uuid
from datetime import UTC, date, datetime, time
from typing import Any

from complianceos.common.auth import TenantContext
from complianceos.common.database import to_page
from complianceos.common.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from complianceos.common.observability import get_logger
from complianceos.core.interfaces import IEventPublisher
from complianceos.core.models import (
    AuditActivityType,
    AuditControl,
    AuditControlStatus,
    AuditFinding,
    AuditRun,
    AuditRunActivity,
    AuditRunStatus,
    AuditType,
    FindingSeverity,
    FindingStatus,
    Task,
    TaskPriority,
    TaskStatus,
    TaskType,
)
from complianceos.core.services import ActivityService, TrackedService, reject_nulls, utcnow

logger = get_logger(__name__)

AUDIT_RUN_TRANSITIONS: dict[str, frozenset[str]] = {
    AuditRunStatus.DRAFT: frozenset({AuditRunStatus.IN_PROGRESS}),
    AuditRunStatus.IN_PROGRESS: frozenset({AuditRunStatus.UNDER_REVIEW, AuditRunStatus.DRAFT}),
    AuditRunStatus.UNDER_REVIEW: frozenset({AuditRunStatus.COMPLETED, AuditRunStatus.IN_PROGRESS}),
    AuditRunStatus.COMPLETED: frozenset({AuditRunStatus.LOCKED}),
    AuditRunStatus.LOCKED: frozenset(),
}

FINDING_SEVERITY_RANK: dict[str, int] = {
    FindingSeverity.LOW: 1,
    FindingSeverity.MEDIUM: 2,
    FindingSeverity.HIGH: 3,
    FindingSeverity.CRITICAL: 4,
}

# Statuses a reviewer may set; MET and GAP are reserved for the approver.
_REVIEWABLE_STATUSES: frozenset[str] = frozenset(
    {
        AuditControlStatus.NOT_STARTED,
        AuditControlStatus.IN_PROGRESS,
        AuditControlStatus.SUBMITTED,
        AuditControlStatus.NOT_APPLICABLE,
    }
)

_RUN_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {"name", "description", "framework_id", "audit_type", "start_date", "end_date"}
)
_RUN_NON_NULLABLE_FIELDS: frozenset[str] = frozenset({"name", "audit_type", "start_date", "end_date"})
_FINDING_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {"title", "description", "severity", "status", "owner_id", "due_date", "remediation_plan", "resolution_evidence_id"}
)
_FINDING_NON_NULLABLE_FIELDS: frozenset[str] = frozenset({"title", "severity", "status"})


def _end_of_day(day: date) -> datetime:
    return datetime.combine(day, time.max, tzinfo=UTC)


async def record_run_activity(
    run_activity_repo: Any,
    tenant: TenantContext,
    audit_run_id: uuid.UUID,
    activity_type: str,
    target_entity: str,
    target_id: uuid.UUID | None = None,
    old_value: dict[str, Any] | None = None,
    new_value: dict[str, Any] | None = None,
) -> AuditRunActivity:
    """Append one entry to an audit run's own activity log."""
    return await run_activity_repo.add(
        AuditRunActivity(
            tenant_id=tenant.tenant_id,
            audit_run_id=audit_run_id,
            activity_type=activity_type,
            performed_by=tenant.user_id,
            target_entity=target_entity,
            target_id=target_id,
            old_value=old_value,
            new_value=new_value,
        )
    )


def require_audit_permission(tenant: TenantContext) -> None:
    """Raise AuthorizationError unless the caller holds audit permission."""
    if not tenant.has_audit_permission:
        raise AuthorizationError("Audit permission required (AUDIT_MANAGER or COMPLIANCE_OFFICER)")


class AuditService(TrackedService):
    """Audit runs, audit controls and findings.

    Args:
        run_repo: AuditRunRepository.
        audit_control_repo: AuditControlRepository.
        finding_repo: Repository for AuditFinding.
        run_activity_repo: Repository for AuditRunActivity.
        control_repo: ControlRepository (validates control ids).
        task_repo: TaskRepository (evidence collection tasks).
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(
        self,
        run_repo: Any,
        audit_control_repo: Any,
        finding_repo: Any,
        run_activity_repo: Any,
        control_repo: Any,
        task_repo: Any,
        activity: ActivityService,
        event_publisher: IEventPublisher,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._run_repo = run_repo
        self._audit_control_repo = audit_control_repo
        self._finding_repo = finding_repo
        self._run_activity_repo = run_activity_repo
        self._control_repo = control_repo
        self._task_repo = task_repo

    # ------------------------------------------------------------------
    # Permission helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_modify(tenant: TenantContext, run: AuditRun) -> None:
        if not (tenant.is_super_admin or run.created_by == tenant.user_id):
            raise AuthorizationError("Only the audit run creator or a super admin can modify this audit run")

    @staticmethod
    def _ensure_unlocked(run: AuditRun) -> None:
        if run.status == AuditRunStatus.LOCKED:
            raise ValidationError(message="Cannot modify a locked audit run", field="status")

    # ------------------------------------------------------------------
    # Audit runs
    # ------------------------------------------------------------------

    async def create_audit_run(
        self,
        tenant: TenantContext,
        name: str,
        start_date: date,
        end_date: date,
        control_ids: list[uuid.UUID],
        description: str | None = None,
        framework_id: uuid.UUID | None = None,
        audit_type: str = AuditType.INTERNAL,
        assignments: dict[uuid.UUID, dict[str, uuid.UUID | None]] | None = None,
        correlation_id: str | None = None,
    ) -> AuditRun:
        """Create a DRAFT audit run with one audit control per control.

        Args:
            tenant: Caller context.
            name: Run name.
            start_date: First day of the audit period.
            end_date: Last day of the audit period (>= start_date).
            control_ids: Controls in scope.
            description: Optional description.
            framework_id: Optional framework the run audits.
            audit_type: INTERNAL, EXTERNAL or SELF_ASSESSMENT.
            assignments: Optional {control_id: {"reviewer_id", "approver_id"}}.
            correlation_id: Request correlation ID.

        Returns:
            The new AuditRun.

        Raises:
            AuthorizationError: Without audit permission.
            ValidationError: On a missing name, bad dates, bad type or unknown controls.
        """
        require_audit_permission(tenant)
        if not name or not name.strip():
            raise ValidationError(message="Audit run name is required", field="name")
        if end_date < start_date:
            raise ValidationError(message="end_date must be on or after start_date", field="end_date")
        if audit_type not in AuditType.__members__:
            raise ValidationError(message=f"Invalid audit type '{audit_type}'", field="audit_type")

        unique_ids = list(dict.fromkeys(control_ids))
        controls = await self._control_repo.list_by_ids(tenant.tenant_id, unique_ids)
        missing = set(unique_ids) - {control.id for control in controls}
        if missing:
            raise ValidationError(
                message=f"Unknown control ids: {', '.join(sorted(str(m) for m in missing))}",
                field="control_ids",
            )

        run = await self._run_repo.add(
            AuditRun(
                tenant_id=tenant.tenant_id,
                name=name.strip(),
                description=description,
                framework_id=framework_id,
                audit_type=audit_type,
                status=AuditRunStatus.DRAFT,
                start_date=start_date,
                end_date=end_date,
                created_by=tenant.user_id,
            )
        )

        assignments = assignments or {}
        for control in controls:
            assignment = assignments.get(control.id, {})
            reviewer_id = assignment.get("reviewer_id")
            await self._audit_control_repo.add(
                AuditControl(
                    tenant_id=tenant.tenant_id,
                    audit_run_id=run.id,
                    control_id=control.id,
                    status=AuditControlStatus.NOT_STARTED,
                    reviewer_id=reviewer_id,
                    approver_id=assignment.get("approver_id"),
                )
            )
            await self._task_repo.add(
                Task(
                    tenant_id=tenant.tenant_id,
                    title=f"Collect evidence for {control.code}: {control.name}",
                    description=f"Audit run: {run.name}",
                    task_type=TaskType.EVIDENCE_COLLECTION,
                    status=TaskStatus.OPEN,
                    priority=TaskPriority.MEDIUM,
                    due_date=_end_of_day(end_date),
                    assignee_id=reviewer_id,
                    control_id=control.id,
                    audit_run_id=run.id,
                    created_by=tenant.user_id,
                    meta={"auditPhase": "EXECUTION"},
                )
            )

        await record_run_activity(
            self._run_activity_repo,
            tenant,
            run.id,
            AuditActivityType.CREATED,
            "audit_run",
            run.id,
            new_value={"name": run.name, "control_count": len(controls)},
        )
        await self._track(
            tenant,
            "compliance.audit_run.created",
            "audit_run",
            run.id,
            "create",
            {"name": run.name, "control_count": len(controls)},
            correlation_id,
        )
        logger.info(
            "Audit run created",
            tenant_id=str(tenant.tenant_id),
            audit_run_id=str(run.id),
            control_count=len(controls),
        )
        return run

    async def list_audit_runs(
        self,
        tenant: TenantContext,
        status: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        require_audit_permission(tenant)
        filters = [AuditRun.status == status] if status else []
        runs, total = await self._run_repo.list_page(tenant.tenant_id, filters, page, page_size)
        return to_page(runs, total, page, page_size)

    async def get_audit_run(self, run_id: uuid.UUID, tenant: TenantContext) -> AuditRun:
        require_audit_permission(tenant)
        return await self._run_repo.get_by_id(run_id, tenant.tenant_id)

    async def list_audit_controls(self, run_id: uuid.UUID, tenant: TenantContext) -> list[AuditControl]:
        require_audit_permission(tenant)
        await self._run_repo.get_by_id(run_id, tenant.tenant_id)
        return await self._audit_control_repo.list_for_run(tenant.tenant_id, run_id)

    async def update_audit_run(
        self,
        run_id: uuid.UUID,
        tenant: TenantContext,
        changes: dict[str, Any],
        correlation_id: str | None = None,
    ) -> AuditRun:
        """Update run metadata (never status; use transition_status).

        Raises:
            AuthorizationError: If the caller is neither the creator nor a super admin.
            ValidationError: If the run is locked, or a field or date range is invalid.
        """
        run = await self._run_repo.get_by_id(run_id, tenant.tenant_id)
        self._require_modify(tenant, run)
        self._ensure_unlocked(run)

        unknown = set(changes) - _RUN_UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                message=f"Fields not updatable: {', '.join(sorted(unknown))}", field=sorted(unknown)[0]
            )
        reject_nulls(changes, _RUN_NON_NULLABLE_FIELDS)
        if "name" in changes and not changes["name"].strip():
            raise ValidationError(message="Audit run name is required", field="name")
        if "audit_type" in changes and changes["audit_type"] not in AuditType.__members__:
            raise ValidationError(message=f"Invalid audit type '{changes['audit_type']}'", field="audit_type")

        old_value = {field: str(getattr(run, field)) for field in changes}
        for field, value in changes.items():
            setattr(run, field, value)
        if run.end_date < run.start_date:
            raise ValidationError(message="end_date must be on or after start_date", field="end_date")
        run = await self._run_repo.save(run)

        new_value = {field: str(value) for field, value in changes.items()}
        await record_run_activity(
            self._run_activity_repo,
            tenant,
            run.id,
            AuditActivityType.UPDATED,
            "audit_run",
            run.id,
            old_value,
            new_value,
        )
        await self._track(
            tenant, "compliance.audit_run.updated", "audit_run", run.id, "update", new_value, correlation_id
        )
        return run

    async def delete_audit_run(
        self, run_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> None:
        run = await self._run_repo.get_by_id(run_id, tenant.tenant_id)
        self._require_modify(tenant, run)
        if run.status == AuditRunStatus.LOCKED:
            raise ValidationError(message="Cannot delete a locked audit run", field="status")
        await self._run_repo.delete(run)
        await self._track(
            tenant, "compliance.audit_run.deleted", "audit_run", run_id, "delete", {"name": run.name}, correlation_id
        )
        logger.info("Audit run deleted", tenant_id=str(tenant.tenant_id), audit_run_id=str(run_id))

    async def transition_status(
        self,
        run_id: uuid.UUID,
        tenant: TenantContext,
        new_status: str,
        correlation_id: str | None = None,
    ) -> AuditRun:
        """Move a run along the state machine.

        Locking runs as a conditional UPDATE ... WHERE status = 'COMPLETED'.
        When that UPDATE matches no row another request changed the run first.

        Raises:
            ValidationError: On an unknown status or a disallowed transition.
            ConflictError: If the run was no longer COMPLETED when the lock was applied.
        """
        if new_status not in AuditRunStatus.__members__:
            raise ValidationError(message=f"Invalid audit run status '{new_status}'", field="status")

        run = await self._run_repo.get_by_id(run_id, tenant.tenant_id)
        self._require_modify(tenant, run)
        old_status = run.status
        if new_status not in AUDIT_RUN_TRANSITIONS[old_status]:
            raise ValidationError(
                message=f"Cannot move audit run from {old_status} to {new_status}",
                field="status",
            )

        if new_status == AuditRunStatus.LOCKED:
            locked = await self._run_repo.lock_if_completed(run.id, tenant.tenant_id, tenant.user_id, utcnow())
            if not locked:
                raise ConflictError(message="Audit run changed status before it could be locked")
            run = await self._run_repo.get_by_id(run_id, tenant.tenant_id)
            activity_type = AuditActivityType.LOCKED
            event_type = "compliance.audit_run.locked"
        else:
            run.status = new_status
            run = await self._run_repo.save(run)
            activity_type = AuditActivityType.STATUS_CHANGED
            event_type = "compliance.audit_run.status_changed"

        await record_run_activity(
            self._run_activity_repo,
            tenant,
            run.id,
            activity_type,
            "audit_run",
            run.id,
            {"status": old_status},
            {"status": new_status},
        )
        await self._track(
            tenant,
            event_type,
            "audit_run",
            run.id,
            "transition",
            {"from_status": old_status, "to_status": new_status},
            correlation_id,
        )
        logger.info(
            "Audit run status changed",
            tenant_id=str(tenant.tenant_id),
            audit_run_id=str(run.id),
            from_status=old_status,
            to_status=new_status,
        )
        return run

    # ------------------------------------------------------------------
    # Audit control review
    # ------------------------------------------------------------------

    async def _load_control_and_run(
        self, audit_control_id: uuid.UUID, tenant: TenantContext
    ) -> tuple[AuditControl, AuditRun]:
        audit_control = await self._audit_control_repo.get_by_id(audit_control_id, tenant.tenant_id)
        run = await self._run_repo.get_by_id(audit_control.audit_run_id, tenant.tenant_id)
        self._ensure_unlocked(run)
        return audit_control, run

    async def review_control(
        self,
        audit_control_id: uuid.UUID,
        tenant: TenantContext,
        status: str,
        notes: str | None = None,
        evidence_ids: list[uuid.UUID] | None = None,
        correlation_id: str | None = None,
    ) -> AuditControl:
        """Record a reviewer's assessment of one audit control.

        Submitting (status SUBMITTED) stamps submitted_at and completes the
        run's open EVIDENCE_COLLECTION tasks for the control. When
        `evidence_ids` is given it replaces the presented evidence.

        Raises:
            AuthorizationError: If the caller is not the reviewer or approver.
            ValidationError: On a locked run or a status reserved for approval.
        """
        if status not in _REVIEWABLE_STATUSES:
            raise ValidationError(message=f"Reviewers cannot set status '{status}'", field="status")

        audit_control, run = await self._load_control_and_run(audit_control_id, tenant)
        if not (tenant.is_super_admin or tenant.user_id in (audit_control.reviewer_id, audit_control.approver_id)):
            raise AuthorizationError("Only the assigned reviewer or approver can review this control")

        now = utcnow()
        old_status = audit_control.status
        audit_control.status = status
        audit_control.notes = notes
        if status == AuditControlStatus.SUBMITTED:
            audit_control.submitted_at = now
        audit_control = await self._audit_control_repo.save(audit_control)

        if evidence_ids is not None:
            await self._audit_control_repo.replace_evidence_links(
                tenant.tenant_id, audit_control, list(dict.fromkeys(evidence_ids)), tenant.user_id
            )

        if status == AuditControlStatus.SUBMITTED:
            await self._task_repo.complete_open_tasks(
                tenant.tenant_id,
                audit_control.control_id,
                [TaskType.EVIDENCE_COLLECTION],
                now,
                audit_run_id=run.id,
            )

        await record_run_activity(
            self._run_activity_repo,
            tenant,
            run.id,
            AuditActivityType.REVIEWED,
            "audit_control",
            audit_control.id,
            {"status": old_status},
            {"status": status, "notes": notes},
        )
        await self._track(
            tenant,
            "compliance.audit_control.reviewed",
            "audit_control",
            audit_control.id,
            "review",
            {"audit_run_id": str(run.id), "from_status": old_status, "to_status": status},
            correlation_id,
        )
        return audit_control

    async def approve_control(
        self,
        audit_control_id: uuid.UUID,
        tenant: TenantContext,
        approve: bool,
        rejection_reason: str | None = None,
        correlation_id: str | None = None,
    ) -> AuditControl:
        """Approve (-> MET) or reject (-> GAP) a SUBMITTED audit control.

        Raises:
            AuthorizationError: If the caller is not the approver.
            ValidationError: If the control is not SUBMITTED, the run is
                locked, or a rejection has no reason.
        """
        audit_control, run = await self._load_control_and_run(audit_control_id, tenant)
        if not (tenant.is_super_admin or audit_control.approver_id == tenant.user_id):
            raise AuthorizationError("Only the assigned approver can approve this control")
        if audit_control.status != AuditControlStatus.SUBMITTED:
            raise ValidationError(message="Only SUBMITTED controls can be approved or rejected", field="status")
        if not approve and not (rejection_reason and rejection_reason.strip()):
            raise ValidationError(message="A rejection reason is required", field="rejection_reason")

        old_status = audit_control.status
        if approve:
            audit_control.status = AuditControlStatus.MET
            audit_control.approved_at = utcnow()
            audit_control.rejection_reason = None
            activity_type, action = AuditActivityType.APPROVED, "approve"
        else:
            audit_control.status = AuditControlStatus.GAP
            audit_control.rejection_reason = rejection_reason
            activity_type, action = AuditActivityType.REJECTED, "reject"
        audit_control = await self._audit_control_repo.save(audit_control)

        await record_run_activity(
            self._run_activity_repo,
            tenant,
            run.id,
            activity_type,
            "audit_control",
            audit_control.id,
            {"status": old_status},
            {"status": audit_control.status, "rejection_reason": audit_control.rejection_reason},
        )
        await self._track(
            tenant,
            f"compliance.audit_control.{action}d",
            "audit_control",
            audit_control.id,
            action,
            {"audit_run_id": str(run.id), "status": audit_control.status},
            correlation_id,
        )
        return audit_control

    # ------------------------------------------------------------------
    # Findings
    # ------------------------------------------------------------------

    async def create_finding(
        self,
        run_id: uuid.UUID,
        tenant: TenantContext,
        title: str,
        severity: str,
        description: str | None = None,
        audit_control_id: uuid.UUID | None = None,
        control_id: uuid.UUID | None = None,
        owner_id: uuid.UUID | None = None,
        due_date: datetime | None = None,
        remediation_plan: str | None = None,
        correlation_id: str | None = None,
    ) -> AuditFinding:
        require_audit_permission(tenant)
        if not title or not title.strip():
            raise ValidationError(message="Finding title is required", field="title")
        if severity not in FindingSeverity.__members__:
            raise ValidationError(message=f"Invalid finding severity '{severity}'", field="severity")

        run = await self._run_repo.get_by_id(run_id, tenant.tenant_id)
        self._ensure_unlocked(run)
        if audit_control_id is not None:
            audit_control = await self._audit_control_repo.get_by_id(audit_control_id, tenant.tenant_id)
            if audit_control.audit_run_id != run.id:
                raise ValidationError(message="Audit control belongs to another audit run", field="audit_control_id")
            control_id = control_id or audit_control.control_id

        finding = await self._finding_repo.add(
            AuditFinding(
                tenant_id=tenant.tenant_id,
                audit_run_id=run.id,
                audit_control_id=audit_control_id,
                control_id=control_id,
                title=title.strip(),
                description=description,
                severity=severity,
                severity_rank=FINDING_SEVERITY_RANK[severity],
                status=FindingStatus.OPEN,
                owner_id=owner_id,
                due_date=due_date,
                remediation_plan=remediation_plan,
                created_by=tenant.user_id,
            )
        )
        await record_run_activity(
            self._run_activity_repo,
            tenant,
            run.id,
            AuditActivityType.FINDING_CREATED,
            "audit_finding",
            finding.id,
            new_value={"title": finding.title, "severity": severity},
        )
        await self._track(
            tenant,
            "compliance.audit_finding.created",
            "audit_finding",
            finding.id,
            "create",
            {"audit_run_id": str(run.id), "severity": severity},
            correlation_id,
        )
        return finding

    async def list_findings(
        self,
        tenant: TenantContext,
        audit_run_id: uuid.UUID | None = None,
        severity: str | None = None,
        status: str | None = None,
        owner_id: uuid.UUID | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        """Findings ordered by severity (CRITICAL first), then newest first."""
        require_audit_permission(tenant)
        filters: list[Any] = []
        if audit_run_id is not None:
            filters.append(AuditFinding.audit_run_id == audit_run_id)
        if severity:
            filters.append(AuditFinding.severity == severity)
        if status:
            filters.append(AuditFinding.status == status)
        if owner_id is not None:
            filters.append(AuditFinding.owner_id == owner_id)
        findings, total = await self._finding_repo.list_page(
            tenant.tenant_id,
            filters,
            page,
            page_size,
            order_by=[AuditFinding.severity_rank.desc(), AuditFinding.created_at.desc()],
        )
        return to_page(findings, total, page, page_size)

    async def update_finding(
        self,
        finding_id: uuid.UUID,
        tenant: TenantContext,
        changes: dict[str, Any],
        correlation_id: str | None = None,
    ) -> AuditFinding:
        require_audit_permission(tenant)
        unknown = set(changes) - _FINDING_UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                message=f"Fields not updatable: {', '.join(sorted(unknown))}", field=sorted(unknown)[0]
            )
        reject_nulls(changes, _FINDING_NON_NULLABLE_FIELDS)
        if "title" in changes and not changes["title"].strip():
            raise ValidationError(message="Finding title is required", field="title")
        if "severity" in changes and changes["severity"] not in FindingSeverity.__members__:
            raise ValidationError(message=f"Invalid finding severity '{changes['severity']}'", field="severity")
        if "status" in changes and changes["status"] not in FindingStatus.__members__:
            raise ValidationError(message=f"Invalid finding status '{changes['status']}'", field="status")

        finding = await self._finding_repo.get_by_id(finding_id, tenant.tenant_id)
        run = await self._run_repo.get_by_id(finding.audit_run_id, tenant.tenant_id)
        self._ensure_unlocked(run)

        for field, value in changes.items():
            setattr(finding, field, value)
        if "severity" in changes:
            finding.severity_rank = FINDING_SEVERITY_RANK[changes["severity"]]
        if changes.get("status") == FindingStatus.RESOLVED:
            finding.resolved_at = utcnow()
        finding = await self._finding_repo.save(finding)

        await self._track(
            tenant,
            "compliance.audit_finding.updated",
            "audit_finding",
            finding.id,
            "update",
            {key: str(value) for key, value in changes.items()},
            correlation_id,
        )
        return finding

    # ------------------------------------------------------------------
    # Activity log and analytics
    # ------------------------------------------------------------------

    async def list_activities(
        self,
        run_id: uuid.UUID,
        tenant: TenantContext,
        page: int = 1,
        page_size: int = 50,
    ) -> dict[str, Any]:
        require_audit_permission(tenant)
        await self._run_repo.get_by_id(run_id, tenant.tenant_id)
        entries, total = await self._run_activity_repo.list_page(
            tenant.tenant_id,
            [AuditRunActivity.audit_run_id == run_id],
            page,
            page_size,
        )
        return to_page(entries, total, page, page_size)

    async def audit_analytics(self, tenant: TenantContext) -> dict[str, Any]:
        """Runs, controls and findings broken down by status and severity.

        completion_rate = (MET + NOT_APPLICABLE) / all audit controls x 100.
        """
        require_audit_permission(tenant)
        runs_by_status = await self._run_repo.count_by(tenant.tenant_id, AuditRun.status)
        controls_by_status = await self._audit_control_repo.count_by(tenant.tenant_id, AuditControl.status)
        findings_by_severity = await self._finding_repo.count_by(tenant.tenant_id, AuditFinding.severity)
        findings_by_status = await self._finding_repo.count_by(tenant.tenant_id, AuditFinding.status)

        total_controls = sum(controls_by_status.values())
        done = controls_by_status.get(AuditControlStatus.MET, 0) + controls_by_status.get(
            AuditControlStatus.NOT_APPLICABLE, 0
        )
        completion_rate = round(done / total_controls * 100, 2) if total_controls else 0.0
        return {
            "total_runs": sum(runs_by_status.values()),
            "runs_by_status": runs_by_status,
            "total_controls": total_controls,
            "controls_by_status": controls_by_status,
            "total_findings": sum(findings_by_severity.values()),
            "findings_by_severity": findings_by_severity,
            "findings_by_status": findings_by_status,
            "completion_rate": completion_rate,
        }

    async def get_finding(self, finding_id: uuid.UUID, tenant: TenantContext) -> AuditFinding:
        require_audit_permission(tenant)
        finding = await self._finding_repo.find_by_id(finding_id, tenant.tenant_id)
        if finding is None:
            raise NotFoundError(resource="AuditFinding", resource_id=str(finding_id))
        return finding
