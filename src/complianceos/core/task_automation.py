"""Rule-driven task generation.

TaskAutomationEngine scans the tenant's evidence and controls and opens the
follow-up tasks a compliance team would otherwise track by hand. Rules are a
static table; each rule knows its task type, priority and due offset.

A task is never duplicated: if an OPEN or IN_PROGRESS task of the same type
already exists for the same control/evidence pair, the rule skips it.
Generated tasks have created_by = None (system).
"""

import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from complianceos.common.auth import TenantContext
from complianceos.common.observability import get_logger
from complianceos.core.interfaces import IEventPublisher
from complianceos.core.models import (
    Control,
    ControlStatus,
    Criticality,
    Evidence,
    Task,
    TaskPriority,
    TaskStatus,
    TaskType,
)
from complianceos.core.services import SYSTEM_ACTOR_ID, ActivityService, TrackedService, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class AutomationRule:
    """How one task type is generated.

    Attributes:
        task_type: TaskType produced by the rule.
        priority: TaskPriority of generated tasks.
        due_in_days: Due date offset from generation time.
        description: Human-readable trigger description.
    """

    task_type: str
    priority: str
    due_in_days: int
    description: str


AUTOMATION_RULES: dict[str, AutomationRule] = {
    TaskType.EVIDENCE_RENEWAL: AutomationRule(
        TaskType.EVIDENCE_RENEWAL, TaskPriority.HIGH, 30, "Approved or submitted evidence expiring within 90 days"
    ),
    TaskType.CONTROL_REVIEW: AutomationRule(
        TaskType.CONTROL_REVIEW, TaskPriority.MEDIUM, 90, "Control review date reached, or no review in 365 days"
    ),
    TaskType.EVIDENCE_COLLECTION: AutomationRule(
        TaskType.EVIDENCE_COLLECTION, TaskPriority.HIGH, 7, "Control has a GAP and needs evidence"
    ),
    TaskType.GAP_REMEDIATION: AutomationRule(
        TaskType.GAP_REMEDIATION, TaskPriority.HIGH, 14, "High or critical control has a GAP"
    ),
}

EXPIRY_WINDOW_DAYS = 90
STALE_CONTROL_DAYS = 365

_HIGH_CRITICALITY: frozenset[str] = frozenset({Criticality.HIGH, Criticality.CRITICAL})


class TaskAutomationEngine(TrackedService):
    """Generates compliance tasks from the automation rules.

    Args:
        task_repo: TaskRepository.
        evidence_repo: EvidenceRepository.
        control_repo: ControlRepository.
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(
        self,
        task_repo: Any,
        evidence_repo: Any,
        control_repo: Any,
        activity: ActivityService,
        event_publisher: IEventPublisher,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._task_repo = task_repo
        self._evidence_repo = evidence_repo
        self._control_repo = control_repo

    async def generate_all_tasks(self, tenant: TenantContext) -> dict[str, int]:
        """Run every rule for the tenant.

        Returns:
            Number of tasks created per task type, plus "total".
        """
        counts = {
            TaskType.EVIDENCE_RENEWAL: await self.generate_evidence_renewal_tasks(tenant),
            TaskType.CONTROL_REVIEW: await self.generate_control_review_tasks(tenant),
            TaskType.EVIDENCE_COLLECTION: await self.generate_evidence_collection_tasks(tenant),
            TaskType.GAP_REMEDIATION: await self.generate_gap_remediation_tasks(tenant),
        }
        result: dict[str, int] = {str(task_type): count for task_type, count in counts.items()}
        result["total"] = sum(counts.values())
        logger.info("Task automation run complete", tenant_id=str(tenant.tenant_id), **result)
        return result

    async def generate_evidence_renewal_tasks(self, tenant: TenantContext) -> int:
        """One renewal task per linked control for each expiring evidence item.

        Evidence with no linked controls gets a single evidence-level task.
        """
        now = utcnow()
        expiring: list[Evidence] = await self._evidence_repo.list_expiring(
            tenant.tenant_id, now, now + timedelta(days=EXPIRY_WINDOW_DAYS)
        )
        created = 0
        for evidence in expiring:
            control_ids = await self._evidence_repo.linked_control_ids(tenant.tenant_id, evidence.id)
            targets: list[uuid.UUID | None] = list(control_ids) or [None]
            for control_id in targets:
                task = await self._create_if_absent(
                    tenant,
                    TaskType.EVIDENCE_RENEWAL,
                    title=f"Renew evidence: {evidence.title}",
                    description=f"Evidence expires on {evidence.expiry_date.date().isoformat()}"
                    if evidence.expiry_date
                    else None,
                    control_id=control_id,
                    evidence_id=evidence.id,
                )
                created += task is not None
        return created

    async def generate_control_review_tasks(self, tenant: TenantContext) -> int:
        now = utcnow()
        controls: list[Control] = await self._control_repo.list_due_for_review(
            tenant.tenant_id, now, now - timedelta(days=STALE_CONTROL_DAYS)
        )
        created = 0
        for control in controls:
            task = await self._create_if_absent(
                tenant,
                TaskType.CONTROL_REVIEW,
                title=f"Review control {control.code}: {control.name}",
                control_id=control.id,
            )
            created += task is not None
        return created

    async def generate_evidence_collection_tasks(self, tenant: TenantContext) -> int:
        gaps: list[Control] = await self._control_repo.list_where(
            tenant.tenant_id, [Control.status == ControlStatus.GAP]
        )
        created = 0
        for control in gaps:
            task = await self._create_if_absent(
                tenant,
                TaskType.EVIDENCE_COLLECTION,
                title=f"Collect evidence for {control.code}",
                control_id=control.id,
            )
            created += task is not None
        return created

    async def generate_gap_remediation_tasks(self, tenant: TenantContext) -> int:
        gaps: list[Control] = await self._control_repo.list_where(
            tenant.tenant_id,
            [Control.status == ControlStatus.GAP, Control.criticality.in_(sorted(_HIGH_CRITICALITY))],
        )
        created = 0
        for control in gaps:
            task = await self._create_if_absent(
                tenant,
                TaskType.GAP_REMEDIATION,
                title=f"Remediate gap in {control.code}: {control.name}",
                control_id=control.id,
            )
            created += task is not None
        return created

    async def _create_if_absent(
        self,
        tenant: TenantContext,
        task_type: str,
        title: str,
        description: str | None = None,
        control_id: uuid.UUID | None = None,
        evidence_id: uuid.UUID | None = None,
    ) -> Task | None:
        if await self._task_repo.open_task_exists(tenant.tenant_id, task_type, control_id, evidence_id):
            return None

        rule = AUTOMATION_RULES[task_type]
        task = await self._task_repo.add(
            Task(
                tenant_id=tenant.tenant_id,
                title=title,
                description=description or rule.description,
                task_type=task_type,
                status=TaskStatus.OPEN,
                priority=rule.priority,
                due_date=utcnow() + timedelta(days=rule.due_in_days),
                control_id=control_id,
                evidence_id=evidence_id,
                created_by=None,
                meta={"automated": True, "rule": task_type},
            )
        )
        await self._track(
            tenant,
            "compliance.task.generated",
            "task",
            task.id,
            "generate",
            {"task_type": task_type, "control_id": str(control_id) if control_id else None},
            actor_id=SYSTEM_ACTOR_ID,
        )
        return task
