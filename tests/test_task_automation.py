"""Tests for rule-driven task generation."""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.dialects import postgresql

from complianceos.common.auth import TenantContext
from complianceos.core.models import TaskPriority, TaskStatus, TaskType
from complianceos.core.services import SYSTEM_ACTOR_ID, ActivityService
from complianceos.core.task_automation import AUTOMATION_RULES, STALE_CONTROL_DAYS, TaskAutomationEngine
from tests.conftest import event_types, make_fake_control, make_fake_evidence, make_repo


def _engine(
    activity_service: ActivityService,
    publisher: AsyncMock,
    task_repo: AsyncMock | None = None,
    evidence_repo: AsyncMock | None = None,
    control_repo: AsyncMock | None = None,
) -> TaskAutomationEngine:
    if task_repo is None:
        task_repo = make_repo()
        task_repo.open_task_exists.return_value = False
    if evidence_repo is None:
        evidence_repo = make_repo()
        evidence_repo.list_expiring.return_value = []
    if control_repo is None:
        control_repo = make_repo()
        control_repo.list_due_for_review.return_value = []
    return TaskAutomationEngine(
        task_repo=task_repo,
        evidence_repo=evidence_repo,
        control_repo=control_repo,
        activity=activity_service,
        event_publisher=publisher,
    )


class TestAutomationRules:
    def test_every_generated_type_has_a_rule(self) -> None:
        assert set(AUTOMATION_RULES) == {
            TaskType.EVIDENCE_RENEWAL,
            TaskType.CONTROL_REVIEW,
            TaskType.EVIDENCE_COLLECTION,
            TaskType.GAP_REMEDIATION,
        }

    def test_gap_remediation_is_high_priority(self) -> None:
        assert AUTOMATION_RULES[TaskType.GAP_REMEDIATION].priority == TaskPriority.HIGH
        assert AUTOMATION_RULES[TaskType.GAP_REMEDIATION].due_in_days == 14


class TestEvidenceRenewal:
    @pytest.mark.asyncio()
    async def test_one_task_per_linked_control(
        self, mock_tenant: TenantContext, activity_service: ActivityService, mock_event_publisher: AsyncMock
    ) -> None:
        evidence = make_fake_evidence(mock_tenant.tenant_id, expiry_date=datetime.now(UTC) + timedelta(days=20))
        evidence_repo = make_repo()
        evidence_repo.list_expiring.return_value = [evidence]
        evidence_repo.linked_control_ids.return_value = [uuid.uuid4(), uuid.uuid4()]
        task_repo = make_repo()
        task_repo.open_task_exists.return_value = False
        engine = _engine(activity_service, mock_event_publisher, task_repo=task_repo, evidence_repo=evidence_repo)

        created = await engine.generate_evidence_renewal_tasks(mock_tenant)

        assert created == 2
        task = task_repo.add.call_args_list[0].args[0]
        assert task.task_type == TaskType.EVIDENCE_RENEWAL
        assert task.status == TaskStatus.OPEN
        assert task.evidence_id == evidence.id
        assert task.created_by is None
        assert task.meta == {"automated": True, "rule": TaskType.EVIDENCE_RENEWAL}

    @pytest.mark.asyncio()
    async def test_unlinked_evidence_gets_single_task(
        self, mock_tenant: TenantContext, activity_service: ActivityService, mock_event_publisher: AsyncMock
    ) -> None:
        evidence = make_fake_evidence(mock_tenant.tenant_id, expiry_date=datetime.now(UTC) + timedelta(days=5))
        evidence_repo = make_repo()
        evidence_repo.list_expiring.return_value = [evidence]
        evidence_repo.linked_control_ids.return_value = []
        task_repo = make_repo()
        task_repo.open_task_exists.return_value = False
        engine = _engine(activity_service, mock_event_publisher, task_repo=task_repo, evidence_repo=evidence_repo)

        created = await engine.generate_evidence_renewal_tasks(mock_tenant)

        assert created == 1
        task = task_repo.add.call_args.args[0]
        assert task.control_id is None
        assert "expires on" in task.description


class TestControlReview:
    @pytest.mark.asyncio()
    async def test_due_controls_get_review_tasks(
        self, mock_tenant: TenantContext, activity_service: ActivityService, mock_event_publisher: AsyncMock
    ) -> None:
        control = make_fake_control(mock_tenant.tenant_id, code="A.9.2")
        control_repo = make_repo()
        control_repo.list_due_for_review.return_value = [control]
        task_repo = make_repo()
        task_repo.open_task_exists.return_value = False
        engine = _engine(activity_service, mock_event_publisher, task_repo=task_repo, control_repo=control_repo)

        created = await engine.generate_control_review_tasks(mock_tenant)

        assert created == 1
        task = task_repo.add.call_args.args[0]
        assert task.task_type == TaskType.CONTROL_REVIEW
        assert task.priority == TaskPriority.MEDIUM
        assert task.control_id == control.id
        assert task.title == "Review control A.9.2: Control A.9.2"
        due_in = task.due_date - datetime.now(UTC)
        assert timedelta(days=89) < due_in <= timedelta(days=90)

    @pytest.mark.asyncio()
    async def test_staleness_window_is_one_year(
        self, mock_tenant: TenantContext, activity_service: ActivityService, mock_event_publisher: AsyncMock
    ) -> None:
        control_repo = make_repo()
        control_repo.list_due_for_review.return_value = []
        engine = _engine(activity_service, mock_event_publisher, control_repo=control_repo)

        assert await engine.generate_control_review_tasks(mock_tenant) == 0

        tenant_id, now, stale_before = control_repo.list_due_for_review.call_args.args
        assert tenant_id == mock_tenant.tenant_id
        assert now - stale_before == timedelta(days=STALE_CONTROL_DAYS)


class TestGapRemediation:
    @pytest.mark.asyncio()
    async def test_only_high_and_critical_gaps_are_queried(
        self, mock_tenant: TenantContext, activity_service: ActivityService, mock_event_publisher: AsyncMock
    ) -> None:
        control_repo = make_repo()
        control_repo.list_where.return_value = []
        engine = _engine(activity_service, mock_event_publisher, control_repo=control_repo)

        await engine.generate_gap_remediation_tasks(mock_tenant)

        filters = [
            str(clause.compile(dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True}))
            for clause in control_repo.list_where.call_args.args[1]
        ]
        assert "cos_controls.status = 'GAP'" in filters
        assert "cos_controls.criticality IN ('CRITICAL', 'HIGH')" in filters
        assert not any("MEDIUM" in f or "LOW" in f for f in filters)

    @pytest.mark.asyncio()
    async def test_critical_gap_gets_high_priority_task(
        self, mock_tenant: TenantContext, activity_service: ActivityService, mock_event_publisher: AsyncMock
    ) -> None:
        control = make_fake_control(mock_tenant.tenant_id, status="GAP", criticality="CRITICAL")
        control_repo = make_repo()
        control_repo.list_where.return_value = [control]
        task_repo = make_repo()
        task_repo.open_task_exists.return_value = False
        engine = _engine(activity_service, mock_event_publisher, task_repo=task_repo, control_repo=control_repo)

        assert await engine.generate_gap_remediation_tasks(mock_tenant) == 1

        task = task_repo.add.call_args.args[0]
        assert task.task_type == TaskType.GAP_REMEDIATION
        assert task.priority == TaskPriority.HIGH
        assert task.control_id == control.id


class TestDeduplication:
    @pytest.mark.asyncio()
    async def test_existing_open_task_is_not_duplicated(
        self, mock_tenant: TenantContext, activity_service: ActivityService, mock_event_publisher: AsyncMock
    ) -> None:
        control_repo = make_repo()
        control_repo.list_due_for_review.return_value = []
        control_repo.list_where.return_value = [make_fake_control(mock_tenant.tenant_id, status="GAP")]
        task_repo = make_repo()
        task_repo.open_task_exists.return_value = True
        engine = _engine(activity_service, mock_event_publisher, task_repo=task_repo, control_repo=control_repo)

        created = await engine.generate_evidence_collection_tasks(mock_tenant)

        assert created == 0
        task_repo.add.assert_not_called()
        assert mock_event_publisher.publish_event.call_count == 0


class TestGenerateAll:
    @pytest.mark.asyncio()
    async def test_counts_per_rule_and_total(
        self, mock_tenant: TenantContext, activity_service: ActivityService, mock_event_publisher: AsyncMock
    ) -> None:
        stale = make_fake_control(mock_tenant.tenant_id, code="A.5.1")
        gap_medium = make_fake_control(mock_tenant.tenant_id, code="A.8.2", status="GAP")
        gap_critical = make_fake_control(mock_tenant.tenant_id, code="A.8.3", status="GAP", criticality="CRITICAL")
        control_repo = make_repo()
        control_repo.list_due_for_review.return_value = [stale]
        # evidence collection sees every gap, remediation only the critical one
        control_repo.list_where.side_effect = [[gap_medium, gap_critical], [gap_critical]]
        engine = _engine(activity_service, mock_event_publisher, control_repo=control_repo)

        result = await engine.generate_all_tasks(mock_tenant)

        assert result == {
            "EVIDENCE_RENEWAL": 0,
            "CONTROL_REVIEW": 1,
            "EVIDENCE_COLLECTION": 2,
            "GAP_REMEDIATION": 1,
            "total": 4,
        }
        assert event_types(mock_event_publisher) == ["compliance.task.generated"] * 4

    @pytest.mark.asyncio()
    async def test_generated_task_is_attributed_to_system(
        self,
        mock_tenant: TenantContext,
        activity_service: ActivityService,
        mock_activity_repo: AsyncMock,
        mock_event_publisher: AsyncMock,
    ) -> None:
        control_repo = make_repo()
        control_repo.list_due_for_review.return_value = [make_fake_control(mock_tenant.tenant_id)]
        engine = _engine(activity_service, mock_event_publisher, control_repo=control_repo)

        await engine.generate_control_review_tasks(mock_tenant)

        entry = mock_activity_repo.append.call_args.kwargs
        assert entry["actor_id"] == SYSTEM_ACTOR_ID
