"""Tests for audit runs, control review, findings and evidence packages."""

import csv
import hashlib
import io
import json
import uuid
from datetime import UTC, date, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from complianceos.audits.packager import AuditPackager, canonical_json
from complianceos.audits.service import AUDIT_RUN_TRANSITIONS, AuditService
from complianceos.common.auth import OrgRole, PlatformRole, TenantContext
from complianceos.common.errors import AuthorizationError, ConflictError, ValidationError
from complianceos.core.models import (
    AuditActivityType,
    AuditControlStatus,
    AuditRunStatus,
    FindingStatus,
    TaskType,
)
from complianceos.core.services import ActivityService
from tests.conftest import event_types, make_fake_control, make_repo


def make_fake_run(tenant_id: uuid.UUID, created_by: uuid.UUID, status: str = AuditRunStatus.DRAFT) -> MagicMock:
    run = MagicMock()
    run.id = uuid.uuid4()
    run.tenant_id = tenant_id
    run.name = "SOC 2 FY24"
    run.description = None
    run.framework_id = None
    run.audit_type = "EXTERNAL"
    run.status = status
    run.start_date = date(2024, 1, 1)
    run.end_date = date(2024, 12, 31)
    run.created_by = created_by
    return run


def make_fake_audit_control(
    run_id: uuid.UUID,
    status: str = AuditControlStatus.NOT_STARTED,
    reviewer_id: uuid.UUID | None = None,
    approver_id: uuid.UUID | None = None,
) -> MagicMock:
    audit_control = MagicMock()
    audit_control.id = uuid.uuid4()
    audit_control.audit_run_id = run_id
    audit_control.control_id = uuid.uuid4()
    audit_control.status = status
    audit_control.reviewer_id = reviewer_id
    audit_control.approver_id = approver_id
    audit_control.notes = None
    audit_control.submitted_at = None
    audit_control.approved_at = None
    audit_control.rejection_reason = None
    return audit_control


def make_fake_finding(run_id: uuid.UUID, severity: str = "HIGH", status: str = FindingStatus.OPEN) -> MagicMock:
    finding = MagicMock()
    finding.id = uuid.uuid4()
    finding.audit_run_id = run_id
    finding.audit_control_id = None
    finding.control_id = None
    finding.title = "Stale access reviews"
    finding.severity = severity
    finding.status = status
    finding.owner_id = None
    finding.due_date = None
    finding.remediation_plan = None
    finding.resolved_at = None
    return finding


class AuditHarness:
    """AuditService wired to mock repositories."""

    def __init__(self, activity: ActivityService, publisher: AsyncMock) -> None:
        self.run_repo = make_repo()
        self.audit_control_repo = make_repo()
        self.finding_repo = make_repo()
        self.run_activity_repo = make_repo()
        self.control_repo = make_repo()
        self.task_repo = make_repo()
        self.service = AuditService(
            run_repo=self.run_repo,
            audit_control_repo=self.audit_control_repo,
            finding_repo=self.finding_repo,
            run_activity_repo=self.run_activity_repo,
            control_repo=self.control_repo,
            task_repo=self.task_repo,
            activity=activity,
            event_publisher=publisher,
        )

    def run_activity_types(self) -> list[str]:
        return [c.args[0].activity_type for c in self.run_activity_repo.add.call_args_list]


@pytest.fixture()
def harness(activity_service: ActivityService, mock_event_publisher: AsyncMock) -> AuditHarness:
    return AuditHarness(activity_service, mock_event_publisher)


class TestTransitions:
    def test_locked_is_terminal(self) -> None:
        assert AUDIT_RUN_TRANSITIONS[AuditRunStatus.LOCKED] == frozenset()

    def test_every_status_has_an_entry(self) -> None:
        assert set(AUDIT_RUN_TRANSITIONS) == set(AuditRunStatus)


class TestAuditRuns:
    @pytest.mark.asyncio()
    async def test_create_requires_audit_permission(self, harness: AuditHarness, mock_tenant: TenantContext) -> None:
        with pytest.raises(AuthorizationError):
            await harness.service.create_audit_run(
                mock_tenant, "FY24", date(2024, 1, 1), date(2024, 12, 31), control_ids=[]
            )

    @pytest.mark.asyncio()
    async def test_create_with_controls(
        self, harness: AuditHarness, auditor_tenant: TenantContext, mock_event_publisher: AsyncMock
    ) -> None:
        reviewer = uuid.uuid4()
        controls = [make_fake_control(auditor_tenant.tenant_id, code=c) for c in ("CC6.1", "CC6.2")]
        harness.control_repo.list_by_ids.return_value = controls

        run = await harness.service.create_audit_run(
            auditor_tenant,
            "  FY24 SOC 2  ",
            date(2024, 1, 1),
            date(2024, 12, 31),
            control_ids=[controls[0].id, controls[1].id, controls[0].id],
            assignments={controls[0].id: {"reviewer_id": reviewer}},
        )

        assert run.name == "FY24 SOC 2"
        assert run.status == AuditRunStatus.DRAFT
        assert harness.audit_control_repo.add.call_count == 2
        first = harness.audit_control_repo.add.call_args_list[0].args[0]
        assert first.reviewer_id == reviewer
        task = harness.task_repo.add.call_args_list[0].args[0]
        assert task.task_type == TaskType.EVIDENCE_COLLECTION
        assert task.audit_run_id == run.id
        assert task.assignee_id == reviewer
        assert task.due_date == datetime(2024, 12, 31, 23, 59, 59, 999999, tzinfo=UTC)
        assert harness.run_activity_types() == [AuditActivityType.CREATED]
        assert event_types(mock_event_publisher) == ["compliance.audit_run.created"]

    @pytest.mark.asyncio()
    async def test_create_rejects_unknown_controls(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        harness.control_repo.list_by_ids.return_value = []

        with pytest.raises(ValidationError) as exc_info:
            await harness.service.create_audit_run(
                auditor_tenant, "FY24", date(2024, 1, 1), date(2024, 2, 1), control_ids=[uuid.uuid4()]
            )
        assert exc_info.value.field == "control_ids"

    @pytest.mark.asyncio()
    async def test_create_rejects_inverted_period(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await harness.service.create_audit_run(
                auditor_tenant, "FY24", date(2024, 6, 1), date(2024, 1, 1), control_ids=[]
            )
        assert exc_info.value.field == "end_date"

    @pytest.mark.asyncio()
    async def test_only_creator_can_modify(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        harness.run_repo.get_by_id.return_value = make_fake_run(auditor_tenant.tenant_id, created_by=uuid.uuid4())

        with pytest.raises(AuthorizationError):
            await harness.service.update_audit_run(uuid.uuid4(), auditor_tenant, {"name": "Renamed"})

    @pytest.mark.asyncio()
    async def test_super_admin_can_modify_any_run(self, harness: AuditHarness, tenant_id: uuid.UUID) -> None:
        super_admin = TenantContext(tenant_id=tenant_id, user_id=uuid.uuid4(), platform_role=PlatformRole.SUPER_ADMIN)
        run = make_fake_run(tenant_id, created_by=uuid.uuid4())
        harness.run_repo.get_by_id.return_value = run

        updated = await harness.service.update_audit_run(run.id, super_admin, {"name": "Renamed"})

        assert updated.name == "Renamed"
        assert harness.run_activity_types() == [AuditActivityType.UPDATED]

    @pytest.mark.asyncio()
    async def test_locked_run_rejects_update(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        harness.run_repo.get_by_id.return_value = make_fake_run(
            auditor_tenant.tenant_id, auditor_tenant.user_id, AuditRunStatus.LOCKED
        )

        with pytest.raises(ValidationError):
            await harness.service.update_audit_run(uuid.uuid4(), auditor_tenant, {"name": "Renamed"})

    @pytest.mark.asyncio()
    async def test_locked_run_cannot_be_deleted(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        harness.run_repo.get_by_id.return_value = make_fake_run(
            auditor_tenant.tenant_id, auditor_tenant.user_id, AuditRunStatus.LOCKED
        )

        with pytest.raises(ValidationError):
            await harness.service.delete_audit_run(uuid.uuid4(), auditor_tenant)
        harness.run_repo.delete.assert_not_called()

    @pytest.mark.asyncio()
    async def test_status_cannot_be_updated_directly(
        self, harness: AuditHarness, auditor_tenant: TenantContext
    ) -> None:
        harness.run_repo.get_by_id.return_value = make_fake_run(auditor_tenant.tenant_id, auditor_tenant.user_id)

        with pytest.raises(ValidationError):
            await harness.service.update_audit_run(uuid.uuid4(), auditor_tenant, {"status": "LOCKED"})

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        ("changes", "field"),
        [
            ({"end_date": None}, "end_date"),
            ({"start_date": None}, "start_date"),
            ({"name": None}, "name"),
            ({"name": "   "}, "name"),
            ({"audit_type": None}, "audit_type"),
        ],
    )
    async def test_required_fields_cannot_be_cleared(
        self, harness: AuditHarness, auditor_tenant: TenantContext, changes: dict[str, object], field: str
    ) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, auditor_tenant.user_id)
        harness.run_repo.get_by_id.return_value = run

        with pytest.raises(ValidationError) as exc_info:
            await harness.service.update_audit_run(run.id, auditor_tenant, changes)

        assert exc_info.value.field == field
        assert run.end_date == date(2024, 12, 31)
        assert run.name == "SOC 2 FY24"
        harness.run_repo.save.assert_not_called()

    @pytest.mark.asyncio()
    async def test_valid_transition(
        self, harness: AuditHarness, auditor_tenant: TenantContext, mock_event_publisher: AsyncMock
    ) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, auditor_tenant.user_id, AuditRunStatus.DRAFT)
        harness.run_repo.get_by_id.return_value = run

        result = await harness.service.transition_status(run.id, auditor_tenant, AuditRunStatus.IN_PROGRESS)

        assert result.status == AuditRunStatus.IN_PROGRESS
        assert harness.run_activity_types() == [AuditActivityType.STATUS_CHANGED]
        assert event_types(mock_event_publisher) == ["compliance.audit_run.status_changed"]

    @pytest.mark.asyncio()
    async def test_skipping_states_is_rejected(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        harness.run_repo.get_by_id.return_value = make_fake_run(
            auditor_tenant.tenant_id, auditor_tenant.user_id, AuditRunStatus.DRAFT
        )

        with pytest.raises(ValidationError):
            await harness.service.transition_status(uuid.uuid4(), auditor_tenant, AuditRunStatus.COMPLETED)

    @pytest.mark.asyncio()
    async def test_lock_uses_conditional_update(
        self, harness: AuditHarness, auditor_tenant: TenantContext, mock_event_publisher: AsyncMock
    ) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, auditor_tenant.user_id, AuditRunStatus.COMPLETED)
        harness.run_repo.get_by_id.return_value = run
        harness.run_repo.lock_if_completed.return_value = True

        await harness.service.transition_status(run.id, auditor_tenant, AuditRunStatus.LOCKED)

        harness.run_repo.lock_if_completed.assert_awaited_once()
        harness.run_repo.save.assert_not_called()
        assert event_types(mock_event_publisher) == ["compliance.audit_run.locked"]

    @pytest.mark.asyncio()
    async def test_lost_lock_race_conflicts(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        harness.run_repo.get_by_id.return_value = make_fake_run(
            auditor_tenant.tenant_id, auditor_tenant.user_id, AuditRunStatus.COMPLETED
        )
        harness.run_repo.lock_if_completed.return_value = False

        with pytest.raises(ConflictError):
            await harness.service.transition_status(uuid.uuid4(), auditor_tenant, AuditRunStatus.LOCKED)


class TestControlReview:
    @pytest.mark.asyncio()
    async def test_reviewer_cannot_set_met(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        with pytest.raises(ValidationError):
            await harness.service.review_control(uuid.uuid4(), auditor_tenant, AuditControlStatus.MET)

    @pytest.mark.asyncio()
    async def test_unassigned_user_cannot_review(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, auditor_tenant.user_id, AuditRunStatus.IN_PROGRESS)
        harness.run_repo.get_by_id.return_value = run
        harness.audit_control_repo.get_by_id.return_value = make_fake_audit_control(run.id, reviewer_id=uuid.uuid4())

        with pytest.raises(AuthorizationError):
            await harness.service.review_control(uuid.uuid4(), auditor_tenant, AuditControlStatus.IN_PROGRESS)

    @pytest.mark.asyncio()
    async def test_submit_completes_collection_tasks(
        self, harness: AuditHarness, auditor_tenant: TenantContext
    ) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, uuid.uuid4(), AuditRunStatus.IN_PROGRESS)
        audit_control = make_fake_audit_control(run.id, reviewer_id=auditor_tenant.user_id)
        harness.run_repo.get_by_id.return_value = run
        harness.audit_control_repo.get_by_id.return_value = audit_control
        evidence_id = uuid.uuid4()

        result = await harness.service.review_control(
            audit_control.id,
            auditor_tenant,
            AuditControlStatus.SUBMITTED,
            notes="Screenshots attached",
            evidence_ids=[evidence_id, evidence_id],
        )

        assert result.status == AuditControlStatus.SUBMITTED
        assert result.submitted_at is not None
        link_args = harness.audit_control_repo.replace_evidence_links.call_args.args
        assert link_args[2] == [evidence_id]
        complete = harness.task_repo.complete_open_tasks.call_args
        assert complete.args[2] == [TaskType.EVIDENCE_COLLECTION]
        assert complete.kwargs["audit_run_id"] == run.id

    @pytest.mark.asyncio()
    async def test_review_on_locked_run_rejected(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, uuid.uuid4(), AuditRunStatus.LOCKED)
        harness.run_repo.get_by_id.return_value = run
        harness.audit_control_repo.get_by_id.return_value = make_fake_audit_control(
            run.id, reviewer_id=auditor_tenant.user_id
        )

        with pytest.raises(ValidationError):
            await harness.service.review_control(uuid.uuid4(), auditor_tenant, AuditControlStatus.SUBMITTED)

    @pytest.mark.asyncio()
    async def test_approve_sets_met(
        self, harness: AuditHarness, auditor_tenant: TenantContext, mock_event_publisher: AsyncMock
    ) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, uuid.uuid4(), AuditRunStatus.UNDER_REVIEW)
        audit_control = make_fake_audit_control(
            run.id, AuditControlStatus.SUBMITTED, approver_id=auditor_tenant.user_id
        )
        harness.run_repo.get_by_id.return_value = run
        harness.audit_control_repo.get_by_id.return_value = audit_control

        result = await harness.service.approve_control(audit_control.id, auditor_tenant, approve=True)

        assert result.status == AuditControlStatus.MET
        assert result.approved_at is not None
        assert event_types(mock_event_publisher) == ["compliance.audit_control.approved"]

    @pytest.mark.asyncio()
    async def test_reject_requires_reason(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, uuid.uuid4(), AuditRunStatus.UNDER_REVIEW)
        harness.run_repo.get_by_id.return_value = run
        harness.audit_control_repo.get_by_id.return_value = make_fake_audit_control(
            run.id, AuditControlStatus.SUBMITTED, approver_id=auditor_tenant.user_id
        )

        with pytest.raises(ValidationError) as exc_info:
            await harness.service.approve_control(uuid.uuid4(), auditor_tenant, approve=False, rejection_reason=" ")
        assert exc_info.value.field == "rejection_reason"

    @pytest.mark.asyncio()
    async def test_reject_sets_gap(
        self, harness: AuditHarness, auditor_tenant: TenantContext, mock_event_publisher: AsyncMock
    ) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, uuid.uuid4(), AuditRunStatus.UNDER_REVIEW)
        harness.run_repo.get_by_id.return_value = run
        harness.audit_control_repo.get_by_id.return_value = make_fake_audit_control(
            run.id, AuditControlStatus.SUBMITTED, approver_id=auditor_tenant.user_id
        )

        result = await harness.service.approve_control(
            uuid.uuid4(), auditor_tenant, approve=False, rejection_reason="Evidence predates the period"
        )

        assert result.status == AuditControlStatus.GAP
        assert result.rejection_reason == "Evidence predates the period"
        assert event_types(mock_event_publisher) == ["compliance.audit_control.rejected"]

    @pytest.mark.asyncio()
    async def test_reviewer_cannot_approve(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, uuid.uuid4(), AuditRunStatus.UNDER_REVIEW)
        harness.run_repo.get_by_id.return_value = run
        harness.audit_control_repo.get_by_id.return_value = make_fake_audit_control(
            run.id, AuditControlStatus.SUBMITTED, reviewer_id=auditor_tenant.user_id, approver_id=uuid.uuid4()
        )

        with pytest.raises(AuthorizationError):
            await harness.service.approve_control(uuid.uuid4(), auditor_tenant, approve=True)


class TestFindings:
    @pytest.mark.asyncio()
    async def test_create_finding_ranks_severity(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, uuid.uuid4(), AuditRunStatus.IN_PROGRESS)
        harness.run_repo.get_by_id.return_value = run

        finding = await harness.service.create_finding(run.id, auditor_tenant, "MFA not enforced", "CRITICAL")

        assert finding.severity_rank == 4
        assert finding.status == FindingStatus.OPEN
        assert harness.run_activity_types() == [AuditActivityType.FINDING_CREATED]

    @pytest.mark.asyncio()
    async def test_finding_control_from_other_run(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, uuid.uuid4(), AuditRunStatus.IN_PROGRESS)
        harness.run_repo.get_by_id.return_value = run
        harness.audit_control_repo.get_by_id.return_value = make_fake_audit_control(uuid.uuid4())

        with pytest.raises(ValidationError) as exc_info:
            await harness.service.create_finding(
                run.id, auditor_tenant, "Gap", "LOW", audit_control_id=uuid.uuid4()
            )
        assert exc_info.value.field == "audit_control_id"

    @pytest.mark.asyncio()
    async def test_resolving_stamps_resolved_at(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, uuid.uuid4(), AuditRunStatus.IN_PROGRESS)
        finding = make_fake_finding(run.id)
        harness.run_repo.get_by_id.return_value = run
        harness.finding_repo.get_by_id.return_value = finding

        result = await harness.service.update_finding(
            finding.id, auditor_tenant, {"status": FindingStatus.RESOLVED, "severity": "LOW"}
        )

        assert result.resolved_at is not None
        assert result.severity_rank == 1

    @pytest.mark.asyncio()
    async def test_invalid_finding_status(self, harness: AuditHarness, auditor_tenant: TenantContext) -> None:
        with pytest.raises(ValidationError):
            await harness.service.update_finding(uuid.uuid4(), auditor_tenant, {"status": "FIXED-ISH"})

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("title", [None, "  "])
    async def test_finding_title_cannot_be_cleared(
        self, harness: AuditHarness, auditor_tenant: TenantContext, title: str | None
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await harness.service.update_finding(uuid.uuid4(), auditor_tenant, {"title": title})
        assert exc_info.value.field == "title"
        harness.finding_repo.save.assert_not_called()


class TestAuditAnalytics:
    @pytest.mark.asyncio()
    async def test_completion_rate_counts_met_and_not_applicable(
        self, harness: AuditHarness, auditor_tenant: TenantContext
    ) -> None:
        harness.run_repo.count_by.return_value = {"IN_PROGRESS": 1}
        harness.audit_control_repo.count_by.return_value = {"MET": 2, "NOT_APPLICABLE": 1, "GAP": 1}
        harness.finding_repo.count_by.side_effect = [{"HIGH": 2}, {"OPEN": 2}]

        analytics = await harness.service.audit_analytics(auditor_tenant)

        assert analytics["completion_rate"] == 75.0
        assert analytics["total_controls"] == 4
        assert analytics["total_findings"] == 2
        assert analytics["total_runs"] == 1


class TestAuditPackager:
    def _packager(
        self, activity: ActivityService, publisher: AsyncMock, run: MagicMock, auditor: TenantContext
    ) -> tuple[AuditPackager, AsyncMock]:
        met = make_fake_audit_control(run.id, AuditControlStatus.MET, reviewer_id=auditor.user_id)
        gap = make_fake_audit_control(run.id, AuditControlStatus.GAP)
        control = make_fake_control(auditor.tenant_id, code="CC6.1")
        met.control_id = control.id
        finding = make_fake_finding(run.id, severity="CRITICAL")
        finding.audit_control_id = gap.id
        link = MagicMock(audit_control_id=met.id, evidence_id=uuid.uuid4(), linked_by=auditor.user_id)

        run_repo = make_repo()
        run_repo.get_by_id.return_value = run
        audit_control_repo = make_repo()
        audit_control_repo.list_for_run.return_value = [met, gap]
        audit_control_repo.list_evidence_links.return_value = [link]
        control_repo = make_repo()
        control_repo.list_by_ids.return_value = [control]
        finding_repo = make_repo()
        finding_repo.list_where.return_value = [finding]
        export_repo = make_repo()
        packager = AuditPackager(
            run_repo=run_repo,
            audit_control_repo=audit_control_repo,
            finding_repo=finding_repo,
            export_repo=export_repo,
            run_activity_repo=make_repo(),
            control_repo=control_repo,
            evidence_repo=make_repo(),
            activity=activity,
            event_publisher=publisher,
        )
        return packager, export_repo

    @pytest.mark.asyncio()
    async def test_json_export_checksum_is_verifiable(
        self, auditor_tenant: TenantContext, activity_service: ActivityService, mock_event_publisher: AsyncMock
    ) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, auditor_tenant.user_id, AuditRunStatus.LOCKED)
        packager, export_repo = self._packager(activity_service, mock_event_publisher, run, auditor_tenant)

        result = await packager.export_package(run.id, auditor_tenant)

        package = json.loads(result["content"])
        assert hashlib.sha256(canonical_json(package).encode("utf-8")).hexdigest() == result["checksum"]
        assert result["immutable"] is True
        assert result["mime_type"] == "application/json"
        assert result["file_name"].startswith("audit-pack-SOC-2-FY24-")
        summary = package["executive_summary"]
        assert summary["compliance_rate"] == 50.0
        assert summary["critical_findings"] == 1
        matrix = {row["status"]: row for row in package["control_matrix"]}
        assert matrix["MET"]["control_code"] == "CC6.1"
        assert matrix["MET"]["evidence_count"] == 1
        assert matrix["GAP"]["finding_count"] == 1
        assert len(package["evidence_index"]) == 1
        assert export_repo.add.call_args.args[0].checksum == result["checksum"]
        assert event_types(mock_event_publisher) == ["compliance.audit_run.package_exported"]

    @pytest.mark.asyncio()
    async def test_summary_csv_lists_findings(
        self, auditor_tenant: TenantContext, activity_service: ActivityService, mock_event_publisher: AsyncMock
    ) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, auditor_tenant.user_id, AuditRunStatus.COMPLETED)
        packager, _ = self._packager(activity_service, mock_event_publisher, run, auditor_tenant)

        result = await packager.export_package(run.id, auditor_tenant, export_format="CSV", scope="SUMMARY")

        rows = list(csv.DictReader(io.StringIO(result["content"])))
        assert [row["severity"] for row in rows] == ["CRITICAL"]
        assert result["immutable"] is False
        assert result["mime_type"] == "text/csv"

    @pytest.mark.asyncio()
    async def test_unsupported_format(
        self, auditor_tenant: TenantContext, activity_service: ActivityService, mock_event_publisher: AsyncMock
    ) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, auditor_tenant.user_id)
        packager, _ = self._packager(activity_service, mock_event_publisher, run, auditor_tenant)

        with pytest.raises(ValidationError):
            await packager.export_package(run.id, auditor_tenant, export_format="PDF")

    @pytest.mark.asyncio()
    async def test_export_requires_audit_permission(
        self,
        mock_tenant: TenantContext,
        auditor_tenant: TenantContext,
        activity_service: ActivityService,
        mock_event_publisher: AsyncMock,
    ) -> None:
        run = make_fake_run(auditor_tenant.tenant_id, auditor_tenant.user_id)
        packager, _ = self._packager(activity_service, mock_event_publisher, run, auditor_tenant)

        with pytest.raises(AuthorizationError):
            await packager.export_package(run.id, mock_tenant)


def test_compliance_officer_has_audit_permission(tenant_id: uuid.UUID) -> None:
    officer = TenantContext(tenant_id=tenant_id, user_id=uuid.uuid4(), org_role=OrgRole.COMPLIANCE_OFFICER)
    assert officer.has_audit_permission
