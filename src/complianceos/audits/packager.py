"""Audit evidence package generator.

Builds a portable package for an audit run containing:
- metadata (run, scope, export time)
- an executive summary with key metrics
- a control matrix (one row per audit control)
- an evidence index (evidence presented per audit control)
- a findings report

The SHA-256 checksum is computed over the canonical JSON of the package
(sorted keys, compact separators), so a recipient can verify an export
independently of its rendered format. Packages from a LOCKED run are
flagged immutable.

Formats: JSON (the package itself) and CSV (the control matrix with
evidence and finding counts, or the findings for SUMMARY). SUMMARY keeps metadata,
executive summary and findings; FULL adds the matrix and evidence index.
"""

import csv
import hashlib
import io
import json
import re
import uuid
from enum import StrEnum
from typing import Any

from complianceos.audits.service import record_run_activity, require_audit_permission
from complianceos.common.auth import TenantContext
from complianceos.common.errors import ValidationError
from complianceos.common.observability import get_logger
from complianceos.core.interfaces import IEventPublisher
from complianceos.core.models import (
    AuditActivityType,
    AuditControl,
    AuditControlStatus,
    AuditFinding,
    AuditPackExport,
    AuditRun,
    AuditRunStatus,
    Control,
    Evidence,
    FindingSeverity,
    FindingStatus,
)
from complianceos.core.services import ActivityService, TrackedService, utcnow

logger = get_logger(__name__)

PACKAGE_VERSION = "1.0"

_CSV_COLUMNS = (
    "control_code",
    "control_name",
    "criticality",
    "status",
    "reviewer_id",
    "approver_id",
    "submitted_at",
    "approved_at",
    "evidence_count",
    "finding_count",
    "notes",
)
_FINDING_CSV_COLUMNS = ("title", "severity", "status", "control_id", "owner_id", "due_date", "resolved_at")


class ExportFormat(StrEnum):
    JSON = "JSON"
    CSV = "CSV"


class ExportScope(StrEnum):
    FULL = "FULL"
    SUMMARY = "SUMMARY"


_MIME_TYPES: dict[str, str] = {ExportFormat.JSON: "application/json", ExportFormat.CSV: "text/csv"}


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


class AuditPackager(TrackedService):
    """Generates and records audit run evidence packages.

    Args:
        run_repo: AuditRunRepository.
        audit_control_repo: AuditControlRepository.
        finding_repo: Repository for AuditFinding.
        export_repo: Repository for AuditPackExport.
        run_activity_repo: Repository for AuditRunActivity.
        control_repo: ControlRepository.
        evidence_repo: EvidenceRepository.
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(
        self,
        run_repo: Any,
        audit_control_repo: Any,
        finding_repo: Any,
        export_repo: Any,
        run_activity_repo: Any,
        control_repo: Any,
        evidence_repo: Any,
        activity: ActivityService,
        event_publisher: IEventPublisher,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._run_repo = run_repo
        self._audit_control_repo = audit_control_repo
        self._finding_repo = finding_repo
        self._export_repo = export_repo
        self._run_activity_repo = run_activity_repo
        self._control_repo = control_repo
        self._evidence_repo = evidence_repo

    async def export_package(
        self,
        run_id: uuid.UUID,
        tenant: TenantContext,
        export_format: str = ExportFormat.JSON,
        scope: str = ExportScope.FULL,
        correlation_id: str | None = None,
    ) -> dict[str, Any]:
        """Generate a package, persist its export record and log the export.

        Args:
            run_id: Audit run to export.
            tenant: Caller context (needs audit permission).
            export_format: JSON or CSV.
            scope: FULL or SUMMARY.
            correlation_id: Request correlation ID.

        Returns:
            Dict with export_id, file_name, mime_type, checksum, immutable and
            the rendered content.

        Raises:
            ValidationError: On an unsupported format or scope.
        """
        require_audit_permission(tenant)
        if export_format not in ExportFormat.__members__:
            raise ValidationError(message=f"Unsupported export format '{export_format}'", field="format")
        if scope not in ExportScope.__members__:
            raise ValidationError(message=f"Unsupported export scope '{scope}'", field="scope")

        run = await self._run_repo.get_by_id(run_id, tenant.tenant_id)
        package = await self.build_package(run, tenant, scope)
        checksum = hashlib.sha256(canonical_json(package).encode("utf-8")).hexdigest()
        content = self._render(package, export_format)
        immutable = run.status == AuditRunStatus.LOCKED

        safe_name = re.sub(r"[^a-zA-Z0-9]", "-", run.name)
        file_name = f"audit-pack-{safe_name}-{utcnow().date().isoformat()}.{export_format.lower()}"

        export = await self._export_repo.add(
            AuditPackExport(
                tenant_id=tenant.tenant_id,
                audit_run_id=run.id,
                file_name=file_name,
                export_format=export_format,
                export_scope=scope,
                requested_by=tenant.user_id,
                checksum=checksum,
                immutable=immutable,
            )
        )
        details = {"format": export_format, "scope": scope, "file_name": file_name, "checksum": checksum}
        await record_run_activity(
            self._run_activity_repo,
            tenant,
            run.id,
            AuditActivityType.PACKAGE_EXPORTED,
            "audit_pack_export",
            export.id,
            new_value=details,
        )
        await self._track(
            tenant,
            "compliance.audit_run.package_exported",
            "audit_pack_export",
            export.id,
            "export",
            {"audit_run_id": str(run.id), **details},
            correlation_id,
        )
        logger.info(
            "Audit package exported",
            tenant_id=str(tenant.tenant_id),
            audit_run_id=str(run.id),
            export_format=export_format,
            scope=scope,
            immutable=immutable,
        )
        return {
            "export_id": export.id,
            "file_name": file_name,
            "mime_type": _MIME_TYPES[export_format],
            "checksum": checksum,
            "immutable": immutable,
            "content": content,
        }

    async def build_package(self, run: AuditRun, tenant: TenantContext, scope: str) -> dict[str, Any]:
        audit_controls: list[AuditControl] = await self._audit_control_repo.list_for_run(tenant.tenant_id, run.id)
        controls: dict[uuid.UUID, Control] = {
            c.id: c
            for c in await self._control_repo.list_by_ids(tenant.tenant_id, [ac.control_id for ac in audit_controls])
        }
        findings: list[AuditFinding] = await self._finding_repo.list_where(
            tenant.tenant_id,
            [AuditFinding.audit_run_id == run.id],
            order_by=[AuditFinding.severity_rank.desc(), AuditFinding.created_at.desc()],
        )
        links = await self._audit_control_repo.list_evidence_links(tenant.tenant_id, run.id)
        evidence_ids = list({link.evidence_id for link in links})
        evidence: dict[uuid.UUID, Evidence] = (
            {e.id: e for e in await self._evidence_repo.list_where(tenant.tenant_id, [Evidence.id.in_(evidence_ids)])}
            if evidence_ids
            else {}
        )

        package: dict[str, Any] = {
            "metadata": {
                "audit_run_id": str(run.id),
                "name": run.name,
                "framework_id": str(run.framework_id) if run.framework_id else None,
                "audit_type": run.audit_type,
                "status": run.status,
                "period_start": _iso(run.start_date),
                "period_end": _iso(run.end_date),
                "export_date": utcnow().isoformat(),
                "export_scope": scope,
                "version": PACKAGE_VERSION,
            },
            "executive_summary": self._executive_summary(run, audit_controls, findings),
            "findings": [self._finding_row(f) for f in findings],
        }
        if scope == ExportScope.FULL:
            evidence_counts: dict[uuid.UUID, int] = {}
            for link in links:
                evidence_counts[link.audit_control_id] = evidence_counts.get(link.audit_control_id, 0) + 1
            finding_counts: dict[uuid.UUID, int] = {}
            for finding in findings:
                if finding.audit_control_id is not None:
                    finding_counts[finding.audit_control_id] = finding_counts.get(finding.audit_control_id, 0) + 1
            package["control_matrix"] = [
                self._matrix_row(ac, controls.get(ac.control_id), evidence_counts, finding_counts)
                for ac in audit_controls
            ]
            package["evidence_index"] = [
                {
                    "audit_control_id": str(link.audit_control_id),
                    "evidence_id": str(link.evidence_id),
                    "title": evidence[link.evidence_id].title if link.evidence_id in evidence else None,
                    "evidence_type": evidence[link.evidence_id].evidence_type if link.evidence_id in evidence else None,
                    "status": evidence[link.evidence_id].status if link.evidence_id in evidence else None,
                    "content_hash": evidence[link.evidence_id].content_hash if link.evidence_id in evidence else None,
                    "linked_by": str(link.linked_by),
                }
                for link in links
            ]
        return package

    @staticmethod
    def _executive_summary(
        run: AuditRun, audit_controls: list[AuditControl], findings: list[AuditFinding]
    ) -> dict[str, Any]:
        total = len(audit_controls)
        met = sum(1 for ac in audit_controls if ac.status == AuditControlStatus.MET)
        gap = sum(1 for ac in audit_controls if ac.status == AuditControlStatus.GAP)
        not_applicable = sum(1 for ac in audit_controls if ac.status == AuditControlStatus.NOT_APPLICABLE)
        open_findings = sum(1 for f in findings if f.status == FindingStatus.OPEN)
        compliance_rate = round(met / total * 100, 2) if total else 0.0
        return {
            "name": run.name,
            "status": run.status,
            "total_controls": total,
            "met_controls": met,
            "gap_controls": gap,
            "not_applicable_controls": not_applicable,
            "compliance_rate": compliance_rate,
            "total_findings": len(findings),
            "open_findings": open_findings,
            "critical_findings": sum(1 for f in findings if f.severity == FindingSeverity.CRITICAL),
            "high_findings": sum(1 for f in findings if f.severity == FindingSeverity.HIGH),
            "summary": (
                f"This audit covered {total} controls. The compliance rate is {compliance_rate}%. "
                f"{len(findings)} findings were identified, with {open_findings} still open."
            ),
        }

    @staticmethod
    def _matrix_row(
        audit_control: AuditControl,
        control: Control | None,
        evidence_counts: dict[uuid.UUID, int],
        finding_counts: dict[uuid.UUID, int],
    ) -> dict[str, Any]:
        return {
            "audit_control_id": str(audit_control.id),
            "control_id": str(audit_control.control_id),
            "control_code": control.code if control else None,
            "control_name": control.name if control else None,
            "criticality": control.criticality if control else None,
            "status": audit_control.status,
            "reviewer_id": str(audit_control.reviewer_id) if audit_control.reviewer_id else None,
            "approver_id": str(audit_control.approver_id) if audit_control.approver_id else None,
            "submitted_at": _iso(audit_control.submitted_at),
            "approved_at": _iso(audit_control.approved_at),
            "evidence_count": evidence_counts.get(audit_control.id, 0),
            "finding_count": finding_counts.get(audit_control.id, 0),
            "notes": audit_control.notes,
        }

    @staticmethod
    def _finding_row(finding: AuditFinding) -> dict[str, Any]:
        return {
            "finding_id": str(finding.id),
            "title": finding.title,
            "severity": finding.severity,
            "status": finding.status,
            "control_id": str(finding.control_id) if finding.control_id else None,
            "owner_id": str(finding.owner_id) if finding.owner_id else None,
            "due_date": _iso(finding.due_date),
            "remediation_plan": finding.remediation_plan,
            "resolved_at": _iso(finding.resolved_at),
        }

    @staticmethod
    def _render(package: dict[str, Any], export_format: str) -> str:
        if export_format == ExportFormat.JSON:
            return json.dumps(package, indent=2, default=str)

        # SUMMARY packages have no control matrix; their CSV lists the findings.
        if "control_matrix" in package:
            columns, rows = _CSV_COLUMNS, package["control_matrix"]
        else:
            columns, rows = _FINDING_CSV_COLUMNS, package["findings"]
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
        return buffer.getvalue()
