"""Audit runs: lifecycle state machine, control review, findings and evidence packages."""

from complianceos.audits.packager import AuditPackager
from complianceos.audits.service import AUDIT_RUN_TRANSITIONS, AuditService

__all__ = [
    "AUDIT_RUN_TRANSITIONS",
    "AuditPackager",
    "AuditService",
]
