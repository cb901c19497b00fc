"""SQLAlchemy ORM models for complianceOS.

All models use the `cos_` table prefix and extend PlatformModel for automatic
tenant_id, id (UUID), created_at and updated_at fields. The tenant is the
organization: every row belongs to exactly one organization.

Models by area:
- Frameworks & controls - Framework, Control
- Evidence - Evidence, EvidenceVersion, EvidenceControlLink
- Policies - Policy, PolicyVersion, PolicyAcknowledgment
- Risks - Risk, RiskAssessment, RiskTreatment, RiskControlMapping, RiskPolicyMapping
- Tasks - Task
- Audit runs - AuditRun, AuditControl, AuditEvidenceLink, AuditFinding,
                           AuditRunActivity, AuditPackExport
- Questionnaires - Questionnaire, Question, Answer, AnswerLibraryEntry
- Knowledge base - KnowledgeCategory, KnowledgeArticle, KnowledgeArticleVersion,
                           KnowledgeTerm, KnowledgeBookmark
- AI - AISession, AIQuery, AIFeedback, AIEmbedding
- Governance - GovernanceDashboard, GovernanceMetric, GovernanceAlert
- Enterprise - EncryptionConfig, EncryptionKey, DataResidencyConfig, DataTransfer
- Identity - IdentityProvider, SCIMEndpoint, DirectoryUser, OrganizationMember
- Activity trail - ActivityEntry (lives on the SEPARATE activity database)

Enumerations are StrEnum classes; columns store the plain string value.

IMPORTANT: ActivityEntry is mapped here but written ONLY through
ActivityTrailRepository (adapters/audit_wall.py) on the activity database.
"""

import uuid
from datetime import date, datetime
from enum import IntEnum, StrEnum

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from complianceos.common.database import PlatformModel


# ---------------------------------------------------------------------------
# Frameworks & controls
# ---------------------------------------------------------------------------


class FrameworkType(StrEnum):
    SOC2 = "SOC2"
    ISO27001 = "ISO27001"
    PCI_DSS = "PCI_DSS"
    HIPAA = "HIPAA"
    GDPR = "GDPR"
    NIST_CSF = "NIST_CSF"
    CUSTOM = "CUSTOM"


class Criticality(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ControlStatus(StrEnum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    MET = "MET"
    PARTIAL = "PARTIAL"
    GAP = "GAP"
    NOT_APPLICABLE = "NOT_APPLICABLE"


class Framework(PlatformModel):
    """A compliance standard the organization tracks (SOC 2, ISO 27001, ...).

    Attributes:
        name: Display name.
        framework_type: One of FrameworkType.
        version: Published version of the standard (e.g. "2022").
        description: Optional summary.
        template_code: Catalog template this framework was imported from, if any.
        is_active: Inactive frameworks are hidden from dashboards.
    """

    __tablename__ = "cos_frameworks"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    framework_type: Mapped[str] = mapped_column(String(30), nullable=False, default=FrameworkType.CUSTOM)
    version: Mapped[str | None] = mapped_column(String(50), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    template_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Control(PlatformModel):
    """A single requirement within a framework and its implementation status.

    Attributes:
        framework_id: Owning framework.
        code: Requirement reference within the framework (e.g. "CC6.1").
        name: Short title.
        description: Requirement text.
        category: Grouping within the framework.
        criticality: One of Criticality.
        status: One of ControlStatus.
        owner_id: Responsible user.
        next_review_date: When the control is next due for review.
        review_frequency_days: Review cadence used to roll next_review_date forward.
    """

    __tablename__ = "cos_controls"
    __table_args__ = (UniqueConstraint("tenant_id", "framework_id", "code", name="uq_cos_controls_framework_code"),)

    framework_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_frameworks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    code: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    criticality: Mapped[str] = mapped_column(String(20), nullable=False, default=Criticality.MEDIUM)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=ControlStatus.NOT_STARTED, index=True)
    owner_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    next_review_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_frequency_days: Mapped[int] = mapped_column(Integer, nullable=False, default=365)


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------


class EvidenceType(StrEnum):
    DOCUMENT = "DOCUMENT"
    POLICY = "POLICY"
    SCREENSHOT = "SCREENSHOT"
    CONFIGURATION = "CONFIGURATION"
    LOG = "LOG"
    REPORT = "REPORT"
    CERTIFICATE = "CERTIFICATE"
    OTHER = "OTHER"


class EvidenceStatus(StrEnum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class Evidence(PlatformModel):
    """A document or artifact demonstrating that controls are satisfied.

    The current file is described inline; every upload is also kept as an
    EvidenceVersion row.
    """

    __tablename__ = "cos_evidence"

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    evidence_type: Mapped[str] = mapped_column(String(30), nullable=False, default=EvidenceType.DOCUMENT)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=EvidenceStatus.DRAFT, index=True)
    file_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    file_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, comment="SHA-256 hex digest")
    current_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    expiry_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    uploaded_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class EvidenceVersion(PlatformModel):
    """One uploaded revision of an evidence file."""

    __tablename__ = "cos_evidence_versions"
    __table_args__ = (UniqueConstraint("evidence_id", "version", name="uq_cos_evidence_versions_version"),)

    evidence_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_evidence.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    file_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    file_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    change_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)


class EvidenceControlLink(PlatformModel):
    """Many-to-many link between evidence and the controls it supports."""

    __tablename__ = "cos_evidence_control_links"
    __table_args__ = (UniqueConstraint("evidence_id", "control_id", name="uq_cos_evidence_control_links_pair"),)

    evidence_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_evidence.id", ondelete="CASCADE"), nullable=False, index=True
    )
    control_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_controls.id", ondelete="CASCADE"), nullable=False, index=True
    )
    linked_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class PolicyStatus(StrEnum):
    DRAFT = "DRAFT"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class AcknowledgmentStatus(StrEnum):
    PENDING = "PENDING"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    OVERDUE = "OVERDUE"


class Policy(PlatformModel):
    """An organizational policy document with a publish lifecycle.

    Attributes:
        title: Policy title.
        description: Short summary.
        content: Full policy text (markdown).
        category: Free-form category (e.g. "Information Security").
        status: One of PolicyStatus.
        version: Semantic version string of the current content, starting at "1.0.0".
        effective_date: Date the policy takes effect.
        review_date: Date the policy is next due for review.
        owner_id: Accountable owner.
        published_by / published_at: Set when published.
        requires_acknowledgment: Whether staff must acknowledge it.
    """

    __tablename__ = "cos_policies"

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=PolicyStatus.DRAFT, index=True)
    version: Mapped[str] = mapped_column(String(20), nullable=False, default="1.0.0")
    effective_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    owner_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    published_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    requires_acknowledgment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class PolicyVersion(PlatformModel):
    """Snapshot of a policy's content at a given version."""

    __tablename__ = "cos_policy_versions"
    __table_args__ = (UniqueConstraint("policy_id", "version", name="uq_cos_policy_versions_version"),)

    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_policies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    change_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    approved_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PolicyAcknowledgment(PlatformModel):
    """A user's obligation (and eventual confirmation) to read a policy."""

    __tablename__ = "cos_policy_acknowledgments"

    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_policies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AcknowledgmentStatus.PENDING, index=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)


# ---------------------------------------------------------------------------
# Risks
# ---------------------------------------------------------------------------


class RiskCategory(StrEnum):
    STRATEGIC = "STRATEGIC"
    OPERATIONAL = "OPERATIONAL"
    FINANCIAL = "FINANCIAL"
    COMPLIANCE = "COMPLIANCE"
    REPUTATIONAL = "REPUTATIONAL"
    TECHNOLOGY = "TECHNOLOGY"
    CYBERSECURITY = "CYBERSECURITY"
    THIRD_PARTY = "THIRD_PARTY"
    ENVIRONMENTAL = "ENVIRONMENTAL"
    CUSTOM = "CUSTOM"


class Likelihood(IntEnum):
    VERY_UNLIKELY = 1
    UNLIKELY = 2
    POSSIBLE = 3
    LIKELY = 4
    VERY_LIKELY = 5
    CERTAIN = 6


class Impact(IntEnum):
    VERY_LOW = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    VERY_HIGH = 5
    CRITICAL = 6


class RiskSeverity(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"
    CRITICAL = "CRITICAL"


class RiskStatus(StrEnum):
    IDENTIFIED = "IDENTIFIED"
    ASSESSED = "ASSESSED"
    TREATMENT_PLANNED = "TREATMENT_PLANNED"
    TREATMENT_IMPLEMENTED = "TREATMENT_IMPLEMENTED"
    MONITORED = "MONITORED"
    CLOSED = "CLOSED"
    REOPENED = "REOPENED"


class AssessmentMethodology(StrEnum):
    QUALITATIVE = "QUALITATIVE"
    QUANTITATIVE = "QUANTITATIVE"
    SEMI_QUANTITATIVE = "SEMI_QUANTITATIVE"
    MONTE_CARLO = "MONTE_CARLO"
    BOW_TIE = "BOW_TIE"
    FAULT_TREE = "FAULT_TREE"


class TreatmentStrategy(StrEnum):
    AVOID = "AVOID"
    TRANSFER = "TRANSFER"
    MITIGATE = "MITIGATE"
    ACCEPT = "ACCEPT"
    EXPLOIT = "EXPLOIT"
    COMBINATION = "COMBINATION"


class TreatmentStatus(StrEnum):
    PLANNED = "PLANNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ON_HOLD = "ON_HOLD"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class ControlMappingType(StrEnum):
    DIRECT = "DIRECT"
    COMPENSATING = "COMPENSATING"
    DETECTIVE = "DETECTIVE"
    PREVENTIVE = "PREVENTIVE"
    CORRECTIVE = "CORRECTIVE"
    MONITORING_CONTROL = "MONITORING_CONTROL"


class Risk(PlatformModel):
    """An entry in the organization's risk register.

    risk_score is likelihood x impact (1..36) and severity is derived from it;
    both are recomputed by RiskService whenever likelihood or impact change.
    """

    __tablename__ = "cos_risks"

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    subcategory: Mapped[str | None] = mapped_column(String(255), nullable=True)
    likelihood: Mapped[int] = mapped_column(Integer, nullable=False)
    impact: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=RiskStatus.IDENTIFIED, index=True)
    owner_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    business_unit: Mapped[str | None] = mapped_column(String(255), nullable=True)
    residual_likelihood: Mapped[int | None] = mapped_column(Integer, nullable=True)
    residual_impact: Mapped[int | None] = mapped_column(Integer, nullable=True)
    residual_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    identified_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)


class RiskAssessment(PlatformModel):
    """A dated assessment of a risk's likelihood and impact."""

    __tablename__ = "cos_risk_assessments"

    risk_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_risks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    methodology: Mapped[str] = mapped_column(String(30), nullable=False, default=AssessmentMethodology.QUALITATIVE)
    likelihood: Mapped[int] = mapped_column(Integer, nullable=False)
    impact: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    assessed_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    approved_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class RiskTreatment(PlatformModel):
    """A planned or executed response to a risk."""

    __tablename__ = "cos_risk_treatments"

    risk_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_risks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    strategy: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TreatmentStatus.PLANNED, index=True)
    owner_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    estimated_cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    actual_cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    target_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_completion_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    effectiveness: Mapped[int | None] = mapped_column(Integer, nullable=True, comment="0-100")


class RiskControlMapping(PlatformModel):
    """Link between a risk and a control that addresses it."""

    __tablename__ = "cos_risk_control_mappings"
    __table_args__ = (UniqueConstraint("risk_id", "control_id", name="uq_cos_risk_control_mappings_pair"),)

    risk_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_risks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    control_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_controls.id", ondelete="CASCADE"), nullable=False, index=True
    )
    mapping_type: Mapped[str] = mapped_column(String(30), nullable=False, default=ControlMappingType.DIRECT)
    effectiveness: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class RiskPolicyMapping(PlatformModel):
    """Link between a risk and a policy that governs it."""

    __tablename__ = "cos_risk_policy_mappings"
    __table_args__ = (UniqueConstraint("risk_id", "policy_id", name="uq_cos_risk_policy_mappings_pair"),)

    risk_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_risks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_policies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class TaskType(StrEnum):
    EVIDENCE_COLLECTION = "EVIDENCE_COLLECTION"
    EVIDENCE_RENEWAL = "EVIDENCE_RENEWAL"
    CONTROL_REVIEW = "CONTROL_REVIEW"
    GAP_REMEDIATION = "GAP_REMEDIATION"
    POLICY_REVIEW = "POLICY_REVIEW"
    RISK_TREATMENT = "RISK_TREATMENT"
    GENERAL = "GENERAL"


class TaskStatus(StrEnum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class TaskPriority(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


OPEN_TASK_STATUSES: tuple[str, ...] = (TaskStatus.OPEN, TaskStatus.IN_PROGRESS)


class Task(PlatformModel):
    """A unit of compliance work, created by people or by automation rules.

    created_by is NULL for tasks generated by the automation engine.
    """

    __tablename__ = "cos_tasks"

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    task_type: Mapped[str] = mapped_column(String(30), nullable=False, default=TaskType.GENERAL, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TaskStatus.OPEN, index=True)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default=TaskPriority.MEDIUM)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assignee_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    control_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    evidence_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    audit_run_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)  # type: ignore[type-arg]


# ---------------------------------------------------------------------------
# Audit runs
# ---------------------------------------------------------------------------


class AuditType(StrEnum):
    INTERNAL = "INTERNAL"
    EXTERNAL = "EXTERNAL"
    SELF_ASSESSMENT = "SELF_ASSESSMENT"


class AuditRunStatus(StrEnum):
    DRAFT = "DRAFT"
    IN_PROGRESS = "IN_PROGRESS"
    UNDER_REVIEW = "UNDER_REVIEW"
    COMPLETED = "COMPLETED"
    LOCKED = "LOCKED"


class AuditControlStatus(StrEnum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    MET = "MET"
    GAP = "GAP"
    NOT_APPLICABLE = "NOT_APPLICABLE"


class FindingSeverity(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class FindingStatus(StrEnum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    ACCEPTED = "ACCEPTED"
    CLOSED = "CLOSED"


class AuditActivityType(StrEnum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    REVIEWED = "REVIEWED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    FINDING_CREATED = "FINDING_CREATED"
    LOCKED = "LOCKED"
    PACKAGE_EXPORTED = "PACKAGE_EXPORTED"


class AuditRun(PlatformModel):
    """A time-boxed audit engagement against a set of controls.

    Lifecycle: DRAFT -> IN_PROGRESS -> UNDER_REVIEW -> COMPLETED -> LOCKED.
    A LOCKED run is immutable; locked_at/locked_by record who froze it.
    """

    __tablename__ = "cos_audit_runs"

    name: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    framework_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_frameworks.id", ondelete="SET NULL"), nullable=True
    )
    audit_type: Mapped[str] = mapped_column(String(30), nullable=False, default=AuditType.INTERNAL)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AuditRunStatus.DRAFT, index=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)


class AuditControl(PlatformModel):
    """A control under test within one audit run."""

    __tablename__ = "cos_audit_controls"
    __table_args__ = (UniqueConstraint("audit_run_id", "control_id", name="uq_cos_audit_controls_pair"),)

    audit_run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_audit_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    control_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_controls.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AuditControlStatus.NOT_STARTED)
    reviewer_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    approver_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class AuditEvidenceLink(PlatformModel):
    """Evidence presented for an audit control."""

    __tablename__ = "cos_audit_evidence_links"

    audit_run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_audit_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    audit_control_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_audit_controls.id", ondelete="CASCADE"), nullable=False, index=True
    )
    evidence_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_evidence.id", ondelete="CASCADE"), nullable=False
    )
    linked_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)


class AuditFinding(PlatformModel):
    """An issue raised during an audit run."""

    __tablename__ = "cos_audit_findings"

    audit_run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_audit_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    audit_control_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    control_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    severity_rank: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Sort key: CRITICAL=4..LOW=1"
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=FindingStatus.OPEN, index=True)
    owner_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    remediation_plan: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolution_evidence_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)


class AuditRunActivity(PlatformModel):
    """Append-only activity log for one audit run."""

    __tablename__ = "cos_audit_run_activities"

    audit_run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_audit_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    activity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    performed_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    target_entity: Mapped[str] = mapped_column(String(100), nullable=False)
    target_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    old_value: Mapped[dict | None] = mapped_column(JSONB, nullable=True)  # type: ignore[type-arg]
    new_value: Mapped[dict | None] = mapped_column(JSONB, nullable=True)  # type: ignore[type-arg]


class AuditPackExport(PlatformModel):
    """Record of a generated audit evidence package."""

    __tablename__ = "cos_audit_pack_exports"

    audit_run_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_audit_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    export_format: Mapped[str] = mapped_column(String(10), nullable=False)
    export_scope: Mapped[str] = mapped_column(String(20), nullable=False)
    requested_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    immutable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


# ---------------------------------------------------------------------------
# Questionnaires & answer library
# ---------------------------------------------------------------------------


class QuestionnaireStatus(StrEnum):
    UPLOADED = "UPLOADED"
    PARSING = "PARSING"
    PARSED = "PARSED"
    IN_PROGRESS = "IN_PROGRESS"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    EXPORTED = "EXPORTED"
    DELIVERED = "DELIVERED"
    ARCHIVED = "ARCHIVED"


class QuestionType(StrEnum):
    YES_NO = "YES_NO"
    TEXT = "TEXT"
    MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
    FILE_UPLOAD = "FILE_UPLOAD"


class AnswerStatus(StrEnum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REQUIRES_REVISION = "REQUIRES_REVISION"


class AnswerCategory(StrEnum):
    ACCESS_CONTROL = "ACCESS_CONTROL"
    DATA_PROTECTION = "DATA_PROTECTION"
    INCIDENT_RESPONSE = "INCIDENT_RESPONSE"
    NETWORK_SECURITY = "NETWORK_SECURITY"
    PHYSICAL_SECURITY = "PHYSICAL_SECURITY"
    BUSINESS_CONTINUITY = "BUSINESS_CONTINUITY"
    VENDOR_MANAGEMENT = "VENDOR_MANAGEMENT"
    COMPLIANCE_FRAMEWORK = "COMPLIANCE_FRAMEWORK"
    GENERAL_SECURITY = "GENERAL_SECURITY"
    CUSTOM = "CUSTOM"


class Questionnaire(PlatformModel):
    """A customer security questionnaire being answered."""

    __tablename__ = "cos_questionnaires"

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    requester_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=QuestionnaireStatus.PARSED, index=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    assigned_to: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    completion_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)


class Question(PlatformModel):
    """One question of a questionnaire, with extracted keywords."""

    __tablename__ = "cos_questions"

    questionnaire_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_questionnaires.id", ondelete="CASCADE"), nullable=False, index=True
    )
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    question_type: Mapped[str] = mapped_column(String(20), nullable=False, default=QuestionType.TEXT)
    section: Mapped[str | None] = mapped_column(String(255), nullable=True)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    keywords: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    control_mapping: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    risk_level: Mapped[str | None] = mapped_column(String(20), nullable=True)


class Answer(PlatformModel):
    """The working answer to a question. One row per question."""

    __tablename__ = "cos_answers"
    __table_args__ = (UniqueConstraint("question_id", name="uq_cos_answers_question"),)

    question_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_questions.id", ondelete="CASCADE"), nullable=False
    )
    questionnaire_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    answer_text: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AnswerStatus.DRAFT, index=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    source_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    evidence_ids: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class AnswerLibraryEntry(PlatformModel):
    """A reusable, approved answer matched to questions by key phrases."""

    __tablename__ = "cos_answer_library"

    category: Mapped[str] = mapped_column(
        String(30), nullable=False, default=AnswerCategory.GENERAL_SECURITY, index=True
    )
    key_phrases: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    standard_answer: Mapped[str] = mapped_column(Text, nullable=False)
    evidence_references: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    confidence_score: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)


# ---------------------------------------------------------------------------
# Knowledge base
# ---------------------------------------------------------------------------


class ArticleStatus(StrEnum):
    DRAFT = "DRAFT"
    REVIEW = "REVIEW"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class ArticleContentType(StrEnum):
    ARTICLE = "ARTICLE"
    GUIDE = "GUIDE"
    TUTORIAL = "TUTORIAL"
    FAQ = "FAQ"
    CHECKLIST = "CHECKLIST"
    VIDEO = "VIDEO"


class KnowledgeCategory(PlatformModel):
    """A node in the knowledge category tree, optionally scoped to a framework."""

    __tablename__ = "cos_knowledge_categories"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_knowledge_categories.id", ondelete="SET NULL"), nullable=True, index=True
    )
    framework_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_frameworks.id", ondelete="SET NULL"), nullable=True, index=True
    )
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class KnowledgeArticle(PlatformModel):
    """Guidance content written for the organization.

    Attributes:
        slug: URL-safe form of the title, unique within the tenant.
        version: Bumped whenever the title, summary or content changes.
        rating: Running mean of 1-5 ratings, None until first rated.
        published_at: Set the first time the article is published.
    """

    __tablename__ = "cos_knowledge_articles"
    __table_args__ = (UniqueConstraint("tenant_id", "slug", name="uq_cos_knowledge_articles_slug"),)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    slug: Mapped[str] = mapped_column(String(500), nullable=False)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_type: Mapped[str] = mapped_column(String(20), nullable=False, default=ArticleContentType.ARTICLE)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ArticleStatus.DRAFT, index=True)
    category_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_knowledge_categories.id", ondelete="SET NULL"), nullable=True, index=True
    )
    framework_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_frameworks.id", ondelete="SET NULL"), nullable=True, index=True
    )
    control_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_controls.id", ondelete="SET NULL"), nullable=True, index=True
    )
    tags: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    rating_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    author_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)


class KnowledgeArticleVersion(PlatformModel):
    """The title, summary and content an article had before an edit."""

    __tablename__ = "cos_knowledge_article_versions"
    __table_args__ = (UniqueConstraint("article_id", "version", name="uq_cos_knowledge_article_versions_version"),)

    article_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_knowledge_articles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    change_log: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)


class KnowledgeTerm(PlatformModel):
    """A glossary entry with synonyms and acronyms used for search."""

    __tablename__ = "cos_knowledge_terms"

    term: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    definition: Mapped[str] = mapped_column(Text, nullable=False)
    short_definition: Mapped[str | None] = mapped_column(String(500), nullable=True)
    category_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_knowledge_categories.id", ondelete="SET NULL"), nullable=True
    )
    framework_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_frameworks.id", ondelete="SET NULL"), nullable=True, index=True
    )
    synonyms: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    acronyms: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    examples: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class KnowledgeBookmark(PlatformModel):
    """A user's bookmark on an article."""

    __tablename__ = "cos_knowledge_bookmarks"
    __table_args__ = (UniqueConstraint("user_id", "article_id", name="uq_cos_knowledge_bookmarks_pair"),)

    article_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_knowledge_articles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)


# ---------------------------------------------------------------------------
# AI assistance
# ---------------------------------------------------------------------------


class EmbeddingSourceType(StrEnum):
    EVIDENCE = "EVIDENCE"
    POLICY = "POLICY"
    CONTROL = "CONTROL"
    RISK = "RISK"


class AIQueryStatus(StrEnum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class FeedbackType(StrEnum):
    HELPFUL = "HELPFUL"
    NOT_HELPFUL = "NOT_HELPFUL"
    ACCURATE = "ACCURATE"
    INACCURATE = "INACCURATE"
    RELEVANT = "RELEVANT"


class AISession(PlatformModel):
    """A conversation between a user and the compliance assistant."""

    __tablename__ = "cos_ai_sessions"

    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    context: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)  # type: ignore[type-arg]
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    query_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AIQuery(PlatformModel):
    """One question asked within a session and the assistant's answer."""

    __tablename__ = "cos_ai_queries"

    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_ai_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    query_text: Mapped[str] = mapped_column(Text, nullable=False)
    response_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AIQueryStatus.PROCESSING, index=True)
    sources: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class AIFeedback(PlatformModel):
    """User feedback on an assistant answer."""

    __tablename__ = "cos_ai_feedback"

    query_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_ai_queries.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    feedback_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)


class AIEmbedding(PlatformModel):
    """Embedding vector for one compliance artifact.

    One row per (tenant, source_type, source_id); re-indexing overwrites it.
    """

    __tablename__ = "cos_ai_embeddings"
    __table_args__ = (
        UniqueConstraint("tenant_id", "source_type", "source_id", name="uq_cos_ai_embeddings_source"),
    )

    source_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    source_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list] = mapped_column(JSONB, nullable=False)  # type: ignore[type-arg]
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)  # type: ignore[type-arg]


# ---------------------------------------------------------------------------
# Governance dashboards, metrics and alerts
# ---------------------------------------------------------------------------


class AlertSeverity(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AlertStatus(StrEnum):
    ACTIVE = "ACTIVE"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"


class GovernanceDashboard(PlatformModel):
    """A saved executive dashboard layout."""

    __tablename__ = "cos_governance_dashboards"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    layout: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)  # type: ignore[type-arg]
    widgets: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)


class GovernanceMetric(PlatformModel):
    """A tracked KPI value with target and thresholds."""

    __tablename__ = "cos_governance_metrics"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    value: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    target: Mapped[float | None] = mapped_column(Float, nullable=True)
    unit: Mapped[str | None] = mapped_column(String(30), nullable=True)
    thresholds: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)  # type: ignore[type-arg]
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)


class GovernanceAlert(PlatformModel):
    """An alert raised manually or by alert generation rules."""

    __tablename__ = "cos_governance_alerts"

    alert_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    meta: Mapped[dict] = mapped_column("metadata", JSONB, nullable=False, default=dict)  # type: ignore[type-arg]
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AlertStatus.ACTIVE, index=True)
    acknowledged_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Enterprise: encryption and data residency
# ---------------------------------------------------------------------------


class KeyManagementType(StrEnum):
    HSM = "HSM"
    CLOUD_KMS = "CLOUD_KMS"
    BYOK = "BYOK"
    SOFTWARE = "SOFTWARE"


class KeyStatus(StrEnum):
    ACTIVE = "ACTIVE"
    DECRYPT_ONLY = "DECRYPT_ONLY"
    REVOKED = "REVOKED"


class TransferStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


class EncryptionConfig(PlatformModel):
    """Per-tenant encryption settings. At most one row per tenant."""

    __tablename__ = "cos_encryption_configs"
    __table_args__ = (UniqueConstraint("tenant_id", name="uq_cos_encryption_configs_tenant"),)

    key_management_type: Mapped[str] = mapped_column(String(20), nullable=False, default=KeyManagementType.SOFTWARE)
    algorithm: Mapped[str] = mapped_column(String(30), nullable=False, default="AES_256_GCM")
    rotation_interval_days: Mapped[int] = mapped_column(Integer, nullable=False, default=90)
    auto_rotation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notification_days: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    client_side_encryption: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    compliance_requirements: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)


class EncryptionKey(PlatformModel):
    """One version of a tenant data key, stored wrapped by the key provider.

    The plaintext data key is never persisted.
    """

    __tablename__ = "cos_encryption_keys"
    __table_args__ = (UniqueConstraint("tenant_id", "version", name="uq_cos_encryption_keys_version"),)

    config_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_encryption_configs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=KeyStatus.ACTIVE, index=True)
    wrapped_key: Mapped[str] = mapped_column(Text, nullable=False, comment="Base64 of the provider-wrapped data key")
    provider_key_id: Mapped[str] = mapped_column(String(255), nullable=False)
    activated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    retired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DataResidencyConfig(PlatformModel):
    """Where an organization's data may live. At most one row per tenant."""

    __tablename__ = "cos_data_residency_configs"
    __table_args__ = (UniqueConstraint("tenant_id", name="uq_cos_data_residency_configs_tenant"),)

    primary_region: Mapped[str] = mapped_column(String(50), nullable=False)
    backup_regions: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)  # type: ignore[type-arg]
    residency_requirements: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)  # type: ignore[type-arg]
    compliance_certifications: Mapped[list] = mapped_column(  # type: ignore[type-arg]
        JSONB, nullable=False, default=list
    )
    last_validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DataTransfer(PlatformModel):
    """A requested movement of data between regions."""

    __tablename__ = "cos_data_transfers"

    source_region: Mapped[str] = mapped_column(String(50), nullable=False)
    destination_region: Mapped[str] = mapped_column(String(50), nullable=False)
    data_type: Mapped[str] = mapped_column(String(100), nullable=False)
    transfer_reason: Mapped[str] = mapped_column(Text, nullable=False)
    legal_basis: Mapped[str] = mapped_column(String(255), nullable=False)
    requested_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    authorized_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TransferStatus.PENDING, index=True)
    transferred_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Identity: SSO providers, SCIM, directory users
# ---------------------------------------------------------------------------


class SSOProtocol(StrEnum):
    SAML = "SAML"
    OIDC = "OIDC"


class SyncStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class IdentityProvider(PlatformModel):
    """SAML or OIDC single sign-on configuration for an organization."""

    __tablename__ = "cos_identity_providers"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    protocol: Mapped[str] = mapped_column(String(10), nullable=False, default=SSOProtocol.SAML)
    entity_id: Mapped[str] = mapped_column(String(1024), nullable=False)
    sso_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    certificate: Mapped[str | None] = mapped_column(Text, nullable=True)
    attribute_mapping: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)  # type: ignore[type-arg]
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class SCIMEndpoint(PlatformModel):
    """A remote SCIM 2.0 server we pull users from.

    bearer_token_encrypted holds the token encrypted with the tenant data key
    (see enterprise.encryption); it is never returned by the API.
    """

    __tablename__ = "cos_scim_endpoints"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    base_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    bearer_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    sync_frequency_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    sync_status: Mapped[str] = mapped_column(String(20), nullable=False, default=SyncStatus.PENDING)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_sync_result: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)  # type: ignore[type-arg]
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class DirectoryUser(PlatformModel):
    """A user provisioned from an external directory, keyed by email within the tenant."""

    __tablename__ = "cos_directory_users"
    __table_args__ = (UniqueConstraint("tenant_id", "email", name="uq_cos_directory_users_email"),)

    email: Mapped[str] = mapped_column(String(320), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class OrganizationMember(PlatformModel):
    """Membership of a directory user in the organization, with its org role."""

    __tablename__ = "cos_organization_members"
    __table_args__ = (UniqueConstraint("tenant_id", "user_id", name="uq_cos_organization_members_user"),)

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cos_directory_users.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(30), nullable=False, default="USER")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


# ---------------------------------------------------------------------------
# Activity trail (separate database)
# ---------------------------------------------------------------------------


class ActivityEntry(PlatformModel):
    """IMMUTABLE activity trail entry. Written only via ActivityTrailRepository.

    Attributes:
        event_type: Dot-notation event type, e.g. "compliance.audit_run.locked".
        actor_id: User who performed the action (nil UUID for system actions).
        resource_type: Affected resource kind.
        resource_id: Affected resource UUID.
        action: Short verb (create, update, lock, ...).
        details: Event-specific payload.
        timestamp: When the action happened (UTC).
        source_service: Emitting service name.
        correlation_id: Request correlation ID.
    """

    __tablename__ = "cos_activity_entries"

    event_type: Mapped[str] = mapped_column(String(150), nullable=False, index=True)
    actor_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    resource_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    details: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)  # type: ignore[type-arg]
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    source_service: Mapped[str] = mapped_column(String(100), nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
