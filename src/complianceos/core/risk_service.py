"""Risk register: scoring, assessments, treatments and mappings.

Scoring is qualitative: risk_score = likelihood x impact on two 1..6 scales,
so scores range 1..36. Severity bands:

    score <= 4   LOW
    score <= 9   MEDIUM
    score <= 16  HIGH
    score <= 25  VERY_HIGH
    otherwise    CRITICAL
"""

import uuid
from datetime import datetime
from typing import Any

from complianceos.common.auth import TenantContext
from complianceos.common.database import to_page
from complianceos.common.errors import ConflictError, ValidationError
from complianceos.common.observability import get_logger
from complianceos.core.interfaces import IEventPublisher
from complianceos.core.models import (
    Impact,
    Likelihood,
    Risk,
    RiskAssessment,
    RiskCategory,
    RiskControlMapping,
    RiskPolicyMapping,
    RiskSeverity,
    RiskStatus,
    RiskTreatment,
    TreatmentStatus,
    TreatmentStrategy,
)
from complianceos.core.services import ActivityService, TrackedService, reject_nulls, utcnow

logger = get_logger(__name__)

_SEVERITY_BANDS: tuple[tuple[int, str], ...] = (
    (4, RiskSeverity.LOW),
    (9, RiskSeverity.MEDIUM),
    (16, RiskSeverity.HIGH),
    (25, RiskSeverity.VERY_HIGH),
)

_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {"title", "description", "category", "subcategory", "likelihood", "impact", "status", "owner_id", "business_unit",
     "residual_likelihood", "residual_impact"}
)

_NON_NULLABLE_FIELDS: frozenset[str] = frozenset({"title", "category", "likelihood", "impact", "status"})


def calculate_risk_score(likelihood: int, impact: int) -> int:
    """Return likelihood x impact after validating both scales.

    Raises:
        ValidationError: If either value is outside 1..6.
    """
    if likelihood not in Likelihood._value2member_map_:
        raise ValidationError(message="likelihood must be between 1 and 6", field="likelihood")
    if impact not in Impact._value2member_map_:
        raise ValidationError(message="impact must be between 1 and 6", field="impact")
    return likelihood * impact


def severity_for_score(score: int) -> str:
    for upper, severity in _SEVERITY_BANDS:
        if score <= upper:
            return severity
    return RiskSeverity.CRITICAL


class RiskService(TrackedService):
    """Risk register operations.

    Args:
        risk_repo: RiskRepository.
        assessment_repo: Repository for RiskAssessment.
        treatment_repo: Repository for RiskTreatment.
        control_mapping_repo: Repository for RiskControlMapping.
        policy_mapping_repo: Repository for RiskPolicyMapping.
        control_repo: ControlRepository, to validate control mappings.
        policy_repo: PolicyRepository, to validate policy mappings.
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(
        self,
        risk_repo: Any,
        assessment_repo: Any,
        treatment_repo: Any,
        control_mapping_repo: Any,
        policy_mapping_repo: Any,
        control_repo: Any,
        policy_repo: Any,
        activity: ActivityService,
        event_publisher: IEventPublisher,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._risk_repo = risk_repo
        self._assessment_repo = assessment_repo
        self._treatment_repo = treatment_repo
        self._control_mapping_repo = control_mapping_repo
        self._policy_mapping_repo = policy_mapping_repo
        self._control_repo = control_repo
        self._policy_repo = policy_repo

    # ------------------------------------------------------------------
    # Risks
    # ------------------------------------------------------------------

    async def create_risk(
        self,
        tenant: TenantContext,
        title: str,
        category: str,
        likelihood: int,
        impact: int,
        description: str | None = None,
        subcategory: str | None = None,
        owner_id: uuid.UUID | None = None,
        business_unit: str | None = None,
        correlation_id: str | None = None,
    ) -> Risk:
        """Register a risk with its computed score and severity.

        Raises:
            ValidationError: On a blank title, unknown category, or out-of-range scale.
        """
        if not title or not title.strip():
            raise ValidationError(message="Risk title is required", field="title")
        if category not in RiskCategory.__members__:
            raise ValidationError(message=f"Unknown risk category '{category}'", field="category")

        score = calculate_risk_score(likelihood, impact)
        risk = await self._risk_repo.add(
            Risk(
                tenant_id=tenant.tenant_id,
                title=title.strip(),
                description=description,
                category=category,
                subcategory=subcategory,
                likelihood=likelihood,
                impact=impact,
                risk_score=score,
                severity=severity_for_score(score),
                status=RiskStatus.IDENTIFIED,
                owner_id=owner_id,
                business_unit=business_unit,
                identified_by=tenant.user_id,
            )
        )
        await self._track(
            tenant,
            "compliance.risk.created",
            "risk",
            risk.id,
            "create",
            {"risk_score": score, "severity": risk.severity, "category": category},
            correlation_id,
        )
        logger.info("Risk created", risk_id=str(risk.id), risk_score=score, severity=risk.severity)
        return risk

    async def update_risk(
        self,
        risk_id: uuid.UUID,
        tenant: TenantContext,
        changes: dict[str, Any],
        correlation_id: str | None = None,
    ) -> Risk:
        """Apply changes; score and severity are recomputed when likelihood or impact change.

        Raises:
            ValidationError: On an unknown or non-updatable field, a null required field,
                a blank title, or a category or status outside its enumeration.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(message=f"Fields cannot be updated: {sorted(unknown)}", field=sorted(unknown)[0])
        reject_nulls(changes, _NON_NULLABLE_FIELDS)
        if "title" in changes and not changes["title"].strip():
            raise ValidationError(message="Risk title is required", field="title")
        if "category" in changes and changes["category"] not in RiskCategory.__members__:
            raise ValidationError(message=f"Unknown risk category '{changes['category']}'", field="category")
        if "status" in changes and changes["status"] not in RiskStatus.__members__:
            raise ValidationError(message=f"Unknown risk status '{changes['status']}'", field="status")

        risk = await self._risk_repo.get_by_id(risk_id, tenant.tenant_id)
        for field_name, value in changes.items():
            setattr(risk, field_name, value)

        if "likelihood" in changes or "impact" in changes:
            risk.risk_score = calculate_risk_score(risk.likelihood, risk.impact)
            risk.severity = severity_for_score(risk.risk_score)
        if risk.residual_likelihood is not None and risk.residual_impact is not None:
            risk.residual_score = calculate_risk_score(risk.residual_likelihood, risk.residual_impact)

        risk = await self._risk_repo.save(risk)
        await self._track(
            tenant,
            "compliance.risk.updated",
            "risk",
            risk_id,
            "update",
            {"fields": sorted(changes), "risk_score": risk.risk_score},
            correlation_id,
        )
        return risk

    async def get_risk(self, risk_id: uuid.UUID, tenant: TenantContext) -> Risk:
        return await self._risk_repo.get_by_id(risk_id, tenant.tenant_id)

    async def list_risks(
        self,
        tenant: TenantContext,
        category: str | None = None,
        status_filter: str | None = None,
        severity: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        filters = []
        if category:
            filters.append(Risk.category == category)
        if status_filter:
            filters.append(Risk.status == status_filter)
        if severity:
            filters.append(Risk.severity == severity)
        rows, total = await self._risk_repo.list_page(
            tenant.tenant_id, filters, page, page_size, order_by=[Risk.risk_score.desc(), Risk.created_at.desc()]
        )
        return to_page(rows, total, page, page_size)

    async def search_risks(self, tenant: TenantContext, query: str) -> list[Risk]:
        if not query.strip():
            raise ValidationError(message="Search query is required", field="q")
        return await self._risk_repo.search(tenant.tenant_id, query.strip())

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------

    async def add_assessment(
        self,
        risk_id: uuid.UUID,
        tenant: TenantContext,
        likelihood: int,
        impact: int,
        methodology: str = "QUALITATIVE",
        notes: str | None = None,
        correlation_id: str | None = None,
    ) -> RiskAssessment:
        """Record an assessment and carry its scores onto the risk.

        An IDENTIFIED risk moves to ASSESSED.
        """
        risk = await self._risk_repo.get_by_id(risk_id, tenant.tenant_id)
        score = calculate_risk_score(likelihood, impact)

        assessment = await self._assessment_repo.add(
            RiskAssessment(
                tenant_id=tenant.tenant_id,
                risk_id=risk_id,
                methodology=methodology,
                likelihood=likelihood,
                impact=impact,
                risk_score=score,
                notes=notes,
                assessed_by=tenant.user_id,
            )
        )
        risk.likelihood = likelihood
        risk.impact = impact
        risk.risk_score = score
        risk.severity = severity_for_score(score)
        if risk.status == RiskStatus.IDENTIFIED:
            risk.status = RiskStatus.ASSESSED
        await self._risk_repo.save(risk)

        await self._track(
            tenant,
            "compliance.risk.assessed",
            "risk",
            risk_id,
            "assess",
            {"assessment_id": str(assessment.id), "risk_score": score, "methodology": methodology},
            correlation_id,
        )
        return assessment

    async def list_assessments(self, risk_id: uuid.UUID, tenant: TenantContext) -> list[RiskAssessment]:
        await self._risk_repo.get_by_id(risk_id, tenant.tenant_id)
        return await self._assessment_repo.list_where(
            tenant.tenant_id, [RiskAssessment.risk_id == risk_id], order_by=[RiskAssessment.created_at.desc()]
        )

    async def approve_assessment(
        self,
        assessment_id: uuid.UUID,
        tenant: TenantContext,
        correlation_id: str | None = None,
    ) -> RiskAssessment:
        assessment = await self._assessment_repo.get_by_id(assessment_id, tenant.tenant_id)
        if assessment.approved_at is not None:
            raise ConflictError(message="Assessment is already approved")
        assessment.approved_by = tenant.user_id
        assessment.approved_at = utcnow()
        assessment = await self._assessment_repo.save(assessment)
        await self._track(
            tenant,
            "compliance.risk.assessment_approved",
            "risk",
            assessment.risk_id,
            "approve_assessment",
            {"assessment_id": str(assessment_id)},
            correlation_id,
        )
        return assessment

    # ------------------------------------------------------------------
    # Treatments
    # ------------------------------------------------------------------

    async def add_treatment(
        self,
        risk_id: uuid.UUID,
        tenant: TenantContext,
        title: str,
        strategy: str,
        description: str | None = None,
        owner_id: uuid.UUID | None = None,
        estimated_cost: float | None = None,
        target_date: datetime | None = None,
        correlation_id: str | None = None,
    ) -> RiskTreatment:
        """Plan a treatment. IDENTIFIED or ASSESSED risks move to TREATMENT_PLANNED."""
        if strategy not in TreatmentStrategy.__members__:
            raise ValidationError(message=f"Unknown treatment strategy '{strategy}'", field="strategy")

        risk = await self._risk_repo.get_by_id(risk_id, tenant.tenant_id)
        treatment = await self._treatment_repo.add(
            RiskTreatment(
                tenant_id=tenant.tenant_id,
                risk_id=risk_id,
                title=title,
                description=description,
                strategy=strategy,
                status=TreatmentStatus.PLANNED,
                owner_id=owner_id,
                estimated_cost=estimated_cost,
                target_date=target_date,
            )
        )
        if risk.status in (RiskStatus.IDENTIFIED, RiskStatus.ASSESSED):
            risk.status = RiskStatus.TREATMENT_PLANNED
            await self._risk_repo.save(risk)

        await self._track(
            tenant,
            "compliance.risk.treatment_added",
            "risk",
            risk_id,
            "add_treatment",
            {"treatment_id": str(treatment.id), "strategy": strategy},
            correlation_id,
        )
        return treatment

    async def complete_treatment(
        self,
        treatment_id: uuid.UUID,
        tenant: TenantContext,
        actual_cost: float | None = None,
        effectiveness: int | None = None,
        correlation_id: str | None = None,
    ) -> RiskTreatment:
        """Complete a treatment and move its risk to TREATMENT_IMPLEMENTED."""
        if effectiveness is not None and not 0 <= effectiveness <= 100:
            raise ValidationError(message="effectiveness must be between 0 and 100", field="effectiveness")

        treatment = await self._treatment_repo.get_by_id(treatment_id, tenant.tenant_id)
        treatment.status = TreatmentStatus.COMPLETED
        treatment.actual_completion_date = utcnow()
        treatment.actual_cost = actual_cost
        treatment.effectiveness = effectiveness
        treatment = await self._treatment_repo.save(treatment)

        risk = await self._risk_repo.get_by_id(treatment.risk_id, tenant.tenant_id)
        risk.status = RiskStatus.TREATMENT_IMPLEMENTED
        await self._risk_repo.save(risk)

        await self._track(
            tenant,
            "compliance.risk.treatment_completed",
            "risk",
            risk.id,
            "complete_treatment",
            {"treatment_id": str(treatment_id), "effectiveness": effectiveness},
            correlation_id,
        )
        return treatment

    # ------------------------------------------------------------------
    # Mappings
    # ------------------------------------------------------------------

    async def map_control(
        self,
        risk_id: uuid.UUID,
        control_id: uuid.UUID,
        tenant: TenantContext,
        mapping_type: str = "DIRECT",
        effectiveness: int | None = None,
        notes: str | None = None,
        correlation_id: str | None = None,
    ) -> RiskControlMapping:
        await self._risk_repo.get_by_id(risk_id, tenant.tenant_id)
        await self._control_repo.get_by_id(control_id, tenant.tenant_id)
        existing = await self._control_mapping_repo.count(
            tenant.tenant_id,
            [RiskControlMapping.risk_id == risk_id, RiskControlMapping.control_id == control_id],
        )
        if existing:
            raise ConflictError(message="Control is already mapped to this risk")

        mapping = await self._control_mapping_repo.add(
            RiskControlMapping(
                tenant_id=tenant.tenant_id,
                risk_id=risk_id,
                control_id=control_id,
                mapping_type=mapping_type,
                effectiveness=effectiveness,
                notes=notes,
            )
        )
        await self._track(
            tenant,
            "compliance.risk.control_mapped",
            "risk",
            risk_id,
            "map_control",
            {"control_id": str(control_id), "mapping_type": mapping_type},
            correlation_id,
        )
        return mapping

    async def map_policy(
        self,
        risk_id: uuid.UUID,
        policy_id: uuid.UUID,
        tenant: TenantContext,
        notes: str | None = None,
        correlation_id: str | None = None,
    ) -> RiskPolicyMapping:
        await self._risk_repo.get_by_id(risk_id, tenant.tenant_id)
        await self._policy_repo.get_by_id(policy_id, tenant.tenant_id)
        existing = await self._policy_mapping_repo.count(
            tenant.tenant_id,
            [RiskPolicyMapping.risk_id == risk_id, RiskPolicyMapping.policy_id == policy_id],
        )
        if existing:
            raise ConflictError(message="Policy is already mapped to this risk")

        mapping = await self._policy_mapping_repo.add(
            RiskPolicyMapping(tenant_id=tenant.tenant_id, risk_id=risk_id, policy_id=policy_id, notes=notes)
        )
        await self._track(
            tenant,
            "compliance.risk.policy_mapped",
            "risk",
            risk_id,
            "map_policy",
            {"policy_id": str(policy_id)},
            correlation_id,
        )
        return mapping

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    async def risk_analytics(self, tenant: TenantContext) -> dict[str, Any]:
        by_severity = await self._risk_repo.count_by(tenant.tenant_id, Risk.severity)
        return {
            "total": sum(by_severity.values()),
            "by_severity": by_severity,
            "by_status": await self._risk_repo.count_by(tenant.tenant_id, Risk.status),
            "by_category": await self._risk_repo.count_by(tenant.tenant_id, Risk.category),
            "average_score": round(await self._risk_repo.average_score(tenant.tenant_id), 2),
        }

    async def treatment_effectiveness(self, tenant: TenantContext) -> dict[str, Any]:
        """Average effectiveness of completed treatments and budget variance.

        budget_variance_pct = (sum(actual) - sum(estimated)) / sum(estimated) x 100,
        and 0 when nothing was estimated.
        """
        completed: list[RiskTreatment] = await self._treatment_repo.list_where(
            tenant.tenant_id, [RiskTreatment.status == TreatmentStatus.COMPLETED]
        )
        scored = [t.effectiveness for t in completed if t.effectiveness is not None]
        estimated = sum(t.estimated_cost or 0.0 for t in completed)
        actual = sum(t.actual_cost or 0.0 for t in completed)
        return {
            "completed_treatments": len(completed),
            "average_effectiveness": round(sum(scored) / len(scored), 2) if scored else 0.0,
            "total_estimated_cost": estimated,
            "total_actual_cost": actual,
            "budget_variance_pct": round((actual - estimated) / estimated * 100, 2) if estimated else 0.0,
        }
