"""Executive governance: dashboards, KPI metrics, alerts and cross-module analytics.

The analytics methods aggregate over policies, acknowledgments, risks,
controls, evidence and tasks of one tenant. They run their queries one after
another on the request session.
"""

import uuid
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from complianceos.common.auth import TenantContext
from complianceos.common.database import to_page
from complianceos.common.errors import ValidationError
from complianceos.common.observability import get_logger
from complianceos.core.interfaces import IEventPublisher
from complianceos.core.models import (
    AcknowledgmentStatus,
    AlertSeverity,
    AlertStatus,
    Control,
    ControlStatus,
    Evidence,
    EvidenceStatus,
    GovernanceAlert,
    GovernanceDashboard,
    GovernanceMetric,
    Policy,
    PolicyAcknowledgment,
    PolicyStatus,
    Risk,
    RiskSeverity,
    RiskStatus,
    Task,
    TaskStatus,
)
from complianceos.core.services import ActivityService, TrackedService, utcnow

logger = get_logger(__name__)

WIDGET_TYPES: tuple[str, ...] = (
    "POLICY_COMPLIANCE_SCORE",
    "RISK_EXPOSURE_OVERVIEW",
    "COMPLIANCE_STATUS",
    "RISK_HEATMAP",
    "POLICY_COMPLIANCE_TRENDS",
    "RISK_TRENDS",
    "RECENT_ALERTS",
)

ALERT_POLICY_OVERDUE = "POLICY_OVERDUE"
ALERT_RISK_THRESHOLD = "RISK_THRESHOLD"

ACKNOWLEDGMENT_GRACE_DAYS = 7
EXPIRING_EVIDENCE_DAYS = 30
DEFAULT_TREND_DAYS = 30
RECENT_ALERTS_LIMIT = 10
WIDGET_ALERTS_LIMIT = 5
METRICS_LIMIT = 50

_DASHBOARD_FIELDS = frozenset({"name", "description", "layout", "widgets"})
_METRIC_FIELDS = frozenset({"name", "category", "value", "target", "unit", "thresholds"})


def rate(part: int, total: int) -> float:
    """Percentage rounded to 2 dp; 0.0 when total is 0."""
    return round(part / total * 100, 2) if total > 0 else 0.0


class GovernanceService(TrackedService):
    """Dashboards, metrics, alerts and executive analytics.

    Args:
        dashboard_repo: DashboardRepository.
        metric_repo: Repository for GovernanceMetric.
        alert_repo: AlertRepository.
        policy_repo: PolicyRepository.
        ack_repo: AcknowledgmentRepository.
        risk_repo: RiskRepository.
        control_repo: ControlRepository.
        evidence_repo: EvidenceRepository.
        task_repo: TaskRepository.
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(
        self,
        dashboard_repo: Any,
        metric_repo: Any,
        alert_repo: Any,
        policy_repo: Any,
        ack_repo: Any,
        risk_repo: Any,
        control_repo: Any,
        evidence_repo: Any,
        task_repo: Any,
        activity: ActivityService,
        event_publisher: IEventPublisher,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._dashboard_repo = dashboard_repo
        self._metric_repo = metric_repo
        self._alert_repo = alert_repo
        self._policy_repo = policy_repo
        self._ack_repo = ack_repo
        self._risk_repo = risk_repo
        self._control_repo = control_repo
        self._evidence_repo = evidence_repo
        self._task_repo = task_repo

    # ------------------------------------------------------------------
    # Dashboards
    # ------------------------------------------------------------------

    async def create_dashboard(
        self,
        tenant: TenantContext,
        name: str,
        description: str | None = None,
        layout: dict[str, Any] | None = None,
        widgets: list[dict[str, Any]] | None = None,
        is_default: bool = False,
        correlation_id: str | None = None,
    ) -> GovernanceDashboard:
        self._check_widgets(widgets or [])
        dashboard = await self._dashboard_repo.add(
            GovernanceDashboard(
                tenant_id=tenant.tenant_id,
                name=name,
                description=description,
                layout=layout or {},
                widgets=widgets or [],
                is_default=is_default,
                created_by=tenant.user_id,
            )
        )
        if is_default:
            await self._dashboard_repo.clear_default(tenant.tenant_id, dashboard.id)
        await self._track(
            tenant, "compliance.dashboard.created", "dashboard", dashboard.id, "create", {"name": name}, correlation_id
        )
        return dashboard

    async def list_dashboards(self, tenant: TenantContext) -> list[GovernanceDashboard]:
        return await self._dashboard_repo.list_where(
            tenant.tenant_id,
            order_by=[GovernanceDashboard.is_default.desc(), GovernanceDashboard.created_at.desc()],
        )

    async def get_dashboard(self, dashboard_id: uuid.UUID, tenant: TenantContext) -> GovernanceDashboard:
        return await self._dashboard_repo.get_by_id(dashboard_id, tenant.tenant_id)

    async def update_dashboard(
        self,
        dashboard_id: uuid.UUID,
        tenant: TenantContext,
        changes: dict[str, Any],
        correlation_id: str | None = None,
    ) -> GovernanceDashboard:
        dashboard = await self.get_dashboard(dashboard_id, tenant)
        if "widgets" in changes:
            self._check_widgets(changes["widgets"] or [])
        for key, value in changes.items():
            if key in _DASHBOARD_FIELDS and value is not None:
                setattr(dashboard, key, value)
        dashboard = await self._dashboard_repo.save(dashboard)
        await self._track(
            tenant,
            "compliance.dashboard.updated",
            "dashboard",
            dashboard.id,
            "update",
            {"fields": sorted(k for k in changes if k in _DASHBOARD_FIELDS)},
            correlation_id,
        )
        return dashboard

    async def delete_dashboard(
        self, dashboard_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> None:
        dashboard = await self.get_dashboard(dashboard_id, tenant)
        await self._dashboard_repo.delete(dashboard)
        await self._track(
            tenant, "compliance.dashboard.deleted", "dashboard", dashboard_id, "delete", {}, correlation_id
        )

    async def set_default_dashboard(
        self, dashboard_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> GovernanceDashboard:
        """Make one dashboard the tenant default and clear the flag on the rest."""
        dashboard = await self.get_dashboard(dashboard_id, tenant)
        await self._dashboard_repo.clear_default(tenant.tenant_id, dashboard.id)
        dashboard.is_default = True
        dashboard = await self._dashboard_repo.save(dashboard)
        await self._track(
            tenant, "compliance.dashboard.default_set", "dashboard", dashboard.id, "set_default", {}, correlation_id
        )
        return dashboard

    @staticmethod
    def _check_widgets(widgets: list[dict[str, Any]]) -> None:
        for widget in widgets:
            widget_type = widget.get("type")
            if widget_type not in WIDGET_TYPES:
                raise ValidationError(message=f"Unknown widget type '{widget_type}'", field="widgets")

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def create_metric(
        self,
        tenant: TenantContext,
        name: str,
        value: float,
        category: str | None = None,
        target: float | None = None,
        unit: str | None = None,
        thresholds: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> GovernanceMetric:
        metric = await self._metric_repo.add(
            GovernanceMetric(
                tenant_id=tenant.tenant_id,
                name=name,
                category=category,
                value=value,
                target=target,
                unit=unit,
                thresholds=thresholds or {},
                last_updated=utcnow(),
            )
        )
        await self._track(
            tenant,
            "compliance.metric.created",
            "metric",
            metric.id,
            "create",
            {"name": name, "value": value},
            correlation_id,
        )
        return metric

    async def list_metrics(self, tenant: TenantContext, category: str | None = None) -> list[GovernanceMetric]:
        """The 50 most recently updated metrics."""
        filters = [GovernanceMetric.category == category] if category else []
        return await self._metric_repo.list_where(
            tenant.tenant_id, filters, order_by=[GovernanceMetric.last_updated.desc()], limit=METRICS_LIMIT
        )

    async def update_metric(
        self,
        metric_id: uuid.UUID,
        tenant: TenantContext,
        changes: dict[str, Any],
        correlation_id: str | None = None,
    ) -> GovernanceMetric:
        metric = await self._metric_repo.get_by_id(metric_id, tenant.tenant_id)
        for key, value in changes.items():
            if key in _METRIC_FIELDS and value is not None:
                setattr(metric, key, value)
        metric.last_updated = utcnow()
        metric = await self._metric_repo.save(metric)
        await self._track(
            tenant, "compliance.metric.updated", "metric", metric.id, "update", {"value": metric.value}, correlation_id
        )
        return metric

    async def delete_metric(
        self, metric_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> None:
        metric = await self._metric_repo.get_by_id(metric_id, tenant.tenant_id)
        await self._metric_repo.delete(metric)
        await self._track(tenant, "compliance.metric.deleted", "metric", metric_id, "delete", {}, correlation_id)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def create_alert(
        self,
        tenant: TenantContext,
        alert_type: str,
        severity: str,
        title: str,
        message: str,
        source_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> GovernanceAlert:
        if severity not in AlertSeverity.__members__:
            raise ValidationError(message=f"Unknown alert severity '{severity}'", field="severity")
        alert = await self._alert_repo.add(
            GovernanceAlert(
                tenant_id=tenant.tenant_id,
                alert_type=alert_type,
                severity=severity,
                title=title,
                message=message,
                source_id=source_id,
                meta=metadata or {},
                status=AlertStatus.ACTIVE,
            )
        )
        logger.info("Governance alert raised", alert_id=str(alert.id), alert_type=alert_type, severity=severity)
        await self._track(
            tenant,
            "compliance.alert.created",
            "alert",
            alert.id,
            "create",
            {"alert_type": alert_type, "severity": severity},
            correlation_id,
        )
        return alert

    async def list_alerts(
        self,
        tenant: TenantContext,
        status: str | None = None,
        severity: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> dict[str, Any]:
        filters = []
        if status:
            filters.append(GovernanceAlert.status == status)
        if severity:
            filters.append(GovernanceAlert.severity == severity)
        rows, total = await self._alert_repo.list_page(tenant.tenant_id, filters, page, page_size)
        return to_page(rows, total, page, page_size)

    async def acknowledge_alert(
        self, alert_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> GovernanceAlert:
        alert = await self._alert_repo.get_by_id(alert_id, tenant.tenant_id)
        if alert.status != AlertStatus.ACTIVE:
            raise ValidationError(message=f"Cannot acknowledge an alert in status {alert.status}", field="status")
        alert.status = AlertStatus.ACKNOWLEDGED
        alert.acknowledged_by = tenant.user_id
        alert.acknowledged_at = utcnow()
        return await self._close_alert(alert, tenant, "acknowledge", correlation_id)

    async def resolve_alert(
        self, alert_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> GovernanceAlert:
        alert = await self._alert_repo.get_by_id(alert_id, tenant.tenant_id)
        if alert.status in (AlertStatus.RESOLVED, AlertStatus.DISMISSED):
            raise ValidationError(message=f"Alert is already {alert.status}", field="status")
        alert.status = AlertStatus.RESOLVED
        alert.resolved_by = tenant.user_id
        alert.resolved_at = utcnow()
        return await self._close_alert(alert, tenant, "resolve", correlation_id)

    async def dismiss_alert(
        self, alert_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> GovernanceAlert:
        alert = await self._alert_repo.get_by_id(alert_id, tenant.tenant_id)
        if alert.status in (AlertStatus.RESOLVED, AlertStatus.DISMISSED):
            raise ValidationError(message=f"Alert is already {alert.status}", field="status")
        alert.status = AlertStatus.DISMISSED
        return await self._close_alert(alert, tenant, "dismiss", correlation_id)

    async def _close_alert(
        self, alert: GovernanceAlert, tenant: TenantContext, action: str, correlation_id: str | None
    ) -> GovernanceAlert:
        alert = await self._alert_repo.save(alert)
        await self._track(
            tenant, f"compliance.alert.{alert.status.lower()}", "alert", alert.id, action, {}, correlation_id
        )
        return alert

    async def generate_alerts(self, tenant: TenantContext, correlation_id: str | None = None) -> list[GovernanceAlert]:
        """Raise POLICY_OVERDUE and RISK_THRESHOLD alerts that are not already active.

        Returns:
            The alerts created by this run.
        """
        created = await self._policy_overdue_alerts(tenant, correlation_id)
        created.extend(await self._risk_threshold_alerts(tenant, correlation_id))
        logger.info("Alert generation finished", tenant_id=str(tenant.tenant_id), created=len(created))
        return created

    async def _policy_overdue_alerts(self, tenant: TenantContext, correlation_id: str | None) -> list[GovernanceAlert]:
        cutoff = utcnow() - timedelta(days=ACKNOWLEDGMENT_GRACE_DAYS)
        pending = await self._ack_repo.list_where(
            tenant.tenant_id,
            [PolicyAcknowledgment.status == AcknowledgmentStatus.PENDING, PolicyAcknowledgment.created_at < cutoff],
        )
        policies: dict[uuid.UUID, Policy | None] = {}
        created: list[GovernanceAlert] = []
        for ack in pending:
            source_id = str(ack.id)
            if await self._alert_repo.active_exists(tenant.tenant_id, ALERT_POLICY_OVERDUE, source_id):
                continue
            if ack.policy_id not in policies:
                policies[ack.policy_id] = await self._policy_repo.find_by_id(ack.policy_id, tenant.tenant_id)
            policy = policies[ack.policy_id]
            title = policy.title if policy is not None else str(ack.policy_id)
            created.append(
                await self.create_alert(
                    tenant,
                    alert_type=ALERT_POLICY_OVERDUE,
                    severity=AlertSeverity.MEDIUM,
                    title="Overdue Policy Acknowledgment",
                    message=f'User {ack.user_id} has not acknowledged policy "{title}" within the required timeframe.',
                    source_id=source_id,
                    metadata={
                        "acknowledgment_id": source_id,
                        "policy_id": str(ack.policy_id),
                        "user_id": str(ack.user_id),
                    },
                    correlation_id=correlation_id,
                )
            )
        return created

    async def _risk_threshold_alerts(self, tenant: TenantContext, correlation_id: str | None) -> list[GovernanceAlert]:
        risks = await self._risk_repo.list_where(
            tenant.tenant_id,
            [Risk.severity == RiskSeverity.CRITICAL, Risk.status.in_([RiskStatus.IDENTIFIED, RiskStatus.ASSESSED])],
        )
        created: list[GovernanceAlert] = []
        for risk in risks:
            source_id = str(risk.id)
            if await self._alert_repo.active_exists(tenant.tenant_id, ALERT_RISK_THRESHOLD, source_id):
                continue
            created.append(
                await self.create_alert(
                    tenant,
                    alert_type=ALERT_RISK_THRESHOLD,
                    severity=AlertSeverity.CRITICAL,
                    title="Critical Risk Identified",
                    message=f'Risk "{risk.title}" has been identified as CRITICAL and requires immediate attention.',
                    source_id=source_id,
                    metadata={"risk_id": source_id, "risk_title": risk.title, "severity": risk.severity},
                    correlation_id=correlation_id,
                )
            )
        return created

    # ------------------------------------------------------------------
    # Executive analytics
    # ------------------------------------------------------------------

    async def executive_dashboard(self, tenant: TenantContext) -> dict[str, Any]:
        return {
            "policy_compliance": await self.policy_compliance(tenant),
            "risk_exposure": await self.risk_exposure(tenant),
            "compliance_status": await self.compliance_status(tenant),
            "recent_alerts": await self.recent_alerts(tenant, RECENT_ALERTS_LIMIT),
        }

    async def policy_compliance(self, tenant: TenantContext) -> dict[str, Any]:
        tid = tenant.tenant_id
        total_policies = await self._policy_repo.count(tid)
        published = await self._policy_repo.count(tid, [Policy.status == PolicyStatus.PUBLISHED])
        acks = await self._ack_repo.count_by(tid, PolicyAcknowledgment.status)
        total_acks = sum(acks.values())
        acknowledged = acks.get(AcknowledgmentStatus.ACKNOWLEDGED, 0)
        return {
            "total_policies": total_policies,
            "published_policies": published,
            "total_acknowledgments": total_acks,
            "acknowledged": acknowledged,
            "overdue_acknowledgments": acks.get(AcknowledgmentStatus.OVERDUE, 0),
            "compliance_rate": rate(acknowledged, total_acks),
        }

    async def risk_exposure(self, tenant: TenantContext) -> dict[str, Any]:
        by_severity = await self._risk_repo.count_by(tenant.tenant_id, Risk.severity)
        by_status = await self._risk_repo.count_by(tenant.tenant_id, Risk.status)
        return {
            "total_risks": sum(by_severity.values()),
            "critical_risks": by_severity.get(RiskSeverity.CRITICAL, 0),
            "high_risks": by_severity.get(RiskSeverity.HIGH, 0) + by_severity.get(RiskSeverity.VERY_HIGH, 0),
            "by_severity": {s.value: by_severity.get(s.value, 0) for s in RiskSeverity},
            "by_status": {s.value: by_status.get(s.value, 0) for s in RiskStatus},
        }

    async def compliance_status(self, tenant: TenantContext) -> dict[str, Any]:
        tid = tenant.tenant_id
        now = utcnow()
        controls = await self._control_repo.count_by(tid, Control.status)
        total_controls = sum(controls.values())
        met = controls.get(ControlStatus.MET, 0)
        partial = controls.get(ControlStatus.PARTIAL, 0)

        total_evidence = await self._evidence_repo.count(tid)
        approved_evidence = await self._evidence_repo.count(tid, [Evidence.status == EvidenceStatus.APPROVED])
        expiring_evidence = await self._evidence_repo.count(
            tid,
            [Evidence.expiry_date.is_not(None), Evidence.expiry_date <= now + timedelta(days=EXPIRING_EVIDENCE_DAYS)],
        )

        tasks = await self._task_repo.count_by(tid, Task.status)
        total_tasks = sum(tasks.values())
        completed_tasks = tasks.get(TaskStatus.COMPLETED, 0)
        overdue_tasks = await self._task_repo.count(
            tid,
            [Task.status.in_([TaskStatus.OPEN, TaskStatus.IN_PROGRESS]), Task.due_date < now],
        )
        return {
            "total_controls": total_controls,
            "met_controls": met,
            "partial_controls": partial,
            "gap_controls": controls.get(ControlStatus.GAP, 0),
            "not_applicable_controls": controls.get(ControlStatus.NOT_APPLICABLE, 0),
            "control_compliance_rate": rate(met + partial, total_controls),
            "total_evidence": total_evidence,
            "approved_evidence": approved_evidence,
            "expiring_evidence": expiring_evidence,
            "evidence_approval_rate": rate(approved_evidence, total_evidence),
            "total_tasks": total_tasks,
            "completed_tasks": completed_tasks,
            "overdue_tasks": overdue_tasks,
            "task_completion_rate": rate(completed_tasks, total_tasks),
        }

    async def recent_alerts(self, tenant: TenantContext, limit: int = RECENT_ALERTS_LIMIT) -> list[GovernanceAlert]:
        return await self._alert_repo.list_where(
            tenant.tenant_id, order_by=[GovernanceAlert.created_at.desc()], limit=limit
        )

    async def risk_heatmap(self, tenant: TenantContext) -> list[dict[str, Any]]:
        """Risks grouped by `category-subcategory` with severity and status counts."""
        risks = await self._risk_repo.list_where(tenant.tenant_id)
        cells: dict[str, dict[str, Any]] = {}
        units: dict[str, set[str]] = {}
        for risk in risks:
            key = f"{risk.category}-{risk.subcategory or 'NONE'}"
            cell = cells.get(key)
            if cell is None:
                cell = cells[key] = {
                    "key": key,
                    "category": risk.category,
                    "subcategory": risk.subcategory,
                    "total": 0,
                    "by_severity": {},
                    "status_counts": {},
                }
                units[key] = set()
            cell["total"] += 1
            cell["by_severity"][risk.severity] = cell["by_severity"].get(risk.severity, 0) + 1
            cell["status_counts"][risk.status] = cell["status_counts"].get(risk.status, 0) + 1
            if risk.business_unit:
                units[key].add(risk.business_unit)
        return [{**cell, "business_units": sorted(units[key])} for key, cell in cells.items()]

    async def policy_compliance_trends(
        self, tenant: TenantContext, days: int = DEFAULT_TREND_DAYS
    ) -> list[dict[str, Any]]:
        """Acknowledgments per day over the last `days` days."""
        start = utcnow() - timedelta(days=days)
        acks = await self._ack_repo.list_where(
            tenant.tenant_id,
            [PolicyAcknowledgment.acknowledged_at >= start],
            order_by=[PolicyAcknowledgment.acknowledged_at.asc()],
        )
        buckets: dict[str, dict[str, int]] = {}
        for ack in acks:
            day = buckets.setdefault(ack.acknowledged_at.date().isoformat(), {"total": 0, "acknowledged": 0})
            day["total"] += 1
            if ack.status == AcknowledgmentStatus.ACKNOWLEDGED:
                day["acknowledged"] += 1
        return [
            {"date": date, "compliance_rate": rate(day["acknowledged"], day["total"]), **day}
            for date, day in buckets.items()
        ]

    async def risk_trends(self, tenant: TenantContext, days: int = DEFAULT_TREND_DAYS) -> list[dict[str, Any]]:
        """Risks identified per day over the last `days` days, by severity and status."""
        start = utcnow() - timedelta(days=days)
        risks = await self._risk_repo.list_where(
            tenant.tenant_id, [Risk.created_at >= start], order_by=[Risk.created_at.asc()]
        )
        buckets: dict[str, dict[str, Any]] = {}
        for risk in risks:
            date = risk.created_at.date().isoformat()
            day = buckets.setdefault(date, {"date": date, "total": 0, "by_severity": {}, "by_status": {}})
            day["total"] += 1
            day["by_severity"][risk.severity] = day["by_severity"].get(risk.severity, 0) + 1
            day["by_status"][risk.status] = day["by_status"].get(risk.status, 0) + 1
        return list(buckets.values())

    async def widget_data(self, tenant: TenantContext, widget_type: str) -> Any | None:
        """Data for one dashboard widget, or None for an unknown widget type."""
        handlers: dict[str, Callable[[], Awaitable[Any]]] = {
            "POLICY_COMPLIANCE_SCORE": lambda: self.policy_compliance(tenant),
            "RISK_EXPOSURE_OVERVIEW": lambda: self.risk_exposure(tenant),
            "COMPLIANCE_STATUS": lambda: self.compliance_status(tenant),
            "RISK_HEATMAP": lambda: self.risk_heatmap(tenant),
            "POLICY_COMPLIANCE_TRENDS": lambda: self.policy_compliance_trends(tenant),
            "RISK_TRENDS": lambda: self.risk_trends(tenant),
            "RECENT_ALERTS": lambda: self.recent_alerts(tenant, WIDGET_ALERTS_LIMIT),
        }
        handler = handlers.get(widget_type)
        if handler is None:
            return None
        return await handler()
