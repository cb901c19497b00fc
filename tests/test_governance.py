"""Tests for dashboards, metrics, alerts and executive analytics."""

import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from complianceos.common.auth import TenantContext
from complianceos.common.errors import ValidationError
from complianceos.core.models import AlertStatus, RiskSeverity, RiskStatus
from complianceos.core.services import ActivityService
from complianceos.governance.service import (
    ALERT_POLICY_OVERDUE,
    ALERT_RISK_THRESHOLD,
    GovernanceService,
    rate,
)
from tests.conftest import event_types, make_fake_policy, make_fake_risk, make_repo


class GovernanceHarness:
    def __init__(self, activity: ActivityService, publisher: AsyncMock) -> None:
        self.dashboard_repo = make_repo()
        self.metric_repo = make_repo()
        self.alert_repo = make_repo()
        self.alert_repo.active_exists.return_value = False
        self.policy_repo = make_repo()
        self.ack_repo = make_repo()
        self.risk_repo = make_repo()
        self.control_repo = make_repo()
        self.evidence_repo = make_repo()
        self.task_repo = make_repo()
        self.service = GovernanceService(
            dashboard_repo=self.dashboard_repo,
            metric_repo=self.metric_repo,
            alert_repo=self.alert_repo,
            policy_repo=self.policy_repo,
            ack_repo=self.ack_repo,
            risk_repo=self.risk_repo,
            control_repo=self.control_repo,
            evidence_repo=self.evidence_repo,
            task_repo=self.task_repo,
            activity=activity,
            event_publisher=publisher,
        )


@pytest.fixture()
def gov(activity_service: ActivityService, mock_event_publisher: AsyncMock) -> GovernanceHarness:
    return GovernanceHarness(activity_service, mock_event_publisher)


def make_fake_alert(status: str = AlertStatus.ACTIVE) -> MagicMock:
    alert = MagicMock()
    alert.id = uuid.uuid4()
    alert.status = status
    return alert


def test_rate() -> None:
    assert rate(1, 3) == 33.33
    assert rate(5, 0) == 0.0


class TestDashboards:
    @pytest.mark.asyncio()
    async def test_default_dashboard_clears_others(self, gov: GovernanceHarness, mock_tenant: TenantContext) -> None:
        dashboard = await gov.service.create_dashboard(
            mock_tenant, "Board view", widgets=[{"type": "RISK_HEATMAP"}], is_default=True
        )

        gov.dashboard_repo.clear_default.assert_awaited_once_with(mock_tenant.tenant_id, dashboard.id)
        assert dashboard.widgets == [{"type": "RISK_HEATMAP"}]

    @pytest.mark.asyncio()
    async def test_unknown_widget_rejected(self, gov: GovernanceHarness, mock_tenant: TenantContext) -> None:
        with pytest.raises(ValidationError):
            await gov.service.create_dashboard(mock_tenant, "Board view", widgets=[{"type": "STOCK_TICKER"}])
        gov.dashboard_repo.add.assert_not_called()

    @pytest.mark.asyncio()
    async def test_update_ignores_unknown_and_null_fields(
        self, gov: GovernanceHarness, mock_tenant: TenantContext
    ) -> None:
        dashboard = MagicMock(id=uuid.uuid4(), description="keep")
        dashboard.name = "Old"
        gov.dashboard_repo.get_by_id.return_value = dashboard

        await gov.service.update_dashboard(
            dashboard.id, mock_tenant, {"name": "New", "description": None, "created_by": uuid.uuid4()}
        )

        assert dashboard.name == "New"
        assert dashboard.description == "keep"

    @pytest.mark.asyncio()
    async def test_set_default(self, gov: GovernanceHarness, mock_tenant: TenantContext) -> None:
        dashboard = MagicMock(id=uuid.uuid4(), is_default=False)
        gov.dashboard_repo.get_by_id.return_value = dashboard

        result = await gov.service.set_default_dashboard(dashboard.id, mock_tenant)

        assert result.is_default is True
        gov.dashboard_repo.clear_default.assert_awaited_once()


class TestMetrics:
    @pytest.mark.asyncio()
    async def test_update_refreshes_timestamp(self, gov: GovernanceHarness, mock_tenant: TenantContext) -> None:
        old = datetime(2024, 1, 1, tzinfo=UTC)
        metric = MagicMock(id=uuid.uuid4(), value=50.0, last_updated=old)
        gov.metric_repo.get_by_id.return_value = metric

        result = await gov.service.update_metric(metric.id, mock_tenant, {"value": 72.5})

        assert result.value == 72.5
        assert result.last_updated > old

    @pytest.mark.asyncio()
    async def test_create_metric(
        self, gov: GovernanceHarness, mock_tenant: TenantContext, mock_event_publisher: AsyncMock
    ) -> None:
        metric = await gov.service.create_metric(mock_tenant, "Patch latency", 4.2, unit="days", target=7.0)

        assert metric.thresholds == {}
        assert metric.last_updated is not None
        assert event_types(mock_event_publisher) == ["compliance.metric.created"]


class TestAlerts:
    @pytest.mark.asyncio()
    async def test_create_alert_validates_severity(self, gov: GovernanceHarness, mock_tenant: TenantContext) -> None:
        with pytest.raises(ValidationError):
            await gov.service.create_alert(mock_tenant, "CUSTOM", "SEVERE", "Title", "Message")

    @pytest.mark.asyncio()
    async def test_acknowledge_active_alert(
        self, gov: GovernanceHarness, mock_tenant: TenantContext, mock_event_publisher: AsyncMock
    ) -> None:
        alert = make_fake_alert()
        gov.alert_repo.get_by_id.return_value = alert

        result = await gov.service.acknowledge_alert(alert.id, mock_tenant)

        assert result.status == AlertStatus.ACKNOWLEDGED
        assert result.acknowledged_by == mock_tenant.user_id
        assert event_types(mock_event_publisher) == ["compliance.alert.acknowledged"]

    @pytest.mark.asyncio()
    async def test_cannot_acknowledge_resolved_alert(self, gov: GovernanceHarness, mock_tenant: TenantContext) -> None:
        gov.alert_repo.get_by_id.return_value = make_fake_alert(AlertStatus.RESOLVED)

        with pytest.raises(ValidationError):
            await gov.service.acknowledge_alert(uuid.uuid4(), mock_tenant)

    @pytest.mark.asyncio()
    async def test_resolve_acknowledged_alert(self, gov: GovernanceHarness, mock_tenant: TenantContext) -> None:
        gov.alert_repo.get_by_id.return_value = make_fake_alert(AlertStatus.ACKNOWLEDGED)

        result = await gov.service.resolve_alert(uuid.uuid4(), mock_tenant)

        assert result.status == AlertStatus.RESOLVED
        assert result.resolved_at is not None

    @pytest.mark.asyncio()
    async def test_cannot_dismiss_twice(self, gov: GovernanceHarness, mock_tenant: TenantContext) -> None:
        gov.alert_repo.get_by_id.return_value = make_fake_alert(AlertStatus.DISMISSED)

        with pytest.raises(ValidationError):
            await gov.service.dismiss_alert(uuid.uuid4(), mock_tenant)

    @pytest.mark.asyncio()
    async def test_generate_alerts(
        self, gov: GovernanceHarness, mock_tenant: TenantContext, mock_event_publisher: AsyncMock
    ) -> None:
        policy = make_fake_policy(mock_tenant.tenant_id, status="PUBLISHED")
        acks = [
            MagicMock(id=uuid.uuid4(), policy_id=policy.id, user_id=uuid.uuid4()),
            MagicMock(id=uuid.uuid4(), policy_id=policy.id, user_id=uuid.uuid4()),
        ]
        critical = make_fake_risk(mock_tenant.tenant_id, 6, 6, severity=RiskSeverity.CRITICAL)
        gov.ack_repo.list_where.return_value = acks
        gov.policy_repo.find_by_id.return_value = policy
        gov.risk_repo.list_where.return_value = [critical]

        created = await gov.service.generate_alerts(mock_tenant)

        assert [a.alert_type for a in created] == [ALERT_POLICY_OVERDUE, ALERT_POLICY_OVERDUE, ALERT_RISK_THRESHOLD]
        assert created[0].severity == "MEDIUM"
        assert '"Acceptable Use Policy"' in created[0].message
        assert created[2].severity == "CRITICAL"
        assert created[2].source_id == str(critical.id)
        # policy lookups are cached per policy
        gov.policy_repo.find_by_id.assert_awaited_once()
        assert event_types(mock_event_publisher) == ["compliance.alert.created"] * 3

    @pytest.mark.asyncio()
    async def test_generate_alerts_skips_active_duplicates(
        self, gov: GovernanceHarness, mock_tenant: TenantContext
    ) -> None:
        gov.ack_repo.list_where.return_value = [MagicMock(id=uuid.uuid4(), policy_id=uuid.uuid4())]
        gov.risk_repo.list_where.return_value = [make_fake_risk(mock_tenant.tenant_id, severity="CRITICAL")]
        gov.alert_repo.active_exists.return_value = True

        assert await gov.service.generate_alerts(mock_tenant) == []
        gov.alert_repo.add.assert_not_called()


class TestAnalytics:
    @pytest.mark.asyncio()
    async def test_policy_compliance(self, gov: GovernanceHarness, mock_tenant: TenantContext) -> None:
        gov.policy_repo.count.side_effect = [5, 3]
        gov.ack_repo.count_by.return_value = {"ACKNOWLEDGED": 6, "PENDING": 3, "OVERDUE": 1}

        result = await gov.service.policy_compliance(mock_tenant)

        assert result == {
            "total_policies": 5,
            "published_policies": 3,
            "total_acknowledgments": 10,
            "acknowledged": 6,
            "overdue_acknowledgments": 1,
            "compliance_rate": 60.0,
        }

    @pytest.mark.asyncio()
    async def test_risk_exposure_fills_every_band(self, gov: GovernanceHarness, mock_tenant: TenantContext) -> None:
        gov.risk_repo.count_by.side_effect = [{"CRITICAL": 1, "HIGH": 2, "VERY_HIGH": 1}, {"IDENTIFIED": 4}]

        result = await gov.service.risk_exposure(mock_tenant)

        assert result["total_risks"] == 4
        assert result["critical_risks"] == 1
        assert result["high_risks"] == 3
        assert set(result["by_severity"]) == {s.value for s in RiskSeverity}
        assert result["by_severity"]["LOW"] == 0
        assert set(result["by_status"]) == {s.value for s in RiskStatus}

    @pytest.mark.asyncio()
    async def test_compliance_status(self, gov: GovernanceHarness, mock_tenant: TenantContext) -> None:
        gov.control_repo.count_by.return_value = {"MET": 6, "PARTIAL": 2, "GAP": 2}
        gov.evidence_repo.count.side_effect = [10, 7, 2]
        gov.task_repo.count_by.return_value = {"COMPLETED": 3, "OPEN": 1}
        gov.task_repo.count.return_value = 1

        result = await gov.service.compliance_status(mock_tenant)

        assert result["control_compliance_rate"] == 80.0
        assert result["evidence_approval_rate"] == 70.0
        assert result["expiring_evidence"] == 2
        assert result["task_completion_rate"] == 75.0
        assert result["overdue_tasks"] == 1

    @pytest.mark.asyncio()
    async def test_risk_heatmap(self, gov: GovernanceHarness, mock_tenant: TenantContext) -> None:
        first = make_fake_risk(mock_tenant.tenant_id, severity="HIGH")
        second = make_fake_risk(mock_tenant.tenant_id, severity="LOW")
        second.business_unit = "Finance"
        other = make_fake_risk(mock_tenant.tenant_id)
        other.category = "FINANCIAL"
        other.subcategory = "FX"
        gov.risk_repo.list_where.return_value = [first, second, other]

        cells = {cell["key"]: cell for cell in await gov.service.risk_heatmap(mock_tenant)}

        assert set(cells) == {"THIRD_PARTY-NONE", "FINANCIAL-FX"}
        assert cells["THIRD_PARTY-NONE"]["total"] == 2
        assert cells["THIRD_PARTY-NONE"]["by_severity"] == {"HIGH": 1, "LOW": 1}
        assert cells["THIRD_PARTY-NONE"]["business_units"] == ["Engineering", "Finance"]

    @pytest.mark.asyncio()
    async def test_policy_compliance_trends(self, gov: GovernanceHarness, mock_tenant: TenantContext) -> None:
        day = datetime(2024, 5, 2, 10, tzinfo=UTC)
        gov.ack_repo.list_where.return_value = [
            MagicMock(acknowledged_at=day, status="ACKNOWLEDGED"),
            MagicMock(acknowledged_at=day, status="ACKNOWLEDGED"),
        ]

        trends = await gov.service.policy_compliance_trends(mock_tenant, days=400)

        assert trends == [{"date": "2024-05-02", "compliance_rate": 100.0, "total": 2, "acknowledged": 2}]

    @pytest.mark.asyncio()
    async def test_widget_data(self, gov: GovernanceHarness, mock_tenant: TenantContext) -> None:
        gov.alert_repo.list_where.return_value = [make_fake_alert()]

        assert len(await gov.service.widget_data(mock_tenant, "RECENT_ALERTS")) == 1
        assert await gov.service.widget_data(mock_tenant, "STOCK_TICKER") is None
