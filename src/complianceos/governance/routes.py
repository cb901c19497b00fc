"""FastAPI routes for executive governance.

Routes:
    GET    /governance/executive - executive dashboard data
    GET    /governance/heatmap - risk heatmap
    GET    /governance/trends - policy and risk trends
    GET    /governance/widgets/{widget_type} - data for one widget
    POST   /governance/dashboards - create dashboard
    GET    /governance/dashboards - list dashboards
    GET    /governance/dashboards/{id} - get dashboard
    PATCH  /governance/dashboards/{id} - update dashboard
    DELETE /governance/dashboards/{id} - delete dashboard
    POST   /governance/dashboards/{id}/default - make default
    POST   /governance/metrics - create metric
    GET    /governance/metrics - list metrics
    PATCH  /governance/metrics/{id} - update metric
    DELETE /governance/metrics/{id} - delete metric
    POST   /governance/alerts - raise alert
    GET    /governance/alerts - list alerts
    POST   /governance/alerts/generate - run alert rules
    POST   /governance/alerts/{id}/acknowledge - acknowledge
    POST   /governance/alerts/{id}/resolve - resolve
    POST   /governance/alerts/{id}/dismiss - dismiss
"""

import uuid
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from complianceos.adapters.repositories import (
    AcknowledgmentRepository,
    AlertRepository,
    ControlRepository,
    DashboardRepository,
    EvidenceRepository,
    PolicyRepository,
    RiskRepository,
    TaskRepository,
)
from complianceos.api.dependencies import get_activity_service, get_correlation_id, get_event_publisher
from complianceos.common.auth import TenantContext, get_current_user
from complianceos.common.database import BaseRepository, get_db_session
from complianceos.common.errors import NotFoundError
from complianceos.core.interfaces import IEventPublisher
from complianceos.core.models import GovernanceMetric
from complianceos.core.services import ActivityService
from complianceos.governance.service import DEFAULT_TREND_DAYS, GovernanceService

router = APIRouter(prefix="/governance", tags=["Governance"])


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def get_governance_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    activity: Annotated[ActivityService, Depends(get_activity_service)],
    publisher: Annotated[IEventPublisher, Depends(get_event_publisher)],
) -> GovernanceService:
    return GovernanceService(
        dashboard_repo=DashboardRepository(session),
        metric_repo=BaseRepository(session, GovernanceMetric),
        alert_repo=AlertRepository(session),
        policy_repo=PolicyRepository(session),
        ack_repo=AcknowledgmentRepository(session),
        risk_repo=RiskRepository(session),
        control_repo=ControlRepository(session),
        evidence_repo=EvidenceRepository(session),
        task_repo=TaskRepository(session),
        activity=activity,
        event_publisher=publisher,
    )


Tenant = Annotated[TenantContext, Depends(get_current_user)]
Service = Annotated[GovernanceService, Depends(get_governance_service)]
CorrelationId = Annotated[str | None, Depends(get_correlation_id)]


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------


class DashboardCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    layout: dict[str, Any] = Field(default_factory=dict)
    widgets: list[dict[str, Any]] = Field(default_factory=list)
    is_default: bool = False


class DashboardUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    layout: dict[str, Any] | None = None
    widgets: list[dict[str, Any]] | None = None


class DashboardResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: str | None
    layout: dict[str, Any]
    widgets: list[dict[str, Any]]
    is_default: bool
    created_by: uuid.UUID
    created_at: datetime
    updated_at: datetime


class MetricCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    value: float
    category: str | None = None
    target: float | None = None
    unit: str | None = None
    thresholds: dict[str, Any] = Field(default_factory=dict)


class MetricUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    value: float | None = None
    category: str | None = None
    target: float | None = None
    unit: str | None = None
    thresholds: dict[str, Any] | None = None


class MetricResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    category: str | None
    value: float
    target: float | None
    unit: str | None
    thresholds: dict[str, Any]
    last_updated: datetime | None


class AlertCreateRequest(BaseModel):
    alert_type: str = Field(..., min_length=1, max_length=50)
    severity: str
    title: str = Field(..., min_length=1, max_length=500)
    message: str = Field(..., min_length=1)
    source_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    alert_type: str
    severity: str
    title: str
    message: str
    source_id: str | None
    metadata: dict[str, Any] = Field(validation_alias="meta")
    status: str
    acknowledged_by: uuid.UUID | None
    acknowledged_at: datetime | None
    resolved_by: uuid.UUID | None
    resolved_at: datetime | None
    created_at: datetime


class AlertPage(BaseModel):
    items: list[AlertResponse]
    page: int
    limit: int
    total: int
    pages: int


# ---------------------------------------------------------------------------
# Executive analytics
# ---------------------------------------------------------------------------


@router.get("/executive")
async def executive_dashboard(tenant: Tenant, service: Service) -> dict[str, Any]:
    data = await service.executive_dashboard(tenant)
    data["recent_alerts"] = [AlertResponse.model_validate(a).model_dump(mode="json") for a in data["recent_alerts"]]
    return data


@router.get("/heatmap")
async def risk_heatmap(tenant: Tenant, service: Service) -> list[dict[str, Any]]:
    return await service.risk_heatmap(tenant)


@router.get("/trends")
async def trends(
    tenant: Tenant,
    service: Service,
    days: Annotated[int, Query(ge=1, le=365)] = DEFAULT_TREND_DAYS,
) -> dict[str, Any]:
    return {
        "days": days,
        "policy_compliance": await service.policy_compliance_trends(tenant, days),
        "risks": await service.risk_trends(tenant, days),
    }


@router.get("/widgets/{widget_type}")
async def widget_data(widget_type: str, tenant: Tenant, service: Service) -> Any:
    data = await service.widget_data(tenant, widget_type)
    if data is None:
        raise NotFoundError(resource="Widget", resource_id=widget_type)
    if widget_type == "RECENT_ALERTS":
        return [AlertResponse.model_validate(a).model_dump(mode="json") for a in data]
    return data


# ---------------------------------------------------------------------------
# Dashboards
# ---------------------------------------------------------------------------


@router.post("/dashboards", response_model=DashboardResponse, status_code=status.HTTP_201_CREATED)
async def create_dashboard(
    body: DashboardCreateRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.create_dashboard(
        tenant,
        name=body.name,
        description=body.description,
        layout=body.layout,
        widgets=body.widgets,
        is_default=body.is_default,
        correlation_id=correlation_id,
    )


@router.get("/dashboards", response_model=list[DashboardResponse])
async def list_dashboards(tenant: Tenant, service: Service) -> Any:
    return await service.list_dashboards(tenant)


@router.get("/dashboards/{dashboard_id}", response_model=DashboardResponse)
async def get_dashboard(dashboard_id: uuid.UUID, tenant: Tenant, service: Service) -> Any:
    return await service.get_dashboard(dashboard_id, tenant)


@router.patch("/dashboards/{dashboard_id}", response_model=DashboardResponse)
async def update_dashboard(
    dashboard_id: uuid.UUID,
    body: DashboardUpdateRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.update_dashboard(dashboard_id, tenant, body.model_dump(exclude_unset=True), correlation_id)


@router.delete("/dashboards/{dashboard_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_dashboard(
    dashboard_id: uuid.UUID,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Response:
    await service.delete_dashboard(dashboard_id, tenant, correlation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/dashboards/{dashboard_id}/default", response_model=DashboardResponse)
async def set_default_dashboard(
    dashboard_id: uuid.UUID,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.set_default_dashboard(dashboard_id, tenant, correlation_id)


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


@router.post("/metrics", response_model=MetricResponse, status_code=status.HTTP_201_CREATED)
async def create_metric(
    body: MetricCreateRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.create_metric(
        tenant,
        name=body.name,
        value=body.value,
        category=body.category,
        target=body.target,
        unit=body.unit,
        thresholds=body.thresholds,
        correlation_id=correlation_id,
    )


@router.get("/metrics", response_model=list[MetricResponse])
async def list_metrics(tenant: Tenant, service: Service, category: str | None = None) -> Any:
    return await service.list_metrics(tenant, category=category)


@router.patch("/metrics/{metric_id}", response_model=MetricResponse)
async def update_metric(
    metric_id: uuid.UUID,
    body: MetricUpdateRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.update_metric(metric_id, tenant, body.model_dump(exclude_unset=True), correlation_id)


@router.delete("/metrics/{metric_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_metric(
    metric_id: uuid.UUID,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Response:
    await service.delete_metric(metric_id, tenant, correlation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


@router.post("/alerts", response_model=AlertResponse, status_code=status.HTTP_201_CREATED)
async def create_alert(
    body: AlertCreateRequest,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.create_alert(
        tenant,
        alert_type=body.alert_type,
        severity=body.severity,
        title=body.title,
        message=body.message,
        source_id=body.source_id,
        metadata=body.metadata,
        correlation_id=correlation_id,
    )


@router.get("/alerts", response_model=AlertPage)
async def list_alerts(
    tenant: Tenant,
    service: Service,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    severity: str | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
) -> Any:
    return await service.list_alerts(tenant, status=status_filter, severity=severity, page=page, page_size=page_size)


@router.post("/alerts/generate", response_model=list[AlertResponse])
async def generate_alerts(tenant: Tenant, service: Service, correlation_id: CorrelationId) -> Any:
    return await service.generate_alerts(tenant, correlation_id)


@router.post("/alerts/{alert_id}/acknowledge", response_model=AlertResponse)
async def acknowledge_alert(
    alert_id: uuid.UUID,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.acknowledge_alert(alert_id, tenant, correlation_id)


@router.post("/alerts/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(
    alert_id: uuid.UUID,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.resolve_alert(alert_id, tenant, correlation_id)


@router.post("/alerts/{alert_id}/dismiss", response_model=AlertResponse)
async def dismiss_alert(
    alert_id: uuid.UUID,
    tenant: Tenant,
    service: Service,
    correlation_id: CorrelationId,
) -> Any:
    return await service.dismiss_alert(alert_id, tenant, correlation_id)
