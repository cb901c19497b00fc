"""Executive governance: dashboards, metrics, alerts and cross-module analytics."""

from complianceos.governance.service import WIDGET_TYPES, GovernanceService

__all__ = ["WIDGET_TYPES", "GovernanceService"]
