"""Data residency: where an organization's data may live and how it may move.

Regions form a static catalog. A tenant chooses a primary region and backup
regions; transfers between regions are requested, approved and completed.

Transfer rules:
    - both regions must exist and the tenant must be configured
    - any source != destination needs residency_requirements.cross_border_transfers
    - data leaving the European Union for a jurisdiction without an adequacy
      decision is high risk and is refused unless the legal basis is an
      approved transfer mechanism (SCC, BCR or explicit consent)
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any

from complianceos.common.auth import TenantContext
from complianceos.common.errors import NotFoundError, ValidationError
from complianceos.common.observability import get_logger
from complianceos.core.interfaces import IEventPublisher
from complianceos.core.models import DataResidencyConfig, DataTransfer, TransferStatus
from complianceos.core.services import ActivityService, TrackedService, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class Region:
    code: str
    name: str
    jurisdiction: str
    data_centers: tuple[str, ...]
    regulatory: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["data_centers"] = list(self.data_centers)
        return data


EU = "European Union"

REGIONS: dict[str, Region] = {
    r.code: r
    for r in (
        Region(
            "US_EAST",
            "US East (N. Virginia)",
            "United States",
            ("us-east-1", "us-east-2"),
            {"sox": True, "hipaa": True, "pci_dss": True, "fedramp": False},
        ),
        Region(
            "US_WEST",
            "US West (Oregon)",
            "United States",
            ("us-west-1", "us-west-2"),
            {"sox": True, "hipaa": True, "pci_dss": True, "fedramp": False},
        ),
        Region("EU_IRELAND", "Europe (Ireland)", EU, ("eu-west-1",), {"gdpr": True, "iso27001": True, "soc2": True}),
        Region(
            "EU_FRANKFURT", "Europe (Frankfurt)", EU, ("eu-central-1",), {"gdpr": True, "iso27001": True, "soc2": True}
        ),
        Region(
            "APAC_SINGAPORE",
            "Asia Pacific (Singapore)",
            "Singapore",
            ("ap-southeast-1",),
            {"pdp": True, "iso27001": True, "soc2": True},
        ),
        Region(
            "APAC_TOKYO",
            "Asia Pacific (Tokyo)",
            "Japan",
            ("ap-northeast-1",),
            {"appi": True, "iso27001": True, "soc2": True},
        ),
    )
}

# Jurisdictions with an EU adequacy decision.
ADEQUATE_JURISDICTIONS: frozenset[str] = frozenset({EU, "Japan", "United States"})
TRANSFER_MECHANISMS: frozenset[str] = frozenset({"SCC", "BCR", "EXPLICIT_CONSENT"})

RECENT_TRANSFERS = 10
VALIDATION_MAX_AGE_DAYS = 365
CERTIFICATE_VALIDITY_DAYS = 365
VIOLATION_PENALTY = 20


def _region(code: str, field_name: str) -> Region:
    region = REGIONS.get(code)
    if region is None:
        raise ValidationError(message=f"Unknown region '{code}'", field=field_name)
    return region


def is_high_risk_transfer(source: Region, destination: Region) -> bool:
    return source.jurisdiction == EU and destination.jurisdiction not in ADEQUATE_JURISDICTIONS


class DataResidencyService(TrackedService):
    """Residency configuration and inter-region transfers.

    Args:
        config_repo: Repository for DataResidencyConfig.
        transfer_repo: Repository for DataTransfer.
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(
        self,
        config_repo: Any,
        transfer_repo: Any,
        activity: ActivityService,
        event_publisher: IEventPublisher,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._config_repo = config_repo
        self._transfer_repo = transfer_repo

    @staticmethod
    def list_regions() -> list[dict[str, Any]]:
        return [r.to_dict() for r in sorted(REGIONS.values(), key=lambda r: r.name)]

    async def find_config(self, tenant: TenantContext) -> DataResidencyConfig | None:
        rows = await self._config_repo.list_where(tenant.tenant_id, limit=1)
        return rows[0] if rows else None

    async def configure(
        self,
        tenant: TenantContext,
        primary_region: str,
        backup_regions: list[str] | None = None,
        residency_requirements: dict[str, Any] | None = None,
        compliance_certifications: list[str] | None = None,
        correlation_id: str | None = None,
    ) -> DataResidencyConfig:
        """Create or replace the tenant's residency configuration.

        Raises:
            ValidationError: If the primary or any backup region is unknown.
        """
        _region(primary_region, "primary_region")
        for code in backup_regions or []:
            _region(code, "backup_regions")

        config = await self.find_config(tenant)
        if config is None:
            config = await self._config_repo.add(
                DataResidencyConfig(
                    tenant_id=tenant.tenant_id,
                    primary_region=primary_region,
                    backup_regions=list(backup_regions or []),
                    residency_requirements=residency_requirements or {},
                    compliance_certifications=list(compliance_certifications or []),
                    last_validated_at=utcnow(),
                )
            )
        else:
            config.primary_region = primary_region
            config.backup_regions = list(backup_regions or [])
            config.residency_requirements = residency_requirements or {}
            config.compliance_certifications = list(compliance_certifications or [])
            config.last_validated_at = utcnow()
            config = await self._config_repo.save(config)

        logger.info("Data residency configured", tenant_id=str(tenant.tenant_id), primary_region=primary_region)
        await self._track(
            tenant,
            "compliance.residency.configured",
            "data_residency_config",
            config.id,
            "configure",
            {"primary_region": primary_region, "backup_regions": config.backup_regions},
            correlation_id,
        )
        return config

    async def get_status(self, tenant: TenantContext) -> dict[str, Any]:
        config = await self.find_config(tenant)
        if config is None:
            return {"status": "not_configured", "config": None, "data_locations": [], "transfer_history": []}
        transfers = await self._transfer_repo.list_where(
            tenant.tenant_id, order_by=[DataTransfer.created_at.desc()], limit=RECENT_TRANSFERS
        )
        roles = [("primary", config.primary_region), *(("backup", code) for code in config.backup_regions or [])]
        locations = [{"role": role, **REGIONS[code].to_dict()} for role, code in roles if code in REGIONS]
        return {
            "status": "configured",
            "config": config,
            "data_locations": locations,
            "transfer_history": transfers,
        }

    async def request_transfer(
        self,
        tenant: TenantContext,
        source_region: str,
        destination_region: str,
        data_type: str,
        transfer_reason: str,
        legal_basis: str,
        correlation_id: str | None = None,
    ) -> DataTransfer:
        """Record a PENDING transfer after checking the tenant's residency rules.

        Raises:
            ValidationError: Unknown region, residency not configured, cross-border
                transfers disabled, or a high-risk destination without a transfer
                mechanism.
        """
        source = _region(source_region, "source_region")
        destination = _region(destination_region, "destination_region")
        config = await self.find_config(tenant)
        if config is None:
            raise ValidationError(message="Data residency is not configured for this organization", field="residency")

        if source.code != destination.code and not (config.residency_requirements or {}).get("cross_border_transfers"):
            raise ValidationError(message="Cross-border data transfers are not permitted", field="destination_region")
        if is_high_risk_transfer(source, destination) and legal_basis.upper() not in TRANSFER_MECHANISMS:
            logger.warning(
                "High-risk transfer refused",
                tenant_id=str(tenant.tenant_id),
                source_region=source.code,
                destination_region=destination.code,
            )
            raise ValidationError(
                message=f"Transfer to {destination.jurisdiction} requires SCC, BCR or explicit consent",
                field="legal_basis",
            )

        transfer = await self._transfer_repo.add(
            DataTransfer(
                tenant_id=tenant.tenant_id,
                source_region=source.code,
                destination_region=destination.code,
                data_type=data_type,
                transfer_reason=transfer_reason,
                legal_basis=legal_basis,
                requested_by=tenant.user_id,
                status=TransferStatus.PENDING,
            )
        )
        await self._track(
            tenant,
            "compliance.residency.transfer_requested",
            "data_transfer",
            transfer.id,
            "request",
            {"source_region": source.code, "destination_region": destination.code, "data_type": data_type},
            correlation_id,
        )
        return transfer

    async def approve_transfer(
        self, transfer_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> DataTransfer:
        transfer = await self._transfer_repo.get_by_id(transfer_id, tenant.tenant_id)
        if transfer.status != TransferStatus.PENDING:
            raise ValidationError(message="Data transfer is not pending", field="status")
        transfer.status = TransferStatus.IN_PROGRESS
        transfer.authorized_by = tenant.user_id
        transfer = await self._transfer_repo.save(transfer)
        await self._track(
            tenant,
            "compliance.residency.transfer_approved",
            "data_transfer",
            transfer.id,
            "approve",
            {},
            correlation_id,
        )
        return transfer

    async def reject_transfer(
        self, transfer_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> DataTransfer:
        transfer = await self._transfer_repo.get_by_id(transfer_id, tenant.tenant_id)
        if transfer.status != TransferStatus.PENDING:
            raise ValidationError(message="Data transfer is not pending", field="status")
        transfer.status = TransferStatus.REJECTED
        transfer.authorized_by = tenant.user_id
        transfer = await self._transfer_repo.save(transfer)
        await self._track(
            tenant, "compliance.residency.transfer_rejected", "data_transfer", transfer.id, "reject", {}, correlation_id
        )
        return transfer

    async def complete_transfer(
        self, transfer_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> DataTransfer:
        transfer = await self._transfer_repo.get_by_id(transfer_id, tenant.tenant_id)
        if transfer.status != TransferStatus.IN_PROGRESS:
            raise ValidationError(message="Data transfer is not in progress", field="status")
        transfer.status = TransferStatus.COMPLETED
        transfer.transferred_at = utcnow()
        transfer = await self._transfer_repo.save(transfer)
        await self._track(
            tenant,
            "compliance.residency.transfer_completed",
            "data_transfer",
            transfer.id,
            "complete",
            {},
            correlation_id,
        )
        return transfer

    async def validate_compliance(self, tenant: TenantContext) -> dict[str, Any]:
        config = await self.find_config(tenant)
        if config is None:
            return {
                "is_compliant": False,
                "violations": ["Data residency not configured"],
                "recommendations": ["Configure data residency settings"],
                "compliance_score": 0,
            }
        violations: list[str] = []
        recommendations: list[str] = []
        if config.primary_region not in REGIONS:
            violations.append(f"Primary region {config.primary_region} is not available")
        for code in config.backup_regions or []:
            if code not in REGIONS:
                recommendations.append(f"Backup region {code} is not available")
        if not config.compliance_certifications:
            recommendations.append("No compliance certifications specified")
        if config.last_validated_at is None:
            recommendations.append("Data residency has never been validated")
        elif utcnow() - config.last_validated_at > timedelta(days=VALIDATION_MAX_AGE_DAYS):
            recommendations.append("Data residency validation is overdue (more than 1 year)")

        return {
            "is_compliant": not violations,
            "violations": violations,
            "recommendations": recommendations,
            "compliance_score": 100 if not violations else max(0, 100 - VIOLATION_PENALTY * len(violations)),
        }

    async def certificate(self, tenant: TenantContext) -> dict[str, Any]:
        """A residency certificate describing where the tenant's data lives, valid one year."""
        config = await self.find_config(tenant)
        if config is None:
            raise NotFoundError(resource="DataResidencyConfig", resource_id=str(tenant.tenant_id))
        primary = _region(config.primary_region, "primary_region")
        issued_at = utcnow()
        return {
            "certificate_id": f"DRC-{tenant.tenant_id}-{int(issued_at.timestamp())}",
            "organization_id": str(tenant.tenant_id),
            "issued_at": issued_at,
            "expires_at": issued_at + timedelta(days=CERTIFICATE_VALIDITY_DAYS),
            "primary_region": primary.to_dict(),
            "backup_regions": list(config.backup_regions or []),
            "compliance_certifications": list(config.compliance_certifications or []),
            "compliance": {
                "gdpr": primary.jurisdiction == EU,
                "sox": primary.regulatory.get("sox", False),
                "hipaa": primary.regulatory.get("hipaa", False),
            },
        }
