"""Framework catalog: YAML templates for standard compliance frameworks.

Templates ship inside the package (templates/frameworks/*.yaml) and are loaded
once when the service is built:
- SOC 2 Type II (soc2)
- ISO/IEC 27001:2022 (iso27001)
- PCI DSS 4.0 (pci_dss)

Importing a template materializes the framework and all of its controls for
the requesting tenant.
"""

from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from complianceos.common.auth import TenantContext
from complianceos.common.errors import ConflictError, NotFoundError
from complianceos.common.observability import get_logger
from complianceos.core.models import Control, ControlStatus, Framework
from complianceos.core.interfaces import IEventPublisher
from complianceos.core.services import ActivityService, TrackedService, utcnow

logger = get_logger(__name__)

_TEMPLATE_DIR = Path(__file__).parent.parent / "templates" / "frameworks"


class FrameworkTemplate:
    """Parsed representation of a framework template.

    Args:
        data: YAML-parsed template dict.
    """

    def __init__(self, data: dict[str, Any]) -> None:
        self.code: str = data["code"]
        self.name: str = data["name"]
        self.framework_type: str = data["framework_type"]
        self.version: str = str(data.get("version", ""))
        self.issuing_body: str = data.get("issuing_body", "")
        self.description: str = data.get("description", "")
        self.controls: list[dict[str, Any]] = data.get("controls", [])

    def to_summary_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "framework_type": self.framework_type,
            "version": self.version,
            "issuing_body": self.issuing_body,
            "description": self.description.strip(),
            "control_count": len(self.controls),
        }

    def to_detail_dict(self) -> dict[str, Any]:
        return {**self.to_summary_dict(), "controls": self.controls}


class FrameworkCatalogService(TrackedService):
    """Lists catalog templates and imports them into a tenant.

    Args:
        framework_repo: FrameworkRepository.
        control_repo: ControlRepository.
        activity: ActivityService.
        event_publisher: Domain event publisher.
        template_dir: Directory containing *.yaml templates.
    """

    def __init__(
        self,
        framework_repo: Any,
        control_repo: Any,
        activity: ActivityService,
        event_publisher: IEventPublisher,
        template_dir: Path = _TEMPLATE_DIR,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._framework_repo = framework_repo
        self._control_repo = control_repo
        self._templates: dict[str, FrameworkTemplate] = {}
        self._load_templates(template_dir)

    def _load_templates(self, template_dir: Path) -> None:
        if not template_dir.exists():
            logger.warning("Template directory not found, no templates loaded", template_dir=str(template_dir))
            return

        for yaml_file in sorted(template_dir.glob("*.yaml")):
            try:
                template = FrameworkTemplate(yaml.safe_load(yaml_file.read_text(encoding="utf-8")))
            except (yaml.YAMLError, KeyError, TypeError) as exc:
                logger.error("Failed to load framework template", yaml_file=str(yaml_file), error=str(exc))
                continue
            self._templates[template.code] = template

        logger.debug("Framework templates loaded", template_codes=sorted(self._templates))

    def list_templates(self) -> list[dict[str, Any]]:
        return [t.to_summary_dict() for t in self._templates.values()]

    def get_template(self, code: str) -> FrameworkTemplate:
        """Return a template by code.

        Raises:
            NotFoundError: If no template has this code.
        """
        template = self._templates.get(code)
        if template is None:
            raise NotFoundError(resource="FrameworkTemplate", resource_id=code)
        return template

    async def import_template(
        self,
        tenant: TenantContext,
        code: str,
        correlation_id: str | None = None,
    ) -> Framework:
        """Create the template's framework and every control for the tenant.

        Raises:
            NotFoundError: If the template code is unknown.
            ConflictError: If the tenant already imported this template.
        """
        template = self.get_template(code)
        already = await self._framework_repo.count(tenant.tenant_id, [Framework.template_code == code])
        if already:
            raise ConflictError(message=f"Framework template '{code}' is already imported")

        framework = await self._framework_repo.add(
            Framework(
                tenant_id=tenant.tenant_id,
                name=template.name,
                framework_type=template.framework_type,
                version=template.version,
                description=template.description.strip(),
                template_code=code,
                is_active=True,
            )
        )
        now = utcnow()
        for item in template.controls:
            await self._control_repo.add(
                Control(
                    tenant_id=tenant.tenant_id,
                    framework_id=framework.id,
                    code=item["code"],
                    name=item["name"],
                    description=item.get("description"),
                    category=item.get("category"),
                    criticality=item.get("criticality", "MEDIUM"),
                    status=ControlStatus.NOT_STARTED,
                    review_frequency_days=item.get("review_frequency_days", 365),
                    next_review_date=now + timedelta(days=item.get("review_frequency_days", 365)),
                )
            )

        await self._track(
            tenant,
            "compliance.framework.imported",
            "framework",
            framework.id,
            "import_template",
            {"template_code": code, "control_count": len(template.controls)},
            correlation_id,
        )
        logger.info(
            "Framework imported from catalog",
            tenant_id=str(tenant.tenant_id),
            template_code=code,
            framework_id=str(framework.id),
            control_count=len(template.controls),
        )
        return framework
