"""Tests for the framework catalog and template import."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from complianceos.common.auth import TenantContext
from complianceos.common.errors import ConflictError, NotFoundError
from complianceos.core.catalog import FrameworkCatalogService
from complianceos.core.models import ControlStatus
from complianceos.core.services import ActivityService
from tests.conftest import event_types, make_repo


@pytest.fixture()
def catalog(activity_service: ActivityService, mock_event_publisher: AsyncMock) -> FrameworkCatalogService:
    return FrameworkCatalogService(
        framework_repo=make_repo(),
        control_repo=make_repo(),
        activity=activity_service,
        event_publisher=mock_event_publisher,
    )


class TestTemplates:
    def test_bundled_templates_are_listed(self, catalog: FrameworkCatalogService) -> None:
        codes = {t["code"] for t in catalog.list_templates()}
        assert codes == {"soc2", "iso27001", "pci_dss"}

    def test_summary_counts_controls(self, catalog: FrameworkCatalogService) -> None:
        summaries = {t["code"]: t for t in catalog.list_templates()}
        assert summaries["soc2"]["control_count"] == 13
        assert summaries["iso27001"]["version"] == "2022"
        assert summaries["pci_dss"]["issuing_body"] == "PCI Security Standards Council"

    def test_detail_includes_controls(self, catalog: FrameworkCatalogService) -> None:
        detail = catalog.get_template("soc2").to_detail_dict()
        cc61 = next(c for c in detail["controls"] if c["code"] == "CC6.1")
        assert cc61["criticality"] == "CRITICAL"

    def test_unknown_template(self, catalog: FrameworkCatalogService) -> None:
        with pytest.raises(NotFoundError):
            catalog.get_template("hipaa")

    def test_malformed_template_is_skipped(
        self, tmp_path: Path, activity_service: ActivityService, mock_event_publisher: AsyncMock
    ) -> None:
        (tmp_path / "broken.yaml").write_text("name: [unterminated", encoding="utf-8")
        (tmp_path / "missing_code.yaml").write_text("name: X\nframework_type: CUSTOM\n", encoding="utf-8")
        (tmp_path / "ok.yaml").write_text(
            "code: internal\nname: Internal\nframework_type: CUSTOM\ncontrols:\n  - code: IC-1\n    name: One\n",
            encoding="utf-8",
        )
        service = FrameworkCatalogService(
            make_repo(), make_repo(), activity_service, mock_event_publisher, template_dir=tmp_path
        )

        assert [t["code"] for t in service.list_templates()] == ["internal"]

    def test_missing_directory_yields_empty_catalog(
        self, tmp_path: Path, activity_service: ActivityService, mock_event_publisher: AsyncMock
    ) -> None:
        service = FrameworkCatalogService(
            make_repo(), make_repo(), activity_service, mock_event_publisher, template_dir=tmp_path / "nope"
        )
        assert service.list_templates() == []


class TestImport:
    @pytest.mark.asyncio()
    async def test_import_creates_framework_and_controls(
        self, mock_tenant: TenantContext, activity_service: ActivityService, mock_event_publisher: AsyncMock
    ) -> None:
        framework_repo = make_repo()
        control_repo = make_repo()
        service = FrameworkCatalogService(framework_repo, control_repo, activity_service, mock_event_publisher)

        framework = await service.import_template(mock_tenant, "iso27001")

        assert framework.template_code == "iso27001"
        assert framework.tenant_id == mock_tenant.tenant_id
        assert control_repo.add.call_count == 11
        controls = [c.args[0] for c in control_repo.add.call_args_list]
        assert all(c.framework_id == framework.id for c in controls)
        assert all(c.status == ControlStatus.NOT_STARTED for c in controls)
        assert all(c.next_review_date is not None for c in controls)
        assert event_types(mock_event_publisher) == ["compliance.framework.imported"]

    @pytest.mark.asyncio()
    async def test_second_import_conflicts(
        self, mock_tenant: TenantContext, activity_service: ActivityService, mock_event_publisher: AsyncMock
    ) -> None:
        framework_repo = make_repo()
        framework_repo.count.return_value = 1
        control_repo = make_repo()
        service = FrameworkCatalogService(framework_repo, control_repo, activity_service, mock_event_publisher)

        with pytest.raises(ConflictError):
            await service.import_template(mock_tenant, "soc2")
        control_repo.add.assert_not_called()
