"""Tests for SSO providers, SCIM sync, directory connectors and user upserts."""

import json
import uuid
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from complianceos.adapters import identity_connectors
from complianceos.adapters.identity_connectors import (
    EntraConnector,
    GoogleWorkspaceConnector,
    OktaConnector,
    SCIMClient,
    scim_user_to_record,
)
from complianceos.common.auth import TenantContext
from complianceos.common.errors import ExternalServiceError, ValidationError
from complianceos.core.interfaces import DirectoryUserRecord
from complianceos.core.models import SyncStatus
from complianceos.core.services import ActivityService
from complianceos.identity.service import SCIM_TOKEN_AAD, IdentityService
from tests.conftest import event_types, make_repo


def make_fake_endpoint(is_active: bool = True) -> MagicMock:
    endpoint = MagicMock()
    endpoint.id = uuid.uuid4()
    endpoint.base_url = "https://scim.example.com/v2"
    endpoint.bearer_token_encrypted = "v1:sealed"
    endpoint.is_active = is_active
    endpoint.sync_status = SyncStatus.PENDING
    return endpoint


def make_fake_directory_user(email: str, display_name: str = "Existing") -> MagicMock:
    user = MagicMock()
    user.id = uuid.uuid4()
    user.email = email
    user.display_name = display_name
    return user


class IdentityHarness:
    def __init__(self, activity: ActivityService, publisher: AsyncMock) -> None:
        self.provider_repo = make_repo()
        self.scim_repo = make_repo()
        self.directory_repo = make_repo()
        self.directory_repo.find_by_email.return_value = None
        self.directory_repo.find_membership.return_value = None
        self.encryption = AsyncMock()
        self.encryption.encrypt.return_value = "v1:sealed"
        self.encryption.decrypt.return_value = "plain-token"
        self.scim_client = AsyncMock()
        self.scim_factory = MagicMock(return_value=self.scim_client)
        self.publisher = publisher
        self.service = IdentityService(
            provider_repo=self.provider_repo,
            scim_repo=self.scim_repo,
            directory_repo=self.directory_repo,
            encryption=self.encryption,
            scim_client_factory=self.scim_factory,
            public_base_url="https://grc.example.com/",
            activity=activity,
            event_publisher=publisher,
        )


@pytest.fixture()
def identity(activity_service: ActivityService, mock_event_publisher: AsyncMock) -> IdentityHarness:
    return IdentityHarness(activity_service, mock_event_publisher)


class TestProviders:
    @pytest.mark.asyncio()
    async def test_saml_requires_certificate(self, identity: IdentityHarness, admin_tenant: TenantContext) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await identity.service.create_provider(
                admin_tenant, "Okta", "SAML", "http://www.okta.com/exk1", "https://okta.example.com/sso"
            )
        assert exc_info.value.field == "certificate"

    @pytest.mark.asyncio()
    async def test_unknown_protocol(self, identity: IdentityHarness, admin_tenant: TenantContext) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await identity.service.create_provider(admin_tenant, "LDAP", "KERBEROS", "x", "y")
        assert exc_info.value.field == "protocol"

    @pytest.mark.asyncio()
    async def test_create_oidc_provider(self, identity: IdentityHarness, admin_tenant: TenantContext) -> None:
        provider = await identity.service.create_provider(
            admin_tenant, "Entra", "OIDC", "https://login.example.com/v2.0", "https://login.example.com/authorize"
        )
        assert provider.is_active is True
        assert provider.attribute_mapping == {}
        assert event_types(identity.publisher) == ["compliance.identity_provider.created"]

    @pytest.mark.asyncio()
    async def test_update_ignores_unknown_fields(self, identity: IdentityHarness, admin_tenant: TenantContext) -> None:
        provider = MagicMock(id=uuid.uuid4(), tenant_id=admin_tenant.tenant_id)
        provider.name = "Old"
        identity.provider_repo.get_by_id.return_value = provider

        await identity.service.update_provider(
            provider.id, admin_tenant, {"name": "New", "tenant_id": uuid.uuid4(), "sso_url": None}
        )

        assert provider.name == "New"
        assert provider.tenant_id == admin_tenant.tenant_id
        assert identity.publisher.publish_event.call_args.kwargs["payload"]["fields"] == ["name"]

    @pytest.mark.asyncio()
    async def test_saml_metadata(self, identity: IdentityHarness, admin_tenant: TenantContext) -> None:
        provider = MagicMock(id=uuid.uuid4(), protocol="SAML", entity_id="idp", sso_url="https://idp/sso")
        identity.provider_repo.get_by_id.return_value = provider

        metadata = await identity.service.metadata(provider.id, admin_tenant)

        base = f"https://grc.example.com/api/v1/identity/providers/{provider.id}"
        assert metadata["acs_url"] == f"{base}/saml/acs"
        assert metadata["entity_id"] == f"{base}/saml/metadata"
        assert metadata["idp_entity_id"] == "idp"

    @pytest.mark.asyncio()
    async def test_oidc_metadata(self, identity: IdentityHarness, admin_tenant: TenantContext) -> None:
        provider = MagicMock(id=uuid.uuid4(), protocol="OIDC", entity_id="issuer", sso_url="https://idp/auth")
        identity.provider_repo.get_by_id.return_value = provider

        metadata = await identity.service.metadata(provider.id, admin_tenant)

        assert metadata["redirect_uri"].endswith("/oidc/callback")
        assert metadata["scopes"] == ["openid", "email", "profile"]

    @pytest.mark.asyncio()
    async def test_delete_provider(self, identity: IdentityHarness, admin_tenant: TenantContext) -> None:
        provider = MagicMock(id=uuid.uuid4())
        identity.provider_repo.get_by_id.return_value = provider
        await identity.service.delete_provider(provider.id, admin_tenant)
        identity.provider_repo.delete.assert_awaited_once_with(provider)


class TestSCIMEndpoints:
    @pytest.mark.asyncio()
    async def test_token_is_sealed(self, identity: IdentityHarness, admin_tenant: TenantContext) -> None:
        endpoint = await identity.service.create_scim_endpoint(
            admin_tenant, "Okta SCIM", "https://scim.example.com/v2/", "secret-token"
        )

        identity.encryption.encrypt.assert_awaited_once_with(admin_tenant, "secret-token", SCIM_TOKEN_AAD)
        assert endpoint.bearer_token_encrypted == "v1:sealed"
        assert endpoint.base_url == "https://scim.example.com/v2"
        assert endpoint.sync_status == SyncStatus.PENDING

    @pytest.mark.asyncio()
    async def test_token_required(self, identity: IdentityHarness, admin_tenant: TenantContext) -> None:
        with pytest.raises(ValidationError):
            await identity.service.create_scim_endpoint(admin_tenant, "x", "https://scim", "")

    @pytest.mark.asyncio()
    async def test_sync_creates_users(self, identity: IdentityHarness, admin_tenant: TenantContext) -> None:
        endpoint = make_fake_endpoint()
        identity.scim_repo.get_by_id.return_value = endpoint
        identity.scim_client.list_users.return_value = [
            {"id": "u1", "userName": "ada", "emails": [{"value": "Ada@Example.com", "primary": True}]},
            {"id": "u2", "userName": "bob", "emails": [{"value": "bob@example.com"}], "active": False},
        ]

        result = await identity.service.sync_scim_endpoint(endpoint.id, admin_tenant)

        identity.scim_factory.assert_called_once_with("https://scim.example.com/v2", "plain-token")
        assert result == {"created": 2, "updated": 0, "errors": [], "status": SyncStatus.COMPLETED}
        users = [c.args[0] for c in identity.directory_repo.add.call_args_list]
        assert [u.email for u in users] == ["ada@example.com", "bob@example.com"]
        memberships = [c.args[0] for c in identity.directory_repo.add_membership.call_args_list]
        assert [(m.role, m.is_active) for m in memberships] == [("USER", True), ("USER", False)]
        assert endpoint.sync_status == SyncStatus.COMPLETED
        assert endpoint.last_sync_result["created"] == 2

    @pytest.mark.asyncio()
    async def test_sync_updates_and_reports_missing_email(
        self, identity: IdentityHarness, admin_tenant: TenantContext
    ) -> None:
        endpoint = make_fake_endpoint()
        identity.scim_repo.get_by_id.return_value = endpoint
        existing = make_fake_directory_user("ada@example.com")
        identity.directory_repo.find_by_email.return_value = existing
        identity.directory_repo.find_membership.return_value = MagicMock(is_active=True)
        identity.scim_client.list_users.return_value = [
            {"id": "u1", "displayName": "Ada L.", "emails": [{"value": "ada@example.com"}]},
            {"id": "u9", "userName": "ghost"},
        ]

        result = await identity.service.sync_scim_endpoint(endpoint.id, admin_tenant)

        assert result["created"] == 0
        assert result["updated"] == 1
        assert result["errors"] == ["User u9 has no email address"]
        assert result["status"] == SyncStatus.PARTIAL
        assert existing.display_name == "Ada L."
        assert existing.external_id == "u1"
        identity.directory_repo.add_membership.assert_not_called()
        assert "compliance.identity.sync_user_failed" in event_types(identity.publisher)

    @pytest.mark.asyncio()
    async def test_sync_transport_failure_marks_failed(
        self, identity: IdentityHarness, admin_tenant: TenantContext
    ) -> None:
        endpoint = make_fake_endpoint()
        identity.scim_repo.get_by_id.return_value = endpoint
        identity.scim_client.list_users.side_effect = ExternalServiceError(service="scim", message="Request timed out")

        result = await identity.service.sync_scim_endpoint(endpoint.id, admin_tenant)

        assert result["status"] == SyncStatus.FAILED
        assert result["errors"] == ["scim: Request timed out"]
        assert endpoint.sync_status == SyncStatus.FAILED
        assert endpoint.last_sync_at is not None

    @pytest.mark.asyncio()
    async def test_inactive_endpoint(self, identity: IdentityHarness, admin_tenant: TenantContext) -> None:
        identity.scim_repo.get_by_id.return_value = make_fake_endpoint(is_active=False)
        with pytest.raises(ValidationError):
            await identity.service.sync_scim_endpoint(uuid.uuid4(), admin_tenant)

    @pytest.mark.asyncio()
    async def test_connection(self, identity: IdentityHarness, admin_tenant: TenantContext) -> None:
        identity.scim_repo.get_by_id.return_value = make_fake_endpoint()
        identity.scim_client.test_connection.return_value = True
        assert await identity.service.test_scim_endpoint(uuid.uuid4(), admin_tenant) is True


class TestDirectorySync:
    @pytest.mark.asyncio()
    async def test_sync_from_connector(self, identity: IdentityHarness, admin_tenant: TenantContext) -> None:
        connector = AsyncMock()
        connector.source = "okta"
        connector.list_users.return_value = [DirectoryUserRecord("00u1", "ops@example.com", "Ops", True)]

        result = await identity.service.sync_directory(admin_tenant, connector)

        assert result == {"created": 1, "updated": 0, "errors": [], "status": SyncStatus.COMPLETED, "source": "okta"}
        assert identity.directory_repo.add.call_args.args[0].source == "okta"

    @pytest.mark.asyncio()
    async def test_connector_failure_propagates(self, identity: IdentityHarness, admin_tenant: TenantContext) -> None:
        connector = AsyncMock()
        connector.source = "okta"
        connector.list_users.side_effect = ExternalServiceError(service="okta", message="boom")
        with pytest.raises(ExternalServiceError):
            await identity.service.sync_directory(admin_tenant, connector)

    @pytest.mark.asyncio()
    async def test_reactivation_updates_membership(
        self, identity: IdentityHarness, admin_tenant: TenantContext
    ) -> None:
        identity.directory_repo.find_by_email.return_value = make_fake_directory_user("ops@example.com")
        membership = MagicMock(is_active=False)
        identity.directory_repo.find_membership.return_value = membership
        connector = AsyncMock()
        connector.source = "google_workspace"
        connector.list_users.return_value = [DirectoryUserRecord("g1", "ops@example.com", None, True)]

        await identity.service.sync_directory(admin_tenant, connector)

        assert membership.is_active is True

    @pytest.mark.asyncio()
    async def test_list_directory_users(self, identity: IdentityHarness, admin_tenant: TenantContext) -> None:
        page = await identity.service.list_directory_users(admin_tenant, source="okta", active_only=True)
        assert page["total"] == 0
        filters = identity.directory_repo.list_page.call_args.args[1]
        assert len(filters) == 2


# ---------------------------------------------------------------------------
# Connectors over httpx.MockTransport
# ---------------------------------------------------------------------------


class TestSCIMUserMapping:
    def test_prefers_primary_email(self) -> None:
        record = scim_user_to_record(
            {
                "id": 7,
                "emails": [{"value": "alt@example.com"}, {"value": "main@example.com", "primary": True}],
                "name": {"formatted": "Grace Hopper"},
            }
        )
        assert record == DirectoryUserRecord("7", "main@example.com", "Grace Hopper", True)

    def test_no_emails(self) -> None:
        record = scim_user_to_record({"id": "x", "userName": "ghost", "active": False})
        assert record.email is None
        assert record.display_name == "ghost"
        assert record.active is False


class TestSCIMClient:
    @pytest.mark.asyncio()
    async def test_follows_start_index_paging(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            start = int(request.url.params["startIndex"])
            resources = [{"id": str(start)}, {"id": str(start + 1)}] if start < 5 else [{"id": "5"}]
            return httpx.Response(
                200,
                json={"totalResults": 5, "itemsPerPage": len(resources), "startIndex": start, "Resources": resources},
            )

        client = SCIMClient("https://scim.example.com/v2/", "tok", page_size=2, transport=httpx.MockTransport(handler))
        users = await client.list_users()

        assert [u["id"] for u in users] == ["1", "2", "3", "4", "5"]
        assert [r.url.params["startIndex"] for r in seen] == ["1", "3", "5"]
        assert seen[0].headers["Authorization"] == "Bearer tok"
        assert seen[0].headers["Accept"] == "application/scim+json"
        assert seen[0].url.path == "/v2/Users"

    @pytest.mark.asyncio()
    async def test_error_status_raises(self) -> None:
        client = SCIMClient(
            "https://scim.example.com", "tok", transport=httpx.MockTransport(lambda r: httpx.Response(401))
        )
        with pytest.raises(ExternalServiceError, match="401"):
            await client.list_users()

    @pytest.mark.asyncio()
    async def test_connection_test_reports_false(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = SCIMClient("https://scim.example.com", "tok", transport=httpx.MockTransport(handler))
        assert await client.test_connection() is False


class TestEntraConnector:
    @pytest.mark.asyncio()
    async def test_token_then_paged_users(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "login.microsoftonline.com":
                form = dict(pair.split("=", 1) for pair in request.content.decode().split("&"))
                assert form["grant_type"] == "client_credentials"
                return httpx.Response(200, json={"access_token": "graph-token"})
            assert request.headers["Authorization"] == "Bearer graph-token"
            if "skiptoken" in str(request.url):
                return httpx.Response(
                    200, json={"value": [{"id": "2", "userPrincipalName": "b@example.com", "accountEnabled": False}]}
                )
            return httpx.Response(
                200,
                json={
                    "value": [{"id": "1", "mail": "a@example.com", "displayName": "A"}],
                    "@odata.nextLink": "https://graph.microsoft.com/v1.0/users?$skiptoken=abc",
                },
            )

        connector = EntraConnector("dir-1", "client", "secret", transport=httpx.MockTransport(handler))
        records = await connector.list_users()

        assert records == [
            DirectoryUserRecord("1", "a@example.com", "A", True),
            DirectoryUserRecord("2", "b@example.com", None, False),
        ]

    @pytest.mark.asyncio()
    async def test_missing_access_token(self) -> None:
        connector = EntraConnector(
            "dir-1", "client", "secret", transport=httpx.MockTransport(lambda r: httpx.Response(200, json={}))
        )
        with pytest.raises(ExternalServiceError, match="access_token"):
            await connector.list_users()


class TestGoogleWorkspaceConnector:
    @pytest.mark.asyncio()
    async def test_page_tokens(self) -> None:
        pages: dict[str | None, dict[str, Any]] = {
            None: {
                "users": [{"id": "1", "primaryEmail": "a@corp.com", "name": {"fullName": "A"}}],
                "nextPageToken": "p2",
            },
            "p2": {"users": [{"id": "2", "primaryEmail": "b@corp.com", "suspended": True}]},
        }

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["domain"] == "corp.com"
            return httpx.Response(200, json=pages[request.url.params.get("pageToken")])

        connector = GoogleWorkspaceConnector("ya29.token", "corp.com", transport=httpx.MockTransport(handler))
        records = await connector.list_users()

        assert [(r.email, r.active) for r in records] == [("a@corp.com", True), ("b@corp.com", False)]

    @pytest.mark.asyncio()
    async def test_endless_page_tokens_stop_at_limit_with_warning(self, monkeypatch: pytest.MonkeyPatch) -> None:
        fake_logger = MagicMock()
        monkeypatch.setattr(identity_connectors, "logger", fake_logger)
        monkeypatch.setattr(identity_connectors, "_MAX_PAGES", 3)
        calls: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.params.get("pageToken"))
            return httpx.Response(200, json={"users": [], "nextPageToken": f"p{len(calls)}"})

        connector = GoogleWorkspaceConnector("ya29.token", "corp.com", transport=httpx.MockTransport(handler))
        records = await connector.list_users()

        assert records == []
        assert len(calls) == 3
        fake_logger.warning.assert_called_once_with(
            "Identity paging stopped at page limit", service="google_workspace", max_pages=3
        )

    @pytest.mark.asyncio()
    async def test_last_page_does_not_warn(self, monkeypatch: pytest.MonkeyPatch) -> None:
        fake_logger = MagicMock()
        monkeypatch.setattr(identity_connectors, "logger", fake_logger)
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"users": []}))

        await GoogleWorkspaceConnector("ya29.token", "corp.com", transport=transport).list_users()

        fake_logger.warning.assert_not_called()


class TestOktaConnector:
    @pytest.mark.asyncio()
    async def test_link_header_paging(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "SSWS okta-token"
            if request.url.params.get("after") == "00u2":
                body = [{"id": "00u3", "status": "SUSPENDED", "profile": {"login": "c@corp.com"}}]
                return httpx.Response(200, content=json.dumps(body), headers={"Content-Type": "application/json"})
            body = [
                {
                    "id": "00u1",
                    "status": "ACTIVE",
                    "profile": {"email": "a@corp.com", "firstName": "Ann", "lastName": "Lee"},
                }
            ]
            return httpx.Response(
                200,
                json=body,
                headers={"Link": '<https://corp.okta.com/api/v1/users?after=00u2&limit=200>; rel="next"'},
            )

        connector = OktaConnector("https://corp.okta.com/", "okta-token", transport=httpx.MockTransport(handler))
        records = await connector.list_users()

        assert records == [
            DirectoryUserRecord("00u1", "a@corp.com", "Ann Lee", True),
            DirectoryUserRecord("00u3", "c@corp.com", None, False),
        ]

    @pytest.mark.asyncio()
    async def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        connector = OktaConnector("https://corp.okta.com", "t", transport=httpx.MockTransport(handler))
        with pytest.raises(ExternalServiceError, match="timed out"):
            await connector.list_users()
