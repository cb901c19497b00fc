"""Identity integrations: SSO provider configs, SCIM endpoints and directory sync.

SCIM endpoints and directory connectors both produce DirectoryUserRecord
values that go through one upsert path:

    record without email  -> per-user error, recorded on the activity trail
    email not yet known   -> DirectoryUser created, USER membership added
    email already known   -> name, external id and active flag refreshed

Email matching is case-insensitive within the tenant.
"""

import uuid
from collections.abc import Callable
from typing import Any

from complianceos.adapters.identity_connectors import scim_user_to_record
from complianceos.common.auth import TenantContext
from complianceos.common.database import to_page
from complianceos.common.errors import ExternalServiceError, ValidationError
from complianceos.common.observability import get_logger
from complianceos.core.interfaces import DirectoryUserRecord, IDirectoryConnector, IEventPublisher, ISCIMClient
from complianceos.core.models import (
    DirectoryUser,
    IdentityProvider,
    OrganizationMember,
    SCIMEndpoint,
    SSOProtocol,
    SyncStatus,
)
from complianceos.core.services import ActivityService, TrackedService, utcnow
from complianceos.enterprise.encryption import EncryptionService

logger = get_logger(__name__)

DEFAULT_MEMBER_ROLE = "USER"
SAML_NAME_ID_FORMAT = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
OIDC_SCOPES = ("openid", "email", "profile")
SCIM_TOKEN_AAD = b"scim-endpoint-token"

_PROVIDER_FIELDS = frozenset(
    {"name", "protocol", "entity_id", "sso_url", "certificate", "attribute_mapping", "is_active"}
)

SCIMClientFactory = Callable[[str, str], ISCIMClient]


class IdentityService(TrackedService):
    """SSO providers, SCIM endpoints and directory user provisioning.

    Args:
        provider_repo: Repository for IdentityProvider.
        scim_repo: Repository for SCIMEndpoint.
        directory_repo: DirectoryUserRepository.
        encryption: EncryptionService used to seal SCIM bearer tokens.
        scim_client_factory: Builds an ISCIMClient from (base_url, bearer_token).
        public_base_url: Base URL of this service, used in SP metadata.
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(
        self,
        provider_repo: Any,
        scim_repo: Any,
        directory_repo: Any,
        encryption: EncryptionService,
        scim_client_factory: SCIMClientFactory,
        public_base_url: str,
        activity: ActivityService,
        event_publisher: IEventPublisher,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._provider_repo = provider_repo
        self._scim_repo = scim_repo
        self._directory_repo = directory_repo
        self._encryption = encryption
        self._scim_client_factory = scim_client_factory
        self._public_base_url = public_base_url.rstrip("/")

    # ------------------------------------------------------------------
    # Identity providers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_protocol(protocol: str) -> None:
        if protocol not in SSOProtocol.__members__:
            raise ValidationError(message=f"Unknown SSO protocol '{protocol}'", field="protocol")

    async def create_provider(
        self,
        tenant: TenantContext,
        name: str,
        protocol: str,
        entity_id: str,
        sso_url: str,
        certificate: str | None = None,
        attribute_mapping: dict[str, str] | None = None,
        correlation_id: str | None = None,
    ) -> IdentityProvider:
        self._check_protocol(protocol)
        if protocol == SSOProtocol.SAML and not certificate:
            raise ValidationError(message="SAML providers require a signing certificate", field="certificate")
        provider = await self._provider_repo.add(
            IdentityProvider(
                tenant_id=tenant.tenant_id,
                name=name,
                protocol=protocol,
                entity_id=entity_id,
                sso_url=sso_url,
                certificate=certificate,
                attribute_mapping=attribute_mapping or {},
                is_active=True,
            )
        )
        await self._track(
            tenant,
            "compliance.identity_provider.created",
            "identity_provider",
            provider.id,
            "create",
            {"name": name, "protocol": protocol},
            correlation_id,
        )
        return provider

    async def list_providers(self, tenant: TenantContext) -> list[IdentityProvider]:
        return await self._provider_repo.list_where(tenant.tenant_id, order_by=[IdentityProvider.name.asc()])

    async def get_provider(self, provider_id: uuid.UUID, tenant: TenantContext) -> IdentityProvider:
        return await self._provider_repo.get_by_id(provider_id, tenant.tenant_id)

    async def update_provider(
        self,
        provider_id: uuid.UUID,
        tenant: TenantContext,
        changes: dict[str, Any],
        correlation_id: str | None = None,
    ) -> IdentityProvider:
        if changes.get("protocol") is not None:
            self._check_protocol(changes["protocol"])
        provider = await self.get_provider(provider_id, tenant)
        for key, value in changes.items():
            if key in _PROVIDER_FIELDS and value is not None:
                setattr(provider, key, value)
        provider = await self._provider_repo.save(provider)
        await self._track(
            tenant,
            "compliance.identity_provider.updated",
            "identity_provider",
            provider.id,
            "update",
            {"fields": sorted(k for k, v in changes.items() if k in _PROVIDER_FIELDS and v is not None)},
            correlation_id,
        )
        return provider

    async def delete_provider(
        self, provider_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> None:
        provider = await self.get_provider(provider_id, tenant)
        await self._provider_repo.delete(provider)
        await self._track(
            tenant,
            "compliance.identity_provider.deleted",
            "identity_provider",
            provider_id,
            "delete",
            {},
            correlation_id,
        )

    async def metadata(self, provider_id: uuid.UUID, tenant: TenantContext) -> dict[str, Any]:
        """Service provider metadata to register with the identity provider."""
        provider = await self.get_provider(provider_id, tenant)
        base = f"{self._public_base_url}/api/v1/identity/providers/{provider.id}"
        if provider.protocol == SSOProtocol.OIDC:
            return {
                "protocol": SSOProtocol.OIDC,
                "issuer": provider.entity_id,
                "authorization_endpoint": provider.sso_url,
                "redirect_uri": f"{base}/oidc/callback",
                "scopes": list(OIDC_SCOPES),
                "attribute_mapping": provider.attribute_mapping,
            }
        return {
            "protocol": SSOProtocol.SAML,
            "entity_id": f"{base}/saml/metadata",
            "acs_url": f"{base}/saml/acs",
            "slo_url": f"{base}/saml/slo",
            "name_id_format": SAML_NAME_ID_FORMAT,
            "idp_entity_id": provider.entity_id,
            "idp_sso_url": provider.sso_url,
            "attribute_mapping": provider.attribute_mapping,
        }

    # ------------------------------------------------------------------
    # SCIM endpoints
    # ------------------------------------------------------------------

    async def create_scim_endpoint(
        self,
        tenant: TenantContext,
        name: str,
        base_url: str,
        bearer_token: str,
        sync_frequency_minutes: int = 60,
        correlation_id: str | None = None,
    ) -> SCIMEndpoint:
        """Register a SCIM server. The bearer token is stored encrypted.

        Raises:
            ValidationError: If tenant encryption is not initialized.
        """
        if not bearer_token:
            raise ValidationError(message="bearer_token is required", field="bearer_token")
        sealed = await self._encryption.encrypt(tenant, bearer_token, SCIM_TOKEN_AAD)
        endpoint = await self._scim_repo.add(
            SCIMEndpoint(
                tenant_id=tenant.tenant_id,
                name=name,
                base_url=base_url.rstrip("/"),
                bearer_token_encrypted=sealed,
                sync_frequency_minutes=sync_frequency_minutes,
                sync_status=SyncStatus.PENDING,
                last_sync_result={},
                is_active=True,
            )
        )
        await self._track(
            tenant,
            "compliance.scim_endpoint.created",
            "scim_endpoint",
            endpoint.id,
            "create",
            {"name": name, "base_url": endpoint.base_url},
            correlation_id,
        )
        return endpoint

    async def list_scim_endpoints(self, tenant: TenantContext) -> list[SCIMEndpoint]:
        return await self._scim_repo.list_where(tenant.tenant_id, order_by=[SCIMEndpoint.name.asc()])

    async def get_scim_endpoint(self, endpoint_id: uuid.UUID, tenant: TenantContext) -> SCIMEndpoint:
        return await self._scim_repo.get_by_id(endpoint_id, tenant.tenant_id)

    async def delete_scim_endpoint(
        self, endpoint_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> None:
        endpoint = await self.get_scim_endpoint(endpoint_id, tenant)
        await self._scim_repo.delete(endpoint)
        await self._track(
            tenant, "compliance.scim_endpoint.deleted", "scim_endpoint", endpoint_id, "delete", {}, correlation_id
        )

    async def _scim_client(self, endpoint: SCIMEndpoint, tenant: TenantContext) -> ISCIMClient:
        token = await self._encryption.decrypt(tenant, endpoint.bearer_token_encrypted, SCIM_TOKEN_AAD)
        return self._scim_client_factory(endpoint.base_url, token)

    async def test_scim_endpoint(self, endpoint_id: uuid.UUID, tenant: TenantContext) -> bool:
        endpoint = await self.get_scim_endpoint(endpoint_id, tenant)
        client = await self._scim_client(endpoint, tenant)
        return await client.test_connection()

    async def sync_scim_endpoint(
        self, endpoint_id: uuid.UUID, tenant: TenantContext, correlation_id: str | None = None
    ) -> dict[str, Any]:
        """Pull every user from the SCIM server and upsert them.

        A transport failure does not raise: the endpoint is marked FAILED and
        the error is returned in the result.

        Returns:
            {created, updated, errors, status}.
        """
        endpoint = await self.get_scim_endpoint(endpoint_id, tenant)
        if not endpoint.is_active:
            raise ValidationError(message="SCIM endpoint is inactive", field="endpoint_id")
        endpoint.sync_status = SyncStatus.IN_PROGRESS
        await self._scim_repo.save(endpoint)

        client = await self._scim_client(endpoint, tenant)
        try:
            resources = await client.list_users()
        except ExternalServiceError as exc:
            logger.error("SCIM sync failed", endpoint_id=str(endpoint.id), error=exc.message)
            result = {"created": 0, "updated": 0, "errors": [exc.message]}
            return await self._finish_scim_sync(endpoint, tenant, result, SyncStatus.FAILED, correlation_id)

        result = await self._upsert_records(
            tenant, [scim_user_to_record(r) for r in resources], source="scim", correlation_id=correlation_id
        )
        sync_status = SyncStatus.PARTIAL if result["errors"] else SyncStatus.COMPLETED
        return await self._finish_scim_sync(endpoint, tenant, result, sync_status, correlation_id)

    async def _finish_scim_sync(
        self,
        endpoint: SCIMEndpoint,
        tenant: TenantContext,
        result: dict[str, Any],
        sync_status: str,
        correlation_id: str | None,
    ) -> dict[str, Any]:
        endpoint.sync_status = sync_status
        endpoint.last_sync_at = utcnow()
        endpoint.last_sync_result = result
        await self._scim_repo.save(endpoint)
        logger.info(
            "SCIM sync finished",
            endpoint_id=str(endpoint.id),
            status=sync_status,
            created=result["created"],
            updated=result["updated"],
            errors=len(result["errors"]),
        )
        await self._track(
            tenant,
            "compliance.scim_endpoint.synced",
            "scim_endpoint",
            endpoint.id,
            "sync",
            {
                "status": sync_status,
                "created": result["created"],
                "updated": result["updated"],
                "errors": len(result["errors"]),
            },
            correlation_id,
        )
        return {**result, "status": sync_status}

    # ------------------------------------------------------------------
    # Directory connectors and users
    # ------------------------------------------------------------------

    async def test_connector(self, connector: IDirectoryConnector) -> bool:
        return await connector.test_connection()

    async def sync_directory(
        self,
        tenant: TenantContext,
        connector: IDirectoryConnector,
        correlation_id: str | None = None,
    ) -> dict[str, Any]:
        """Pull users from a directory connector and upsert them.

        Raises:
            ExternalServiceError: If the directory cannot be read.
        """
        records = await connector.list_users()
        result = await self._upsert_records(tenant, records, source=connector.source, correlation_id=correlation_id)
        sync_status = SyncStatus.PARTIAL if result["errors"] else SyncStatus.COMPLETED
        logger.info("Directory sync finished", source=connector.source, status=sync_status, created=result["created"])
        return {**result, "status": sync_status, "source": connector.source}

    async def list_directory_users(
        self,
        tenant: TenantContext,
        source: str | None = None,
        active_only: bool = False,
        page: int = 1,
        page_size: int = 50,
    ) -> dict[str, Any]:
        filters = []
        if source:
            filters.append(DirectoryUser.source == source)
        if active_only:
            filters.append(DirectoryUser.is_active.is_(True))
        rows, total = await self._directory_repo.list_page(
            tenant.tenant_id, filters, page, page_size, order_by=[DirectoryUser.email.asc()]
        )
        return to_page(rows, total, page, page_size)

    async def _upsert_records(
        self,
        tenant: TenantContext,
        records: list[DirectoryUserRecord],
        source: str,
        correlation_id: str | None,
    ) -> dict[str, Any]:
        created = 0
        updated = 0
        errors: list[str] = []
        for record in records:
            if not record.email:
                message = f"User {record.external_id or '<unknown>'} has no email address"
                errors.append(message)
                await self._track(
                    tenant,
                    "compliance.identity.sync_user_failed",
                    "directory_user",
                    uuid.UUID(int=0),
                    "sync",
                    {"source": source, "external_id": record.external_id, "error": message},
                    correlation_id,
                )
                continue

            user = await self._directory_repo.find_by_email(tenant.tenant_id, record.email)
            if user is None:
                user = await self._directory_repo.add(
                    DirectoryUser(
                        tenant_id=tenant.tenant_id,
                        email=record.email.lower(),
                        display_name=record.display_name,
                        external_id=record.external_id,
                        source=source,
                        is_active=record.active,
                    )
                )
                created += 1
            else:
                user.display_name = record.display_name or user.display_name
                user.external_id = record.external_id
                user.source = source
                user.is_active = record.active
                user = await self._directory_repo.save(user)
                updated += 1

            membership = await self._directory_repo.find_membership(tenant.tenant_id, user.id)
            if membership is None:
                await self._directory_repo.add_membership(
                    OrganizationMember(
                        tenant_id=tenant.tenant_id,
                        user_id=user.id,
                        role=DEFAULT_MEMBER_ROLE,
                        is_active=record.active,
                    )
                )
            elif membership.is_active != record.active:
                membership.is_active = record.active

        return {"created": created, "updated": updated, "errors": errors}
