"""Per-tenant envelope encryption with versioned, rotatable data keys.

Each tenant has one EncryptionConfig and a sequence of EncryptionKey versions.
A data key is generated and wrapped by the configured IKeyProvider; only the
wrapped form is stored. Payloads are sealed with AES-256-GCM under the
tenant's ACTIVE data key and a random 96-bit nonce.

Token format:
    v{version}:{base64 nonce}:{base64 ciphertext-with-tag}

The tenant id is always bound into the associated data, so a token copied
into another tenant fails authentication even before key lookup matters.

Key lifecycle:
    ACTIVE       -> encrypts and decrypts; exactly one per tenant
    DECRYPT_ONLY -> previous versions after rotation; decrypt only
    REVOKED      -> refuses decryption
"""

import base64
import binascii
import os
import re
import uuid
from datetime import timedelta
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from complianceos.common.auth import TenantContext
from complianceos.common.errors import ConflictError, NotFoundError, ValidationError
from complianceos.common.observability import get_logger
from complianceos.core.interfaces import IEventPublisher, IKeyProvider
from complianceos.core.models import EncryptionConfig, EncryptionKey, KeyManagementType, KeyStatus
from complianceos.core.services import ActivityService, TrackedService, utcnow

logger = get_logger(__name__)

NONCE_BYTES = 12
ALGORITHM = "AES_256_GCM"
COMPLIANCE_REQUIREMENTS: tuple[str, ...] = ("FIPS_140_2", "GDPR", "SOX", "HIPAA", "PCI_DSS")
VIOLATION_PENALTY = 20

_TOKEN_RE = re.compile(r"^v(\d+):([A-Za-z0-9+/=]+):([A-Za-z0-9+/=]+)$")
_CONFIG_FIELDS = frozenset(
    {
        "key_management_type",
        "rotation_interval_days",
        "auto_rotation",
        "notification_days",
        "client_side_encryption",
        "compliance_requirements",
    }
)


def _associated_data(tenant_id: uuid.UUID, associated_data: bytes | None) -> bytes:
    return tenant_id.bytes + (associated_data or b"")


def compliance_score(violations: int) -> int:
    return max(0, 100 - VIOLATION_PENALTY * violations)


class EncryptionService(TrackedService):
    """Tenant encryption configuration, key versions and payload sealing.

    Args:
        config_repo: Repository for EncryptionConfig.
        key_repo: EncryptionKeyRepository.
        key_provider: Wraps and unwraps data keys.
        activity: ActivityService.
        event_publisher: Domain event publisher.
    """

    def __init__(
        self,
        config_repo: Any,
        key_repo: Any,
        key_provider: IKeyProvider,
        activity: ActivityService,
        event_publisher: IEventPublisher,
    ) -> None:
        super().__init__(activity, event_publisher)
        self._config_repo = config_repo
        self._key_repo = key_repo
        self._key_provider = key_provider

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def find_config(self, tenant: TenantContext) -> EncryptionConfig | None:
        rows = await self._config_repo.list_where(tenant.tenant_id, limit=1)
        return rows[0] if rows else None

    async def get_config(self, tenant: TenantContext) -> EncryptionConfig:
        config = await self.find_config(tenant)
        if config is None:
            raise NotFoundError(resource="EncryptionConfig", resource_id=str(tenant.tenant_id))
        return config

    @staticmethod
    def _check_settings(settings: dict[str, Any]) -> None:
        kmt = settings.get("key_management_type")
        if kmt is not None and kmt not in KeyManagementType.__members__:
            raise ValidationError(message=f"Unknown key management type '{kmt}'", field="key_management_type")
        for requirement in settings.get("compliance_requirements") or []:
            if requirement not in COMPLIANCE_REQUIREMENTS:
                raise ValidationError(
                    message=f"Unknown compliance requirement '{requirement}'", field="compliance_requirements"
                )
        interval = settings.get("rotation_interval_days")
        if interval is not None and interval < 1:
            raise ValidationError(message="rotation_interval_days must be at least 1", field="rotation_interval_days")

    async def initialize(
        self,
        tenant: TenantContext,
        settings: dict[str, Any],
        correlation_id: str | None = None,
    ) -> EncryptionConfig:
        """Create the tenant's encryption config and key version 1.

        Args:
            tenant: Caller context.
            settings: Config fields (key_management_type, rotation_interval_days,
                auto_rotation, notification_days, client_side_encryption,
                compliance_requirements); missing ones take model defaults.
            correlation_id: Request correlation ID.

        Raises:
            ConflictError: If encryption is already initialized for the tenant.
            ValidationError: On unknown enum values.
        """
        if await self.find_config(tenant) is not None:
            raise ConflictError(message="Encryption is already initialized for this organization")
        self._check_settings(settings)

        config = await self._config_repo.add(
            EncryptionConfig(
                tenant_id=tenant.tenant_id,
                algorithm=ALGORITHM,
                created_by=tenant.user_id,
                **{k: v for k, v in settings.items() if k in _CONFIG_FIELDS and v is not None},
            )
        )
        key = await self._new_key(tenant, config, version=1)
        logger.info("Encryption initialized", tenant_id=str(tenant.tenant_id), key_version=key.version)
        await self._track(
            tenant,
            "compliance.encryption.initialized",
            "encryption_config",
            config.id,
            "initialize",
            {"key_management_type": config.key_management_type, "key_version": key.version},
            correlation_id,
        )
        return config

    async def update_config(
        self,
        tenant: TenantContext,
        changes: dict[str, Any],
        correlation_id: str | None = None,
    ) -> EncryptionConfig:
        self._check_settings(changes)
        config = await self.get_config(tenant)
        for field, value in changes.items():
            if field in _CONFIG_FIELDS and value is not None:
                setattr(config, field, value)
        config = await self._config_repo.save(config)
        await self._track(
            tenant,
            "compliance.encryption.config_updated",
            "encryption_config",
            config.id,
            "update",
            {"fields": sorted(k for k, v in changes.items() if k in _CONFIG_FIELDS and v is not None)},
            correlation_id,
        )
        return config

    async def _new_key(self, tenant: TenantContext, config: EncryptionConfig, version: int) -> EncryptionKey:
        _, wrapped = self._key_provider.generate_data_key()
        return await self._key_repo.add(
            EncryptionKey(
                tenant_id=tenant.tenant_id,
                config_id=config.id,
                version=version,
                status=KeyStatus.ACTIVE,
                wrapped_key=base64.b64encode(wrapped).decode("ascii"),
                provider_key_id=self._key_provider.key_id,
                activated_at=utcnow(),
            )
        )

    def _data_key(self, key: EncryptionKey) -> bytes:
        return self._key_provider.unwrap(base64.b64decode(key.wrapped_key))

    # ------------------------------------------------------------------
    # Sealing
    # ------------------------------------------------------------------

    async def encrypt(self, tenant: TenantContext, plaintext: str, associated_data: bytes | None = None) -> str:
        """Seal `plaintext` under the tenant's ACTIVE key.

        Raises:
            ValidationError: If the tenant has no active key.
        """
        key = await self._key_repo.get_active(tenant.tenant_id)
        if key is None:
            raise ValidationError(message="No active encryption key for this organization", field="encryption")
        nonce = os.urandom(NONCE_BYTES)
        ciphertext = AESGCM(self._data_key(key)).encrypt(
            nonce, plaintext.encode("utf-8"), _associated_data(tenant.tenant_id, associated_data)
        )
        encoded_nonce = base64.b64encode(nonce).decode("ascii")
        encoded_ciphertext = base64.b64encode(ciphertext).decode("ascii")
        return f"v{key.version}:{encoded_nonce}:{encoded_ciphertext}"

    async def decrypt(self, tenant: TenantContext, token: str, associated_data: bytes | None = None) -> str:
        """Open a token produced by encrypt().

        Raises:
            ValidationError: On a malformed token, an unknown or revoked key
                version, or a ciphertext that fails authentication.
        """
        match = _TOKEN_RE.match(token)
        if match is None:
            raise ValidationError(message="Malformed encryption token", field="token")
        version = int(match.group(1))
        try:
            nonce = base64.b64decode(match.group(2), validate=True)
            ciphertext = base64.b64decode(match.group(3), validate=True)
        except binascii.Error as exc:
            raise ValidationError(message="Malformed encryption token", field="token") from exc

        key = await self._key_repo.get_version(tenant.tenant_id, version)
        if key is None:
            raise ValidationError(message=f"Unknown key version {version}", field="token")
        if key.status == KeyStatus.REVOKED:
            raise ValidationError(message=f"Key version {version} has been revoked", field="token")
        try:
            plaintext = AESGCM(self._data_key(key)).decrypt(
                nonce, ciphertext, _associated_data(tenant.tenant_id, associated_data)
            )
        except InvalidTag as exc:
            logger.warning("Decryption failed authentication", tenant_id=str(tenant.tenant_id), key_version=version)
            raise ValidationError(message="Ciphertext failed authentication", field="token") from exc
        return plaintext.decode("utf-8")

    # ------------------------------------------------------------------
    # Rotation and revocation
    # ------------------------------------------------------------------

    async def rotate(self, tenant: TenantContext, correlation_id: str | None = None) -> EncryptionKey:
        """Retire the ACTIVE key to DECRYPT_ONLY and activate a new version."""
        config = await self.get_config(tenant)
        current = await self._key_repo.get_active(tenant.tenant_id)
        if current is not None:
            current.status = KeyStatus.DECRYPT_ONLY
            current.retired_at = utcnow()
            await self._key_repo.save(current)
        version = await self._key_repo.max_version(tenant.tenant_id) + 1
        key = await self._new_key(tenant, config, version=version)

        logger.info(
            "Encryption key rotated",
            tenant_id=str(tenant.tenant_id),
            previous_version=current.version if current is not None else None,
            key_version=key.version,
        )
        await self._track(
            tenant,
            "compliance.security.key_rotated",
            "encryption_key",
            key.id,
            "rotate",
            {"previous_version": current.version if current is not None else None, "key_version": key.version},
            correlation_id,
        )
        return key

    async def revoke(self, tenant: TenantContext, version: int, correlation_id: str | None = None) -> EncryptionKey:
        """Revoke a retired key version. The ACTIVE key must be rotated first."""
        key = await self._key_repo.get_version(tenant.tenant_id, version)
        if key is None:
            raise NotFoundError(resource="EncryptionKey", resource_id=str(version))
        if key.status == KeyStatus.ACTIVE:
            raise ValidationError(message="Rotate before revoking the active key", field="version")
        key.status = KeyStatus.REVOKED
        key.retired_at = key.retired_at or utcnow()
        key = await self._key_repo.save(key)
        await self._track(
            tenant,
            "compliance.security.key_revoked",
            "encryption_key",
            key.id,
            "revoke",
            {"key_version": version},
            correlation_id,
        )
        return key

    async def list_keys(self, tenant: TenantContext) -> list[EncryptionKey]:
        return await self._key_repo.list_where(tenant.tenant_id, order_by=[EncryptionKey.version.desc()])

    # ------------------------------------------------------------------
    # Status and compliance
    # ------------------------------------------------------------------

    @staticmethod
    def _rotation_due(config: EncryptionConfig, key: EncryptionKey | None) -> bool:
        if key is None:
            return False
        return utcnow() - key.activated_at >= timedelta(days=config.rotation_interval_days)

    async def rotation_needed(self, tenant: TenantContext) -> bool:
        """Whether the ACTIVE key is at least rotation_interval_days old."""
        config = await self.find_config(tenant)
        if config is None:
            return False
        return self._rotation_due(config, await self._key_repo.get_active(tenant.tenant_id))

    async def status(self, tenant: TenantContext) -> dict[str, Any]:
        config = await self.find_config(tenant)
        if config is None:
            return {
                "has_active_key": False,
                "key_count": 0,
                "last_rotation": None,
                "next_rotation": None,
                "rotation_needed": False,
                "encryption_enabled": False,
            }
        active = await self._key_repo.get_active(tenant.tenant_id)
        key_count = await self._key_repo.count(tenant.tenant_id)
        return {
            "has_active_key": active is not None,
            "key_count": key_count,
            "active_version": active.version if active is not None else None,
            "last_rotation": active.activated_at if active is not None else None,
            "next_rotation": (
                active.activated_at + timedelta(days=config.rotation_interval_days) if active is not None else None
            ),
            "rotation_needed": self._rotation_due(config, active),
            "encryption_enabled": active is not None,
        }

    async def validate_compliance(self, tenant: TenantContext) -> dict[str, Any]:
        """Check the config against its declared compliance requirements.

        Returns:
            Dict with is_compliant, violations, recommendations and
            compliance_score (100 minus 20 per violation, floored at 0).
        """
        config = await self.find_config(tenant)
        if config is None:
            return {
                "is_compliant": False,
                "violations": ["Encryption not configured"],
                "recommendations": ["Initialize encryption for the organization"],
                "compliance_score": 0,
            }
        active = await self._key_repo.get_active(tenant.tenant_id)
        violations: list[str] = []
        recommendations: list[str] = []
        if active is None:
            violations.append("No active encryption key")
            recommendations.append("Rotate to create a new active key")
        elif self._rotation_due(config, active):
            violations.append("Encryption key rotation overdue")
            recommendations.append("Rotate the active key")

        requirements = set(config.compliance_requirements or [])
        if "FIPS_140_2" in requirements and config.key_management_type != KeyManagementType.HSM:
            violations.append("FIPS 140-2 requires HSM key management")
            recommendations.append("Move key management to an HSM")
        if "GDPR" in requirements and not config.client_side_encryption:
            violations.append("GDPR requires client-side encryption")
            recommendations.append("Enable client-side encryption")
        if "SOX" in requirements and not config.auto_rotation:
            violations.append("SOX requires automatic key rotation")
            recommendations.append("Enable automatic key rotation")

        return {
            "is_compliant": not violations,
            "violations": violations,
            "recommendations": recommendations,
            "compliance_score": compliance_score(len(violations)),
        }
